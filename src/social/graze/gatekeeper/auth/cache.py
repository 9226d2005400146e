"""
Authorization cache.

Holds the short-lived authorization state that lets a returning player skip
re-verification:

- authorized players keyed by identity id, with a TTL and least-recently-used
  eviction,
- authenticated sessions (see sessions.py),
- failed login tracking per origin (see brute_force.py),
- long-lived premium decisions per nickname (see premium.py).

The cache subscribes to the record invalidation channel on `start` and
unsubscribes on `stop`, so record changes only reach a live cache.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from social.graze.gatekeeper.app.metrics import MetricsClient, NoOpMetricsClient
from social.graze.gatekeeper.app.tasks import BackgroundTaskRunner
from social.graze.gatekeeper.auth.brute_force import BruteForceTracker
from social.graze.gatekeeper.auth.premium import PremiumStatusCache, PremiumStatusEntry
from social.graze.gatekeeper.auth.sessions import SessionManager
from social.graze.gatekeeper.model.players import PlayerRecord
from social.graze.gatekeeper.resolve.result import parse_identity_id
from social.graze.gatekeeper.store.invalidation import InvalidationChannel, RecordChanged

logger = logging.getLogger(__name__)


@dataclass
class AuthorizedEntry:
    identity_id: uuid.UUID
    nickname: str
    login_ip: Optional[str] = None
    login_at: Optional[float] = None
    is_premium: bool = False
    remote_identity_id: Optional[uuid.UUID] = None
    cached_at: float = field(default_factory=time.monotonic)
    last_access_at: float = field(default_factory=time.monotonic)

    def is_valid(self, now: float, ttl_seconds: float) -> bool:
        if ttl_seconds <= 0:
            return True
        return now - self.cached_at < ttl_seconds

    def matches_ip(self, origin: Optional[str]) -> bool:
        """Missing address data on either side is treated as compatible."""
        if self.login_ip is None or origin is None:
            return True
        return self.login_ip == origin

    @staticmethod
    def from_record(
        record: PlayerRecord,
        origin: Optional[str],
        premium_id: Optional[uuid.UUID],
        now: float,
    ) -> "AuthorizedEntry":
        """Build the entry for a login against a stored record.

        A premium id presented at login takes precedence over the remote id kept on
        the record. The record's last login address is used when no origin is known.
        """
        remote_identity_id = premium_id
        if remote_identity_id is None and record.remote_identity_id is not None:
            remote_identity_id = parse_identity_id(record.remote_identity_id)
        return AuthorizedEntry(
            identity_id=record.identity_id,
            nickname=record.nickname,
            login_ip=origin if origin is not None else record.login_ip,
            login_at=now,
            is_premium=premium_id is not None,
            remote_identity_id=remote_identity_id,
            cached_at=now,
            last_access_at=now,
        )


class AuthorizationCache:
    def __init__(
        self,
        runner: BackgroundTaskRunner,
        channel: Optional[InvalidationChannel] = None,
        ttl_minutes: int = 60,
        max_size: int = 10000,
        max_sessions: int = 1000,
        session_timeout_minutes: int = 60,
        brute_force_max_attempts: int = 5,
        brute_force_timeout_minutes: int = 10,
        premium_ttl_hours: float = 24,
        premium_refresh_threshold: float = 0.8,
        premium_max_size: int = 10000,
        cleanup_interval_seconds: float = 5 * 60,
        metrics_client: Optional[MetricsClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.runner = runner
        self.metrics_client = metrics_client or NoOpMetricsClient()
        self.channel = channel
        self.ttl_seconds = ttl_minutes * 60
        self.max_size = max_size
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.clock = clock

        self.sessions = SessionManager(max_sessions, session_timeout_minutes, clock=clock)
        self.brute_force = BruteForceTracker(
            brute_force_max_attempts, brute_force_timeout_minutes, clock=clock
        )
        self.premium = PremiumStatusCache(
            premium_ttl_hours, premium_refresh_threshold, premium_max_size, clock=clock
        )

        self._authorized: Dict[uuid.UUID, AuthorizedEntry] = {}
        self._hits = 0
        self._misses = 0
        self._unsubscribe: Optional[Callable[[], None]] = None

    def start(self) -> None:
        if self.channel is not None and self._unsubscribe is None:
            self._unsubscribe = self.channel.subscribe(self.handle_invalidation)
        self.runner.schedule_periodic(
            self._periodic_cleanup, self.cleanup_interval_seconds, "auth-cache-cleanup"
        )
        logger.info("Authorization cache started")

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.clear_all()
        logger.info("Authorization cache stopped")

    # Authorized players

    def add_authorized_player(self, identity_id: uuid.UUID, entry: AuthorizedEntry) -> None:
        if identity_id not in self._authorized and len(self._authorized) >= self.max_size:
            self._evict_least_recently_used()
        now = self.clock()
        entry.cached_at = now
        entry.last_access_at = now
        self._authorized[identity_id] = entry
        logger.debug("Authorized %s (%s)", entry.nickname, identity_id)

    def get_authorized_player(self, identity_id: uuid.UUID) -> Optional[AuthorizedEntry]:
        entry = self._authorized.get(identity_id)
        if entry is None:
            self._misses += 1
            return None
        now = self.clock()
        if not entry.is_valid(now, self.ttl_seconds):
            del self._authorized[identity_id]
            self._misses += 1
            return None
        entry.last_access_at = now
        self._hits += 1
        return entry

    def remove_authorized_player(self, identity_id: uuid.UUID) -> None:
        self._authorized.pop(identity_id, None)

    def is_player_authorized(self, identity_id: uuid.UUID, origin: Optional[str]) -> bool:
        entry = self.get_authorized_player(identity_id)
        if entry is None:
            return False
        return entry.matches_ip(origin)

    def invalidate_player(self, identity_id: uuid.UUID) -> None:
        removed = self._authorized.pop(identity_id, None)
        if removed is not None:
            logger.debug(
                "Invalidated cached authorization for %s (%s)", identity_id, removed.nickname
            )

    def handle_invalidation(self, event: RecordChanged) -> None:
        for identity_id in event.identity_ids():
            self.invalidate_player(identity_id)
        self.premium.remove_premium_player(event.lowercase_nickname)

    # Sessions

    def start_session(
        self,
        identity_id: uuid.UUID,
        nickname: str,
        origin: Optional[str],
        is_premium: bool = False,
        remote_identity_id: Optional[uuid.UUID] = None,
    ) -> None:
        self.sessions.start_session(
            identity_id, nickname, origin, is_premium, remote_identity_id
        )

    def end_session(self, identity_id: uuid.UUID) -> None:
        self.sessions.end_session(identity_id)

    def has_active_session(
        self, identity_id: uuid.UUID, nickname: str, origin: Optional[str]
    ) -> bool:
        return self.sessions.has_active_session(identity_id, nickname, origin)

    # Brute force

    def register_failed_login(self, origin: Optional[str]) -> bool:
        return self.brute_force.register_failed_login(origin)

    def is_blocked(self, origin: Optional[str]) -> bool:
        return self.brute_force.is_blocked(origin)

    def reset_login_attempts(self, origin: Optional[str]) -> None:
        self.brute_force.reset_login_attempts(origin)

    # Premium decisions

    def add_premium_player(self, nickname: str, premium_id: Optional[uuid.UUID]) -> None:
        self.premium.add_premium_player(nickname, premium_id)

    def get_premium_status(self, nickname: str) -> Optional[PremiumStatusEntry]:
        return self.premium.get_premium_status(nickname)

    def remove_premium_player(self, nickname: str) -> None:
        self.premium.remove_premium_player(nickname)

    # Maintenance

    def cleanup_expired(self) -> Dict[str, int]:
        now = self.clock()
        expired = [
            identity_id
            for identity_id, entry in self._authorized.items()
            if not entry.is_valid(now, self.ttl_seconds)
        ]
        for identity_id in expired:
            del self._authorized[identity_id]

        removed = {
            "authorized": len(expired),
            "brute_force": self.brute_force.cleanup_expired(),
            "premium": self.premium.cleanup_expired(),
            "sessions": self.sessions.cleanup_expired(),
        }
        if any(removed.values()):
            logger.debug("Cleanup removed %s", removed)
        return removed

    async def _periodic_cleanup(self) -> None:
        self.cleanup_expired()
        stats = self.stats()
        for component in ("authorized", "sessions", "brute_force", "premium"):
            self.metrics_client.gauge(
                "gatekeeper.cache.authorization.size",
                stats[component],
                tag_dict={"component": component},
            )
        if stats["total_requests"] > 100 and stats["hit_rate"] < 80.0:
            logger.warning(
                "Low authorization cache hit rate (%.2f%%)", stats["hit_rate"]
            )

    def stats(self) -> Dict[str, float]:
        total = self._hits + self._misses
        return {
            "authorized": len(self._authorized),
            "sessions": len(self.sessions),
            "brute_force": len(self.brute_force),
            "premium": len(self.premium),
            "hits": self._hits,
            "misses": self._misses,
            "total_requests": total,
            "hit_rate": (self._hits * 100.0 / total) if total > 0 else 0.0,
        }

    def clear_all(self) -> None:
        self._authorized.clear()
        self.sessions.clear()
        self.brute_force.clear()
        self.premium.clear()
        self._hits = 0
        self._misses = 0

    def _evict_least_recently_used(self) -> None:
        oldest = min(
            self._authorized.values(), key=lambda entry: entry.last_access_at, default=None
        )
        if oldest is not None:
            del self._authorized[oldest.identity_id]

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("social.graze.gatekeeper.security")


@dataclass
class AuthorizedSession:
    identity_id: uuid.UUID
    nickname: str
    origin: Optional[str]
    started_at: float
    last_activity_at: float
    is_premium_at_start: bool = False
    remote_identity_id: Optional[uuid.UUID] = None

    def is_active(self, now: float, timeout_seconds: float) -> bool:
        return now - self.last_activity_at < timeout_seconds


class SessionManager:
    """
    Tracks authenticated sessions by identity id.

    A session is only honoured for the same nickname (ignoring case) from the
    same origin. Any mismatch is treated as a hijack attempt: the session is
    dropped and a security warning is logged. Sessions survive disconnects and
    end on logout, on inactivity, or when evicted for capacity.
    """

    def __init__(
        self,
        max_sessions: int = 1000,
        timeout_minutes: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_sessions = max_sessions
        self.timeout_seconds = timeout_minutes * 60
        self.clock = clock
        self._sessions: Dict[uuid.UUID, AuthorizedSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, identity_id: uuid.UUID) -> Optional[AuthorizedSession]:
        return self._sessions.get(identity_id)

    def start_session(
        self,
        identity_id: uuid.UUID,
        nickname: str,
        origin: Optional[str],
        is_premium: bool = False,
        remote_identity_id: Optional[uuid.UUID] = None,
    ) -> AuthorizedSession:
        if identity_id not in self._sessions and len(self._sessions) >= self.max_sessions:
            self._evict_oldest()

        now = self.clock()
        session = AuthorizedSession(
            identity_id=identity_id,
            nickname=nickname,
            origin=origin,
            started_at=now,
            last_activity_at=now,
            is_premium_at_start=is_premium,
            remote_identity_id=remote_identity_id,
        )
        self._sessions[identity_id] = session
        logger.debug("Session started for %s (%s) from %s", nickname, identity_id, origin)
        return session

    def end_session(self, identity_id: uuid.UUID) -> None:
        removed = self._sessions.pop(identity_id, None)
        if removed is not None:
            logger.debug("Session ended for %s (%s)", removed.nickname, identity_id)

    def has_active_session(
        self, identity_id: uuid.UUID, nickname: str, origin: Optional[str]
    ) -> bool:
        session = self._sessions.get(identity_id)
        if session is None:
            return False

        now = self.clock()
        if not session.is_active(now, self.timeout_seconds):
            del self._sessions[identity_id]
            return False

        if session.nickname.lower() != nickname.lower():
            security_logger.warning(
                "Possible session hijack for %s: session nickname %s, presented %s",
                identity_id,
                session.nickname,
                nickname,
            )
            del self._sessions[identity_id]
            return False

        if session.origin != origin:
            security_logger.warning(
                "Session origin mismatch for %s: session %s, presented %s",
                identity_id,
                session.origin,
                origin,
            )
            del self._sessions[identity_id]
            return False

        session.last_activity_at = now
        return True

    def cleanup_expired(self) -> int:
        now = self.clock()
        expired = [
            identity_id
            for identity_id, session in self._sessions.items()
            if not session.is_active(now, self.timeout_seconds)
        ]
        for identity_id in expired:
            del self._sessions[identity_id]
        return len(expired)

    def clear(self) -> None:
        self._sessions.clear()

    def _evict_oldest(self) -> None:
        oldest = min(
            self._sessions.values(), key=lambda session: session.last_activity_at, default=None
        )
        if oldest is not None:
            del self._sessions[oldest.identity_id]
            logger.debug("Evicted session for %s at capacity", oldest.nickname)

"""Connection admission.

Combines the resolution cache, the authorization cache, the record coordinator
and the conflict resolver into a single decision per connection attempt. When
the service cannot decide (no provider answered and nothing is cached, or the
record store is down) the connection is denied.
"""

import asyncio
import logging
import uuid
from enum import Enum
from typing import Optional, Set

from pydantic import BaseModel, ConfigDict

from social.graze.gatekeeper.app.metrics import MetricsClient, NoOpMetricsClient
from social.graze.gatekeeper.app.tasks import BackgroundTaskRunner, TaskRejectedError
from social.graze.gatekeeper.auth.cache import AuthorizationCache, AuthorizedEntry
from social.graze.gatekeeper.auth.conflict import ConflictOutcome, ConflictResolver
from social.graze.gatekeeper.cache.resolution import ResolutionCache
from social.graze.gatekeeper.resolve.result import (
    ResolutionResult,
    ResolutionStatus,
    offline_identity_id,
    validate_username,
)
from social.graze.gatekeeper.store.coordinator import PlayerRecordCoordinator
from social.graze.gatekeeper.store.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

ADMISSION = "admission"


class AdmissionKind(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    DENY = "deny"


class AdmissionDecision(BaseModel):
    """Outcome of a pre-login check.

    ONLINE means the connection may use the remote authentication fast path.
    OFFLINE means the player must authenticate with local credentials.
    """

    model_config = ConfigDict(frozen=True)

    kind: AdmissionKind
    reason: str
    premium_id: Optional[uuid.UUID] = None

    @staticmethod
    def deny(reason: str) -> "AdmissionDecision":
        return AdmissionDecision(kind=AdmissionKind.DENY, reason=reason)

    @staticmethod
    def offline(reason: str) -> "AdmissionDecision":
        return AdmissionDecision(kind=AdmissionKind.OFFLINE, reason=reason)

    @staticmethod
    def online(premium_id: Optional[uuid.UUID]) -> "AdmissionDecision":
        return AdmissionDecision(
            kind=AdmissionKind.ONLINE, reason="premium", premium_id=premium_id
        )


class AdmissionService:
    def __init__(
        self,
        resolution_cache: ResolutionCache,
        auth_cache: AuthorizationCache,
        coordinator: PlayerRecordCoordinator,
        conflicts: ConflictResolver,
        runner: BackgroundTaskRunner,
        admission_timeout_ms: int = 1500,
        premium_check_enabled: bool = True,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self.resolution_cache = resolution_cache
        self.auth_cache = auth_cache
        self.coordinator = coordinator
        self.conflicts = conflicts
        self.runner = runner
        self.admission_timeout_ms = admission_timeout_ms
        self.premium_check_enabled = premium_check_enabled
        self.metrics_client = metrics_client or NoOpMetricsClient()
        self._refreshing: Set[str] = set()

    async def pre_login(self, name: str, origin: Optional[str]) -> AdmissionDecision:
        decision = await self._pre_login(name, origin)
        self.metrics_client.increment(
            "gatekeeper.admission.decision",
            1,
            tag_dict={"kind": decision.kind.value, "reason": decision.reason},
        )
        logger.debug("Admission for %s from %s: %s", name, origin, decision)
        return decision

    async def _pre_login(self, name: str, origin: Optional[str]) -> AdmissionDecision:
        if validate_username(name, ADMISSION) is not None:
            return AdmissionDecision.deny("invalid username")
        name = name.strip()

        if self.auth_cache.is_blocked(origin):
            return AdmissionDecision.deny("brute force")

        if not self.premium_check_enabled:
            return AdmissionDecision.offline("premium check disabled")

        status = await self.premium_status(name)
        if status.status == ResolutionStatus.UNKNOWN:
            logger.warning(
                "Cannot verify premium status of %s (%s), denying", name, status.message
            )
            return AdmissionDecision.deny("verification unavailable")

        is_premium = status.status == ResolutionStatus.PREMIUM
        premium_id = status.identity_id if is_premium else None

        try:
            record = await self.coordinator.find_by_key(name)
        except StoreUnavailableError as e:
            logger.error("Player store unavailable during admission of %s: %s", name, e)
            return AdmissionDecision.deny("store unavailable")

        if record is not None:
            outcome = self.conflicts.evaluate(record, is_premium, premium_id)
            if outcome == ConflictOutcome.DENY_NAME_SNIPE:
                return AdmissionDecision.deny("name snipe")
            if outcome == ConflictOutcome.FORCE_OFFLINE:
                return AdmissionDecision.offline("nickname conflict")

        if is_premium:
            return AdmissionDecision.online(premium_id)
        return AdmissionDecision.offline("offline account")

    async def premium_status(self, name: str) -> ResolutionResult:
        """Premium status from the long-lived cache, falling back to resolution."""
        cached = self.auth_cache.get_premium_status(name)
        if cached is not None:
            if self.auth_cache.premium.is_stale(cached):
                self._schedule_premium_refresh(name)
            if cached.is_premium and cached.premium_id is not None:
                return ResolutionResult.premium(cached.premium_id, name, ADMISSION)
            return ResolutionResult.offline(ADMISSION, "cached offline")

        try:
            result = await asyncio.wait_for(
                self.resolution_cache.resolve(name),
                timeout=self.admission_timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            return ResolutionResult.unknown(ADMISSION, "timeout")

        self._remember(name, result)
        return result

    async def verify_identity(self, name: str, presented_id: uuid.UUID) -> bool:
        try:
            record = await self.coordinator.find_by_key(name)
        except StoreUnavailableError as e:
            logger.error("Player store unavailable verifying %s: %s", name, e)
            return False
        if record is None:
            return True
        return self.coordinator.record_belongs_to(record, presented_id)

    def complete_login(
        self,
        identity_id: uuid.UUID,
        name: str,
        origin: Optional[str],
        is_premium: bool = False,
        premium_id: Optional[uuid.UUID] = None,
    ) -> None:
        now = self.auth_cache.clock()
        self._authorize(
            AuthorizedEntry(
                identity_id=identity_id,
                nickname=name,
                login_ip=origin,
                login_at=now,
                is_premium=is_premium,
                remote_identity_id=premium_id,
                cached_at=now,
                last_access_at=now,
            )
        )

    async def record_login(
        self, name: str, origin: Optional[str], premium_id: Optional[uuid.UUID] = None
    ) -> AuthorizedEntry:
        """Record a successful login reported by the game server.

        The identity comes from the stored record when there is one. Without a
        record it is the presented premium id, or the derived offline id for a
        player who authenticated locally. Raises StoreUnavailableError when the
        record store cannot be read.
        """
        name = name.strip()
        record = await self.coordinator.find_by_key(name)
        now = self.auth_cache.clock()
        if record is not None:
            entry = AuthorizedEntry.from_record(record, origin, premium_id, now)
        else:
            entry = AuthorizedEntry(
                identity_id=premium_id or offline_identity_id(name),
                nickname=name,
                login_ip=origin,
                login_at=now,
                is_premium=premium_id is not None,
                remote_identity_id=premium_id,
                cached_at=now,
                last_access_at=now,
            )
        self._authorize(entry)
        self.metrics_client.increment(
            "gatekeeper.admission.login", tag_dict={"premium": entry.is_premium}
        )
        return entry

    def register_failed_login(self, origin: Optional[str]) -> bool:
        return self.auth_cache.register_failed_login(origin)

    def logout(self, identity_id: uuid.UUID) -> None:
        self.auth_cache.end_session(identity_id)
        self.auth_cache.remove_authorized_player(identity_id)

    def _authorize(self, entry: AuthorizedEntry) -> None:
        self.auth_cache.add_authorized_player(entry.identity_id, entry)
        self.auth_cache.start_session(
            entry.identity_id,
            entry.nickname,
            entry.login_ip,
            entry.is_premium,
            entry.remote_identity_id,
        )
        self.auth_cache.reset_login_attempts(entry.login_ip)

    def _remember(self, name: str, result: ResolutionResult) -> None:
        if result.status == ResolutionStatus.PREMIUM:
            self.auth_cache.add_premium_player(name, result.identity_id)
        elif result.status == ResolutionStatus.OFFLINE:
            self.auth_cache.add_premium_player(name, None)

    def _schedule_premium_refresh(self, name: str) -> None:
        key = name.lower()
        if key in self._refreshing:
            return
        self._refreshing.add(key)
        try:
            self.runner.submit(self._refresh_premium(key, name), name=f"premium-refresh:{key}")
        except TaskRejectedError as e:
            self._refreshing.discard(key)
            logger.debug("Skipping premium refresh of %s: %s", key, e)

    async def _refresh_premium(self, key: str, name: str) -> None:
        try:
            result = await self.resolution_cache.pool.resolve(name)
            self._remember(name, result)
        finally:
            self._refreshing.discard(key)

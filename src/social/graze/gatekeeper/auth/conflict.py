"""Nickname conflict handling between premium and local accounts.

A record is CLEAN until a premium player shows up for a nickname that was
registered locally without a remote identity. At that point the record becomes
CONFLICTED: the local owner keeps the account, and every later login for that
nickname goes through the local credential path, premium or not.
"""

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from social.graze.gatekeeper.app.tasks import BackgroundTaskRunner, TaskRejectedError
from social.graze.gatekeeper.model.players import PlayerRecord
from social.graze.gatekeeper.resolve.result import parse_identity_id
from social.graze.gatekeeper.store.coordinator import PlayerRecordCoordinator

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("social.graze.gatekeeper.security")


class ConflictOutcome(str, Enum):
    NONE = "none"
    FORCE_OFFLINE = "force_offline"
    DENY_NAME_SNIPE = "deny_name_snipe"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConflictResolver:
    def __init__(
        self,
        coordinator: PlayerRecordCoordinator,
        runner: BackgroundTaskRunner,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.coordinator = coordinator
        self.runner = runner
        self.now = now

    def evaluate(
        self,
        record: PlayerRecord,
        is_premium: bool,
        premium_id: Optional[uuid.UUID],
    ) -> ConflictOutcome:
        stored_remote_id = parse_identity_id(record.remote_identity_id)

        if (
            is_premium
            and premium_id is not None
            and stored_remote_id is not None
            and stored_remote_id != premium_id
        ):
            security_logger.error(
                "Name snipe blocked for %s: stored id %s, presented id %s",
                record.nickname,
                stored_remote_id,
                premium_id,
            )
            return ConflictOutcome.DENY_NAME_SNIPE

        if record.conflict_mode:
            logger.debug("Conflicted account %s uses the local credential path", record.nickname)
            return ConflictOutcome.FORCE_OFFLINE

        if is_premium and stored_remote_id is None:
            self.mark_conflicted(record)
            return ConflictOutcome.FORCE_OFFLINE

        return ConflictOutcome.NONE

    def mark_conflicted(self, record: PlayerRecord) -> PlayerRecord:
        """Move a record to CONFLICTED and persist it in the background.

        Already conflicted records are returned unchanged.
        """
        if record.conflict_mode:
            return record

        conflicted = record.model_copy(
            update={
                "conflict_mode": True,
                "conflict_timestamp": self.now(),
                "original_nickname": record.original_nickname or record.nickname,
            }
        )
        logger.info(
            "Premium player detected conflict with local account %s", record.nickname
        )
        try:
            self.runner.submit(
                self.coordinator.save(conflicted),
                name=f"conflict:{record.lowercase_nickname}",
            )
        except TaskRejectedError as e:
            logger.error(
                "Failed to persist conflict state for %s: %s", record.nickname, e
            )
        return conflicted

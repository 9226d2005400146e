import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("social.graze.gatekeeper.security")


@dataclass
class BruteForceEntry:
    attempts: int
    first_attempt_at: float

    def is_expired(self, now: float, timeout_seconds: float) -> bool:
        return now - self.first_attempt_at >= timeout_seconds


class BruteForceTracker:
    """
    Counts failed logins per origin address.

    The window opens at the first failure and lasts `timeout_minutes`. Once
    `max_attempts` failures land inside one window the origin is blocked until
    the window runs out. A None origin is never tracked or blocked.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        timeout_minutes: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_attempts = max_attempts
        self.timeout_seconds = timeout_minutes * 60
        self.clock = clock
        self._entries: Dict[str, BruteForceEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def register_failed_login(self, origin: Optional[str]) -> bool:
        """Record a failure and return True when the origin is now blocked."""
        if origin is None:
            return False

        now = self.clock()
        entry = self._entries.get(origin)
        if entry is None or entry.is_expired(now, self.timeout_seconds):
            entry = BruteForceEntry(attempts=0, first_attempt_at=now)
            self._entries[origin] = entry
        entry.attempts += 1

        blocked = entry.attempts >= self.max_attempts
        if blocked:
            security_logger.warning(
                "Origin %s blocked after %d failed logins", origin, entry.attempts
            )
        else:
            logger.debug(
                "Failed login from %s (%d/%d)", origin, entry.attempts, self.max_attempts
            )
        return blocked

    def is_blocked(self, origin: Optional[str]) -> bool:
        if origin is None:
            return False
        entry = self._entries.get(origin)
        if entry is None:
            return False
        if entry.is_expired(self.clock(), self.timeout_seconds):
            del self._entries[origin]
            return False
        return entry.attempts >= self.max_attempts

    def reset_login_attempts(self, origin: Optional[str]) -> None:
        if origin is not None and self._entries.pop(origin, None) is not None:
            logger.debug("Reset failed login attempts for %s", origin)

    def cleanup_expired(self) -> int:
        now = self.clock()
        expired = [
            origin
            for origin, entry in self._entries.items()
            if entry.is_expired(now, self.timeout_seconds)
        ]
        for origin in expired:
            del self._entries[origin]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

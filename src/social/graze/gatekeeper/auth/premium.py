import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional


@dataclass(frozen=True)
class PremiumStatusEntry:
    """Long-lived premium decision for a nickname.

    `is_stale` turns true once the entry is older than `refresh_threshold` of
    its TTL; a stale entry is still usable but should be re-verified in the
    background.
    """

    is_premium: bool
    premium_id: Optional[uuid.UUID]
    inserted_at: float
    ttl_seconds: float
    refresh_threshold: float

    def age(self, now: float) -> float:
        return now - self.inserted_at

    def is_expired(self, now: float) -> bool:
        return self.age(now) >= self.ttl_seconds

    def is_stale(self, now: float) -> bool:
        return self.age(now) > self.ttl_seconds * self.refresh_threshold


class PremiumStatusCache:
    def __init__(
        self,
        ttl_hours: float = 24,
        refresh_threshold: float = 0.8,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_hours * 60 * 60
        self.refresh_threshold = refresh_threshold
        self.max_entries = max_entries
        self.clock = clock
        self._entries: Dict[str, PremiumStatusEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def add_premium_player(self, nickname: str, premium_id: Optional[uuid.UUID]) -> None:
        """Remember a decision; a None id records the nickname as offline."""
        key = nickname.lower()
        if key not in self._entries and len(self._entries) >= self.max_entries:
            oldest = min(self._entries, key=lambda k: self._entries[k].inserted_at)
            del self._entries[oldest]
        self._entries[key] = PremiumStatusEntry(
            is_premium=premium_id is not None,
            premium_id=premium_id,
            inserted_at=self.clock(),
            ttl_seconds=self.ttl_seconds,
            refresh_threshold=self.refresh_threshold,
        )

    def get_premium_status(self, nickname: str) -> Optional[PremiumStatusEntry]:
        key = nickname.lower()
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self.clock()):
            del self._entries[key]
            return None
        return entry

    def is_stale(self, entry: PremiumStatusEntry) -> bool:
        return entry.is_stale(self.clock())

    def remove_premium_player(self, nickname: str) -> None:
        self._entries.pop(nickname.lower(), None)

    def cleanup_expired(self) -> int:
        now = self.clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

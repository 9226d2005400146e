"""
Player record coordinator.

Fronts a `PlayerStore` with a read-through cache and publishes a change event
after every write so that caches holding derived decisions can drop them.

Ordering on a successful write:
1. the backend write completes,
2. the local record cache is updated synchronously,
3. the change event is handed to the invalidation channel for asynchronous delivery.
"""

import logging
import uuid
from typing import Dict, List, Optional

from social.graze.gatekeeper.model.players import PlayerRecord
from social.graze.gatekeeper.resolve.result import parse_identity_id
from social.graze.gatekeeper.store.errors import InvalidPlayerRecord, StoreUnavailableError
from social.graze.gatekeeper.store.invalidation import InvalidationChannel, RecordChanged
from social.graze.gatekeeper.store.sql import PlayerStore

logger = logging.getLogger(__name__)


class PlayerRecordCoordinator:
    def __init__(
        self,
        store: PlayerStore,
        channel: InvalidationChannel,
        max_cached_records: int = 10000,
    ) -> None:
        self.store = store
        self.channel = channel
        self.max_cached_records = max_cached_records
        self._cache: Dict[str, PlayerRecord] = {}

    @property
    def cached_count(self) -> int:
        return len(self._cache)

    async def health_check(self) -> bool:
        return await self.store.is_connected()

    async def _ensure_connected(self) -> None:
        if not await self.store.is_connected():
            raise StoreUnavailableError.not_connected()

    async def find_by_key(self, nickname: str) -> Optional[PlayerRecord]:
        """Look up a record by nickname in any letter case.

        Raises `StoreUnavailableError` when the store cannot be reached, never
        returning None for an outage.
        """
        key = nickname.lower()
        await self._ensure_connected()

        cached = self._cache.get(key)
        if cached is not None:
            if cached.lowercase_nickname == key:
                return cached
            logger.warning(
                "Cached record key drift: requested %s, cached %s; refetching",
                key,
                cached.lowercase_nickname,
            )
            self._cache.pop(key, None)

        record = await self.store.get(key)
        if record is None:
            return None
        if record.lowercase_nickname != key:
            logger.warning(
                "Stored record key drift: requested %s, stored %s",
                key,
                record.lowercase_nickname,
            )
            return record
        self._remember(record)
        return record

    async def save(self, record: PlayerRecord) -> None:
        if record.lowercase_nickname != record.nickname.lower():
            raise InvalidPlayerRecord.key_mismatch(record.lowercase_nickname)
        if not record.is_valid():
            raise InvalidPlayerRecord.missing_credentials(record.lowercase_nickname)

        await self._ensure_connected()
        await self.store.upsert(record)

        previous = self._cache.get(record.lowercase_nickname)
        self._remember(record)
        if previous == record:
            return
        self.channel.publish(
            RecordChanged(
                lowercase_nickname=record.lowercase_nickname,
                previous=previous,
                current=record,
            )
        )

    async def delete(self, nickname: str) -> bool:
        key = nickname.lower()
        await self._ensure_connected()
        deleted = await self.store.delete(key)

        previous = self._cache.pop(key, None)
        if deleted or previous is not None:
            self.channel.publish(
                RecordChanged(lowercase_nickname=key, previous=previous, current=None)
            )
        return deleted

    async def count(self) -> int:
        await self._ensure_connected()
        return await self.store.count()

    async def list_all(self) -> List[PlayerRecord]:
        await self._ensure_connected()
        return await self.store.list_all()

    async def find_all_conflicted(self) -> List[PlayerRecord]:
        await self._ensure_connected()
        return await self.store.list_conflicted()

    def evict(self, nickname: str) -> None:
        self._cache.pop(nickname.lower(), None)

    def clear_cache(self) -> None:
        self._cache.clear()

    def _remember(self, record: PlayerRecord) -> None:
        key = record.lowercase_nickname
        if key not in self._cache and len(self._cache) >= self.max_cached_records:
            oldest = next(iter(self._cache))
            del self._cache[oldest]
        self._cache[key] = record

    @staticmethod
    def record_belongs_to(record: PlayerRecord, presented_id: uuid.UUID) -> bool:
        """Check a presented identity id against a stored record.

        Records in conflict mode accept any id so that the original local owner
        can still log in through the credential path.
        """
        if record.conflict_mode:
            return True
        if record.identity_id == presented_id:
            return True
        return parse_identity_id(record.remote_identity_id) == presented_id

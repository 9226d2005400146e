"""Two-tier resolution cache with stale-while-revalidate.

Tier 1 is a bounded in-process map keyed by lowercase name. Tier 2 is the Redis
store in `persistent.py`. A tier-1 entry older than `soft_ratio` of its TTL is
still served, but triggers one background refresh for that name.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set

from social.graze.gatekeeper.app.metrics import MetricsClient, NoOpMetricsClient
from social.graze.gatekeeper.app.tasks import BackgroundTaskRunner, TaskRejectedError
from social.graze.gatekeeper.cache.persistent import PersistentResolutionStore
from social.graze.gatekeeper.resolve.pool import ResolverPool
from social.graze.gatekeeper.resolve.result import (
    ResolutionResult,
    ResolutionStatus,
    validate_username,
)

logger = logging.getLogger(__name__)

RESOLUTION_CACHE = "resolution-cache"


@dataclass(frozen=True)
class CacheEntry:
    result: ResolutionResult
    inserted_at: float


class ResolutionCache:
    """
    Serves name resolutions from memory, then Redis, then the resolver pool.

    PREMIUM entries live for `hit_ttl_seconds`; OFFLINE entries for
    `miss_ttl_seconds`. UNKNOWN results are never stored. When tier 1 is full,
    the oldest tenth of entries (by insertion time) is evicted before the new one is stored.
    """

    def __init__(
        self,
        pool: ResolverPool,
        runner: BackgroundTaskRunner,
        persistent: Optional[PersistentResolutionStore] = None,
        hit_ttl_seconds: float = 10 * 60,
        miss_ttl_seconds: float = 3 * 60,
        max_entries: int = 10000,
        soft_ratio: float = 0.8,
        metrics_client: Optional[MetricsClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.pool = pool
        self.runner = runner
        self.persistent = persistent
        self.hit_ttl_seconds = hit_ttl_seconds
        self.miss_ttl_seconds = miss_ttl_seconds
        self.max_entries = max_entries
        self.soft_ratio = soft_ratio
        self.metrics_client = metrics_client or NoOpMetricsClient()
        self.clock = clock

        self._entries: Dict[str, CacheEntry] = {}
        self._refreshing: Set[str] = set()
        self._lock = threading.Lock()
        self._stats = {
            "hits": 0,
            "misses": 0,
            "tier2_hits": 0,
            "refreshes": 0,
            "evictions": 0,
        }

    @property
    def size(self) -> int:
        return len(self._entries)

    def ttl_for(self, result: ResolutionResult) -> float:
        if result.status == ResolutionStatus.PREMIUM:
            return self.hit_ttl_seconds
        return self.miss_ttl_seconds

    def peek(self, name: str) -> Optional[CacheEntry]:
        return self._entries.get(name.strip().lower())

    async def resolve(self, name: str) -> ResolutionResult:
        invalid = validate_username(name, RESOLUTION_CACHE)
        if invalid is not None:
            return invalid

        name = name.strip()
        key = name.lower()

        entry = self._entries.get(key)
        if entry is not None:
            age = self.clock() - entry.inserted_at
            ttl = self.ttl_for(entry.result)
            if age < ttl:
                self._stats["hits"] += 1
                self.metrics_client.increment("gatekeeper.cache.resolution.hit")
                if age >= ttl * self.soft_ratio:
                    self._schedule_refresh(key, name)
                return entry.result
            if self._entries.get(key) is entry:
                del self._entries[key]

        self._stats["misses"] += 1
        self.metrics_client.increment("gatekeeper.cache.resolution.miss")

        if self.persistent is not None:
            stored = await self.persistent.get_by_name(key)
            if stored is not None:
                self._stats["tier2_hits"] += 1
                self._store_local(key, stored)
                return stored

        result = await self.pool.resolve(name)
        await self._write_through(key, result)
        return result

    async def invalidate(self, name: str) -> None:
        key = name.strip().lower()
        self._entries.pop(key, None)
        if self.persistent is not None:
            await self.persistent.delete(key)

    def stats(self) -> Dict[str, int]:
        return {**self._stats, "size": len(self._entries), "refreshing": len(self._refreshing)}

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _schedule_refresh(self, key: str, name: str) -> None:
        if key in self._refreshing:
            return
        self._refreshing.add(key)
        try:
            self.runner.submit(self._refresh(key, name), name=f"refresh:{key}")
        except TaskRejectedError as e:
            self._refreshing.discard(key)
            logger.debug("Skipping refresh of %s: %s", key, e)
            return
        self._stats["refreshes"] += 1

    async def _refresh(self, key: str, name: str) -> None:
        try:
            result = await self.pool.resolve(name)
            if result.status == ResolutionStatus.UNKNOWN:
                logger.debug("Refresh of %s was inconclusive: %s", key, result.message)
                return
            await self._write_through(key, result)
        finally:
            self._refreshing.discard(key)

    async def _write_through(self, key: str, result: ResolutionResult) -> None:
        if result.status == ResolutionStatus.UNKNOWN:
            return
        self._store_local(key, result)
        if self.persistent is not None:
            await self.persistent.put(key, result)

    def _store_local(self, key: str, result: ResolutionResult) -> None:
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                evict_count = max(1, self.max_entries // 10)
                oldest = sorted(
                    self._entries.items(), key=lambda item: item[1].inserted_at
                )[:evict_count]
                for evicted_key, _ in oldest:
                    del self._entries[evicted_key]
                self._stats["evictions"] += len(oldest)
                logger.debug("Evicted %d resolution entries", len(oldest))
            self._entries[key] = CacheEntry(result=result, inserted_at=self.clock())

"""Redis-backed second tier of the resolution cache.

Results are stored by lowercase name. Premium results are additionally indexed
by identity id so that a known id can be mapped back to its canonical name.
UNKNOWN results are never written.
"""

import logging
import uuid
from typing import Optional

import sentry_sdk
from pydantic import ValidationError
from redis import asyncio as redis
from redis.exceptions import RedisError

from social.graze.gatekeeper.resolve.result import ResolutionResult, ResolutionStatus

logger = logging.getLogger(__name__)

NAME_KEY_PREFIX = "gatekeeper:resolution:name:"
ID_KEY_PREFIX = "gatekeeper:resolution:id:"


def _decode(value) -> str:
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


class PersistentResolutionStore:
    """
    Survives process restarts and tier-1 eviction.

    Redis failures are logged and reported, and otherwise behave like a miss (on
    read) or a dropped write. Callers never see a Redis exception.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        premium_ttl_seconds: int = 30 * 24 * 60 * 60,
        offline_ttl_seconds: int = 60 * 60,
    ) -> None:
        self.redis_client = redis_client
        self.premium_ttl_seconds = premium_ttl_seconds
        self.offline_ttl_seconds = offline_ttl_seconds

    async def get_by_name(self, name: str) -> Optional[ResolutionResult]:
        try:
            value = await self.redis_client.get(f"{NAME_KEY_PREFIX}{name.lower()}")
        except (RedisError, OSError) as e:
            sentry_sdk.capture_exception(e)
            logger.warning("Tier 2 read failed for %s: %s", name, e)
            return None
        if value is None:
            return None
        try:
            return ResolutionResult.model_validate_json(value)
        except ValidationError:
            logger.warning("Discarding unreadable tier 2 entry for %s", name)
            return None

    async def get_by_id(self, identity_id: uuid.UUID) -> Optional[ResolutionResult]:
        try:
            name = await self.redis_client.get(f"{ID_KEY_PREFIX}{identity_id}")
        except (RedisError, OSError) as e:
            sentry_sdk.capture_exception(e)
            logger.warning("Tier 2 id read failed for %s: %s", identity_id, e)
            return None
        if name is None:
            return None
        result = await self.get_by_name(_decode(name))
        if result is None or result.identity_id != identity_id:
            return None
        return result

    async def put(self, name: str, result: ResolutionResult) -> bool:
        if result.status == ResolutionStatus.UNKNOWN:
            return False

        key = name.lower()
        ttl = (
            self.premium_ttl_seconds
            if result.status == ResolutionStatus.PREMIUM
            else self.offline_ttl_seconds
        )
        try:
            async with self.redis_client.pipeline() as redis_pipe:
                redis_pipe.set(f"{NAME_KEY_PREFIX}{key}", result.model_dump_json(), ex=ttl)
                if result.identity_id is not None:
                    redis_pipe.set(f"{ID_KEY_PREFIX}{result.identity_id}", key, ex=ttl)
                await redis_pipe.execute()
        except (RedisError, OSError) as e:
            sentry_sdk.capture_exception(e)
            logger.warning("Tier 2 write failed for %s: %s", name, e)
            return False
        return True

    async def delete(self, name: str) -> None:
        key = name.lower()
        existing = await self.get_by_name(key)
        try:
            keys = [f"{NAME_KEY_PREFIX}{key}"]
            if existing is not None and existing.identity_id is not None:
                keys.append(f"{ID_KEY_PREFIX}{existing.identity_id}")
            await self.redis_client.delete(*keys)
        except (RedisError, OSError) as e:
            sentry_sdk.capture_exception(e)
            logger.warning("Tier 2 delete failed for %s: %s", name, e)

    async def count(self) -> int:
        total = 0
        try:
            async for _ in self.redis_client.scan_iter(match=f"{NAME_KEY_PREFIX}*"):
                total += 1
        except (RedisError, OSError) as e:
            sentry_sdk.capture_exception(e)
            logger.warning("Tier 2 count failed: %s", e)
        return total

"""Short-TTL key/value cache on Redis.

Read-through accelerator only: every cached value also lives in the
database, so a miss (or an unreachable Redis) falls back to a query.
"""

import logging
from typing import Any

import orjson
import redis.asyncio as aioredis

from crowdbus.config import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "crowdbus:"


class Cache:
    """JSON values under a common key prefix, with per-key TTLs."""

    def __init__(self, redis: aioredis.Redis | None = None) -> None:
        self._redis = redis

    async def connect(self) -> None:
        self._redis = aioredis.from_url(settings.redis_url, decode_responses=False)

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()

    @property
    def redis(self) -> aioredis.Redis | None:
        return self._redis

    async def get(self, key: str) -> Any | None:
        if not self._redis:
            return None
        try:
            raw = await self._redis.get(KEY_PREFIX + key)
        except Exception:
            logger.exception("Cache read failed for %s", key)
            return None
        return orjson.loads(raw) if raw is not None else None

    async def put(self, key: str, value: Any, ttl: int) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(KEY_PREFIX + key, orjson.dumps(value), ex=ttl)
        except Exception:
            logger.exception("Cache write failed for %s", key)

    async def forget(self, key: str) -> None:
        if not self._redis:
            return
        try:
            await self._redis.delete(KEY_PREFIX + key)
        except Exception:
            logger.exception("Cache delete failed for %s", key)

    async def forget_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern; returns how many went."""
        if not self._redis:
            return 0
        removed = 0
        try:
            async for key in self._redis.scan_iter(match=KEY_PREFIX + pattern):
                removed += await self._redis.delete(key)
        except Exception:
            logger.exception("Cache pattern delete failed for %s", pattern)
        return removed

"""Redis-backed concurrency gauges.

One hash per organization (``quota:concurrent:{org}``) with a field per
metric. Increments use HINCRBY; decrements run a Lua script that clamps
at zero, so neither needs a store transaction.
"""

from __future__ import annotations

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from src.core.exceptions import TransientStoreError
from src.core.logging import get_logger

log = get_logger(__name__)

DECREMENT_CLAMP_LUA = """
local current = tonumber(redis.call('HGET', KEYS[1], ARGV[1]) or '0')
if current <= 0 then
    redis.call('HSET', KEYS[1], ARGV[1], 0)
    return 0
end
return redis.call('HINCRBY', KEYS[1], ARGV[1], -1)
"""


class RedisConcurrencyGauge:
    """Atomic in-flight counters keyed by (org, metric)."""

    def __init__(self, redis_url: str | None = None, client: aioredis.Redis | None = None) -> None:
        self._redis_url = redis_url
        self._redis: aioredis.Redis | None = client
        self._decrement_script = client.register_script(DECREMENT_CLAMP_LUA) if client else None

    async def connect(self) -> None:
        """Initialize the Redis connection."""
        if self._redis is None:
            if not self._redis_url:
                msg = "redis_url is required"
                raise ValueError(msg)
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
            self._decrement_script = self._redis.register_script(DECREMENT_CLAMP_LUA)
            log.info("redis_connected")

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self._decrement_script = None
            log.info("redis_closed")

    async def _get_redis(self) -> aioredis.Redis:
        if self._redis is None:
            await self.connect()
        assert self._redis is not None
        return self._redis

    @staticmethod
    def key(org_id: str) -> str:
        return f"quota:concurrent:{org_id}"

    async def increment(self, org_id: str, metric: str) -> int:
        r = await self._get_redis()
        try:
            return int(await r.hincrby(self.key(org_id), metric, 1))
        except RedisError as exc:
            raise TransientStoreError("Gauge increment failed", context={"metric": metric}) from exc

    async def decrement(self, org_id: str, metric: str) -> int:
        await self._get_redis()
        assert self._decrement_script is not None
        try:
            return int(await self._decrement_script(keys=[self.key(org_id)], args=[metric]))
        except RedisError as exc:
            raise TransientStoreError("Gauge decrement failed", context={"metric": metric}) from exc

    async def get(self, org_id: str, metric: str) -> int:
        r = await self._get_redis()
        try:
            raw = await r.hget(self.key(org_id), metric)
        except RedisError as exc:
            raise TransientStoreError("Gauge read failed", context={"metric": metric}) from exc
        return max(0, int(raw or 0))

    async def reset(self, org_id: str, metric: str) -> None:
        r = await self._get_redis()
        try:
            await r.hset(self.key(org_id), metric, 0)
        except RedisError as exc:
            raise TransientStoreError("Gauge reset failed", context={"metric": metric}) from exc

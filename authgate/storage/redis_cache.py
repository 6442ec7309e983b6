from __future__ import annotations

import uuid
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from authgate.logging import get_logger

logger = get_logger(__name__)


class RedisBackend:
    """Redis key-value backend for sessions, generation floors and rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic compare-and-swap; the session record is the serialization point
    _CAS_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current ~= ARGV[1] then
  return 0
end
local ttl = tonumber(ARGV[3])
if ttl and ttl > 0 then
  redis.call('SET', KEYS[1], ARGV[2], 'EX', ttl)
else
  redis.call('SET', KEYS[1], ARGV[2], 'KEEPTTL')
end
return 1
"""

    # Sliding-window log: one sorted-set member per admitted request
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local retry_after = window
  if oldest[2] then
    retry_after = math.ceil(tonumber(oldest[2]) + window - now)
  end
  return {0, count, math.max(retry_after, 1)}
end

redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, math.max(math.ceil(window), 1))
return {1, count + 1, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._cas = self.client.register_script(self._CAS_SCRIPT)
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the runtime relies on it."""
        # A short-lived sync client keeps the async client off a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, *, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is not None and ttl_seconds > 0:
            await self.client.set(key, value, ex=ttl_seconds)
        else:
            await self.client.set(key, value)

    async def get_and_set(
        self, key: str, value: str, *, ttl_seconds: Optional[int] = None
    ) -> Optional[str]:
        # SET ... GET needs Redis 6.2+
        if ttl_seconds is not None and ttl_seconds > 0:
            return await self.client.set(key, value, ex=ttl_seconds, get=True)
        return await self.client.set(key, value, get=True)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def incr(self, key: str) -> int:
        return int(await self.client.incr(key))

    async def compare_and_swap(
        self, key: str, expected: str, new: str, *, ttl_seconds: Optional[int] = None
    ) -> bool:
        result = await self._cas(keys=[key], args=[expected, new, ttl_seconds or 0])
        return bool(int(result))

    async def sliding_window_hit(
        self, key: str, *, now: float, window_seconds: int, limit: int
    ) -> Tuple[bool, int, int]:
        allowed, count, retry_after = await self._sliding_window(
            keys=[key],
            args=[now, window_seconds, limit, f"{now}:{uuid.uuid4().hex}"],
        )
        return bool(int(allowed)), int(count), int(retry_after)

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception as exc:
            logger.warning("redis_ping_failed", error=str(exc))
            return False

    async def close(self) -> None:
        await self.client.aclose()

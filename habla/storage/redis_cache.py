from __future__ import annotations

import hashlib
import uuid
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding the shared sliding-window rate-limit counters."""

    # Atomic prune + count + record on a sorted set of attempt timestamps
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)

if count >= limit then
  return {0, count}
end

redis.call('ZADD', key, now, member)
redis.call('PEXPIRE', key, math.ceil(window * 1000))
return {1, count + 1}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a throwaway loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash the logical key so client-supplied parts cannot collide with other namespaces."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def hit(
        self, key: str, limit: int, window_seconds: float, now: float
    ) -> Tuple[bool, int]:
        """Record an attempt if the trailing window has room.

        Returns:
            ``(allowed, attempts_in_window)``
        """
        result = await self._sliding_window(
            keys=[self._normalize_rate_key(key)],
            args=[now, window_seconds, limit, f"{now}:{uuid.uuid4().hex}"],
        )
        allowed, count = result
        return bool(int(allowed)), int(count)

    async def sweep(self, now: float) -> int:
        # Keys expire on their own via PEXPIRE
        return 0

    async def close(self) -> None:
        await self.client.aclose()

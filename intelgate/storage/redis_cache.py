from __future__ import annotations

import hashlib
from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from intelgate.clock import ensure_aware
from intelgate.logging import get_logger
from intelgate.storage.errors import StorageUnavailable
from intelgate.storage.models import RateLimitHit


class RedisCache:
    """Redis-backed fixed-window counters shared across processes."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Rollover, check and increment run as one server-side step
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local max_calls = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'count', 'start')
local count = tonumber(data[1])
local start = tonumber(data[2])

if count == nil or start == nil or (now - start) >= window then
  count = 0
  start = now
end

if count >= max_calls then
  return {0, count, start}
end

count = count + 1
redis.call('HSET', key, 'count', count, 'start', start)
redis.call('PEXPIRE', key, math.max(window - math.max(0, now - start), 1))
return {1, count, start}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.logger = get_logger(__name__)
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling distributed counters."""

        # Short-lived sync client keeps the async pool off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash the logical key so actor ids cannot inject delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:fw:{digest}"

    async def hit_rate_limit(
        self, key: str, max_calls: int, window_seconds: int, now: datetime
    ) -> RateLimitHit:
        now_ms = int(ensure_aware(now).timestamp() * 1000)
        try:
            allowed, count, start = await self._fixed_window(
                keys=[self._normalize_rate_key(key)],
                args=[now_ms, int(window_seconds) * 1000, int(max_calls)],
            )
        except RedisError as exc:
            self.logger.error("redis_rate_limit_failed", error=str(exc))
            raise StorageUnavailable(str(exc), backend="redis") from exc
        return RateLimitHit(
            allowed=bool(int(allowed)),
            count=int(count),
            window_started_at=datetime.fromtimestamp(int(start) / 1000, tz=timezone.utc),
        )

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()

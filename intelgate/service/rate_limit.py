from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import Any, Optional

from intelgate.clock import Clock, SystemClock
from intelgate.logging import get_logger
from intelgate.service.errors import StorageUnavailableError
from intelgate.storage.common import window_elapsed
from intelgate.storage.errors import StorageUnavailable
from intelgate.storage.models import RateLimitHit

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_seconds: int
    limit: int


class RateLimiter:
    """Fixed-window limiter over an atomic counter store.

    ``store`` is any object exposing ``hit_rate_limit(key, max_calls,
    window_seconds, now)``; a ``cache`` (Redis) takes precedence when given so
    counters are shared across processes.
    """

    def __init__(self, store: Any, *, cache: Any = None, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.cache = cache
        self.clock = clock or SystemClock()

    @staticmethod
    def key_for(actor_id: str, operation: str) -> str:
        return f"{operation}:{actor_id}"

    @staticmethod
    def key_for_address(address: str, operation: str) -> str:
        """Key for callers without an actor id (anonymous or scheduled)."""
        return f"{operation}:ip:{address}"

    async def check(self, key: str, max_calls: int, window_seconds: int) -> RateLimitDecision:
        if max_calls < 1:
            raise ValueError(f"max_calls must be at least 1, got {max_calls}")
        if window_seconds < 1:
            raise ValueError(f"window_seconds must be at least 1, got {window_seconds}")

        now = self.clock.now()
        hit = await self._hit(key, max_calls, window_seconds, now)

        elapsed = window_elapsed(hit.window_started_at, now)
        reset_seconds = max(1, math.ceil(window_seconds - elapsed))
        if not hit.allowed:
            logger.warning(
                "rate_limit_denied",
                key=key,
                limit=max_calls,
                window_seconds=window_seconds,
                reset_seconds=reset_seconds,
            )
            return RateLimitDecision(
                allowed=False, remaining=0, reset_seconds=reset_seconds, limit=max_calls
            )
        return RateLimitDecision(
            allowed=True,
            remaining=max(0, max_calls - hit.count),
            reset_seconds=reset_seconds,
            limit=max_calls,
        )

    async def _hit(self, key: str, max_calls: int, window_seconds: int, now) -> RateLimitHit:
        try:
            if self.cache is not None:
                return await self.cache.hit_rate_limit(key, max_calls, window_seconds, now)
            return await asyncio.to_thread(
                self.store.hit_rate_limit, key, max_calls, window_seconds, now
            )
        except StorageUnavailable as exc:
            logger.error("rate_limit_backend_unavailable", key=key, backend=exc.backend, error=exc.message)
            raise StorageUnavailableError() from exc
        except Exception as exc:
            # Fail closed: an unknown backend failure never admits the call
            logger.error(
                "rate_limit_backend_failed",
                key=key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StorageUnavailableError() from exc

"""Tests for the fixed-window rate limiter and its counter backends."""
import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from intelgate.service.errors import StorageUnavailableError
from intelgate.service.rate_limit import RateLimiter
from intelgate.storage.errors import StorageUnavailable
from intelgate.storage.models import RateLimitHit
from intelgate.storage.redis_cache import RedisCache


@pytest.fixture
def limiter(store, clock):
    return RateLimiter(store, clock=clock)


class TestFixedWindow:
    """Window arithmetic against the in-memory counter store."""

    async def test_allows_up_to_max_then_denies(self, limiter):
        """The (max+1)th call inside one window is denied."""
        for i in range(5):
            decision = await limiter.check("SIGNAL_DELETE:alice", 5, 60)
            assert decision.allowed is True
            assert decision.remaining == 5 - (i + 1)
            assert decision.limit == 5

        denied = await limiter.check("SIGNAL_DELETE:alice", 5, 60)
        assert denied.allowed is False
        assert denied.remaining == 0
        assert denied.reset_seconds >= 1

    async def test_denied_call_does_not_increment(self, limiter, store):
        """Rejected calls leave the stored count at max."""
        for _ in range(3):
            await limiter.check("k", 3, 60)
        for _ in range(4):
            assert (await limiter.check("k", 3, 60)).allowed is False
        assert store.get_rate_limit_counter("k").count == 3

    async def test_window_rolls_over_after_window_seconds(self, limiter, clock):
        """A new window starts once the old one has fully elapsed."""
        for _ in range(2):
            await limiter.check("k", 2, 60)
        assert (await limiter.check("k", 2, 60)).allowed is False

        clock.advance(59)
        assert (await limiter.check("k", 2, 60)).allowed is False

        clock.advance(1)
        decision = await limiter.check("k", 2, 60)
        assert decision.allowed is True
        assert decision.remaining == 1

    async def test_reset_seconds_counts_down(self, limiter, clock):
        """reset_seconds is the rounded-up time left in the window."""
        first = await limiter.check("k", 10, 3600)
        assert first.reset_seconds == 3600

        clock.advance(100.4)
        later = await limiter.check("k", 10, 3600)
        assert later.reset_seconds == 3500

        clock.advance(3499)
        last = await limiter.check("k", 10, 3600)
        assert last.reset_seconds == 1

    async def test_keys_are_independent(self, limiter):
        """Exhausting one actor's quota leaves others untouched."""
        await limiter.check(RateLimiter.key_for("alice", "OP"), 1, 60)
        assert (await limiter.check(RateLimiter.key_for("alice", "OP"), 1, 60)).allowed is False
        assert (await limiter.check(RateLimiter.key_for("bob", "OP"), 1, 60)).allowed is True
        assert (await limiter.check(RateLimiter.key_for("alice", "OTHER"), 1, 60)).allowed is True

    async def test_invalid_configuration_rejected(self, limiter, store):
        """Zero or negative limits are configuration errors and touch no counter."""
        with pytest.raises(ValueError):
            await limiter.check("k", 0, 60)
        with pytest.raises(ValueError):
            await limiter.check("k", 10, 0)
        with pytest.raises(ValueError):
            await limiter.check("k", -1, 60)
        assert store.get_rate_limit_counter("k") is None

    def test_key_formats(self):
        assert RateLimiter.key_for("user-1", "SIGNAL_CREATE") == "SIGNAL_CREATE:user-1"
        assert RateLimiter.key_for_address("10.0.0.1", "LOGIN") == "LOGIN:ip:10.0.0.1"

    async def test_denial_is_logged(self, limiter):
        await limiter.check("k", 1, 60)
        with patch("intelgate.service.rate_limit.logger") as mock_logger:
            await limiter.check("k", 1, 60)
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "rate_limit_denied"


class TestFailClosed:
    """Backend failures never admit a call."""

    async def test_storage_unavailable_maps_to_service_error(self, clock):
        store = MagicMock()
        store.hit_rate_limit.side_effect = StorageUnavailable("down", backend="postgres")
        limiter = RateLimiter(store, clock=clock)

        with pytest.raises(StorageUnavailableError):
            await limiter.check("k", 10, 60)

    async def test_unexpected_error_maps_to_service_error(self, clock):
        store = MagicMock()
        store.hit_rate_limit.side_effect = RuntimeError("boom")
        limiter = RateLimiter(store, clock=clock)

        with pytest.raises(StorageUnavailableError):
            await limiter.check("k", 10, 60)


class TestBackends:
    async def test_cache_preferred_over_store(self, clock):
        """When a cache is configured the store is never consulted."""
        store = MagicMock()
        cache = MagicMock()
        cache.hit_rate_limit = AsyncMock(
            return_value=RateLimitHit(allowed=True, count=1, window_started_at=clock.now())
        )
        limiter = RateLimiter(store, cache=cache, clock=clock)

        decision = await limiter.check("k", 10, 60)

        assert decision.allowed is True
        assert decision.remaining == 9
        cache.hit_rate_limit.assert_awaited_once_with("k", 10, 60, clock.now())
        store.hit_rate_limit.assert_not_called()

    async def test_redis_script_arguments(self):
        """The Lua script receives a hashed key and millisecond arguments."""
        cache = RedisCache.__new__(RedisCache)
        cache.logger = MagicMock()
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        now_ms = int(now.timestamp() * 1000)
        cache._fixed_window = AsyncMock(return_value=[1, 3, now_ms - 5000])

        hit = await cache.hit_rate_limit("SIGNAL_CREATE:alice", 100, 3600, now)

        assert hit.allowed is True
        assert hit.count == 3
        assert (now - hit.window_started_at).total_seconds() == 5
        kwargs = cache._fixed_window.call_args.kwargs
        assert kwargs["keys"][0].startswith("rate:fw:")
        assert "alice" not in kwargs["keys"][0]
        assert kwargs["args"] == [now_ms, 3600 * 1000, 100]

    async def test_redis_denial_decoded(self):
        cache = RedisCache.__new__(RedisCache)
        cache.logger = MagicMock()
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        cache._fixed_window = AsyncMock(return_value=[0, 5, int(now.timestamp() * 1000)])

        hit = await cache.hit_rate_limit("k", 5, 60, now)

        assert hit.allowed is False
        assert hit.count == 5

    async def test_redis_error_is_storage_unavailable(self):
        cache = RedisCache.__new__(RedisCache)
        cache.logger = MagicMock()
        cache._fixed_window = AsyncMock(side_effect=RedisConnectionError("refused"))

        with pytest.raises(StorageUnavailable) as exc_info:
            await cache.hit_rate_limit("k", 5, 60, datetime.now(timezone.utc))
        assert exc_info.value.backend == "redis"


class TestConcurrency:
    """Check-and-increment is atomic per key."""

    def test_threads_never_exceed_limit(self, store, clock):
        max_calls = 25
        workers = 100
        barrier = threading.Barrier(workers)

        def hit():
            barrier.wait()
            return store.hit_rate_limit("hot", max_calls, 60, clock.now()).allowed

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(lambda _: hit(), range(workers)))

        assert sum(results) == max_calls
        assert store.get_rate_limit_counter("hot").count == max_calls

    async def test_gathered_checks_never_exceed_limit(self, limiter):
        decisions = await asyncio.gather(*(limiter.check("hot", 10, 60) for _ in range(40)))
        assert sum(1 for d in decisions if d.allowed) == 10


class TestCounterCleanup:
    def test_only_stale_counters_removed(self, store, clock):
        store.hit_rate_limit("old", 5, 60, clock.now())
        clock.advance(3000)
        store.hit_rate_limit("fresh", 5, 60, clock.now())
        clock.advance(600)

        removed = store.cleanup_rate_limit_counters(clock.now(), 3600)

        assert removed == 1
        assert store.get_rate_limit_counter("old") is None
        assert store.get_rate_limit_counter("fresh").count == 1

from __future__ import annotations

import threading
from datetime import timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlparse, urlunparse

from intelgate.clock import Clock, SystemClock
from intelgate.config import RateLimitBackend, get_settings, reset_settings_cache
from intelgate.logging import get_logger
from intelgate.service.audit import AuditLogger
from intelgate.service.errors import StorageUnavailableError
from intelgate.service.gate import SecurityGate
from intelgate.service.identity import HeaderIdentityResolver
from intelgate.service.operations import load_operation_table
from intelgate.service.rate_limit import RateLimiter
from intelgate.service.sessions import SessionManager
from intelgate.service.sweeper import SessionSweeper
from intelgate.storage.errors import StorageUnavailable
from intelgate.storage.memory import MemoryStore
from intelgate.storage.postgres import PostgresStore
from intelgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the process-wide stores and gate services for the FastAPI app."""

    def __init__(self, *, clock: Optional[Clock] = None):
        self.settings = get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            rate_limit_backend=self.settings.rate_limit_backend.value,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                # Test runs never touch the shared state file
                fs_root = None if self.settings.test_mode else self.settings.shared_fs_root
                self.store: Any = MemoryStore(fs_root=fs_root)
            else:
                self.store = PostgresStore(self.settings.database_url)
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.rate_limit_backend == RateLimitBackend.REDIS:
            self.cache = self._connect_cache()

        self.operations = load_operation_table(self.settings.operations_file)
        self.audit = AuditLogger(self.store, clock=self.clock)
        self.limiter = RateLimiter(self.store, cache=self.cache, clock=self.clock)
        self.sessions = SessionManager(
            self.store,
            audit=self.audit,
            clock=self.clock,
            ttl=timedelta(days=self.settings.session_ttl_days),
            inactivity_timeout_minutes=self.settings.session_inactivity_timeout_minutes,
        )
        self.gate = SecurityGate(self.operations, self.limiter, self.audit)
        self.identity = HeaderIdentityResolver()
        self.sweeper = SessionSweeper(
            self.sweep, interval=self.settings.session_cleanup_interval_seconds
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            operations=len(self.operations),
        )

    def _connect_cache(self) -> Optional[RedisCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "RATE_LIMIT_BACKEND=redis requires a reachable REDIS_URL; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to keep counters in the store."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=f"Running without Redis under {fallback_mode}; rate-limit counters are per-store only.",
            mode=fallback_mode,
        )
        return None

    def sweep(self) -> Dict[str, int]:
        """Delete expired sessions and counters whose window has long passed."""
        sessions_deleted = self.sessions.cleanup_expired_sessions()
        counters_deleted = 0
        if self.cache is None:
            try:
                counters_deleted = self.store.cleanup_rate_limit_counters(
                    self.clock.now(), self.operations.max_window_seconds
                )
            except StorageUnavailable as exc:
                raise StorageUnavailableError() from exc
        return {"sessions_deleted": sessions_deleted, "counters_deleted": counters_deleted}

    async def aclose(self) -> None:
        """Flush audit writes and release backend connections."""
        await self.sweeper.stop()
        await self.audit.drain()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists; creation happens under the lock.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, clock: Optional[Clock] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(clock=clock)
        return runtime

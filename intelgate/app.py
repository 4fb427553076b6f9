from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from intelgate.api.error_handling import register_exception_handlers
from intelgate.api.routes import router
from intelgate.config import Settings
from intelgate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the periodic session sweep; flush audit writes on shutdown."""
    from intelgate.service.runtime import get_runtime

    runtime = get_runtime()
    if not runtime.settings.test_mode:
        await runtime.sweeper.start()

    yield

    try:
        await runtime.aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc), error_type=type(exc).__name__)


app = FastAPI(title="intelgate", version=__version__, lifespan=lifespan)


# Local dev hosts only; never a wildcard
_DEV_ORIGINS = ["http://localhost", "http://localhost:3000", "http://127.0.0.1:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins or _DEV_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Session-Id",
        "X-Actor-Id",
        "X-Actor-Role",
        "X-Request-ID",
    ],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind X-Request-ID (or a fresh id) to the logging context and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


async def _check_component(component: str, check) -> str:
    """Run a blocking connectivity check off the loop with a hard timeout."""
    try:
        await asyncio.wait_for(asyncio.to_thread(check), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=component, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        return "unhealthy"
    except Exception as exc:
        logger.error("health_check_failed", component=component, error=str(exc))
        return "unhealthy"
    return "healthy"


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and Redis reachability."""
    from intelgate.service.runtime import get_runtime

    runtime = get_runtime()
    verify_store = getattr(runtime.store, "verify_connection", None)
    checks: Dict[str, Dict[str, Any]] = {
        "database": (
            {"status": await _check_component("database", verify_store)}
            if verify_store is not None
            else {"status": "healthy", "type": "memory"}
        ),
        "redis": (
            {"status": await _check_component("redis", runtime.cache.verify_connection)}
            if runtime.cache is not None
            else {"status": "not_configured"}
        ),
    }
    healthy = all(check["status"] != "unhealthy" for check in checks.values())

    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "audit_pending": runtime.audit.pending,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

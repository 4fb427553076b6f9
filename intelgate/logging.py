"""structlog setup for the gate.

Every entry carries the request correlation id. Credentials and client
identifiers are partially masked before rendering.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

_correlation_id: ContextVar[Optional[str]] = ContextVar("intelgate_correlation_id", default=None)

# Matched as substrings of lower-cased event keys
_MASKED_FIELDS = (
    "password",
    "secret",
    "token",
    "api_key",
    "authorization",
    "session_id",
    "fingerprint",
    "client_agent",
    "network_address",
)

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    value = correlation_id or str(uuid.uuid4())
    _correlation_id.set(value)
    return value


def _mask(value: str) -> str:
    if len(value) <= 4:
        return value
    return f"{value[:2]}***{value[-2:]}"


def _with_correlation_id(_logger: Any, _method: str, event: Dict[str, Any]) -> Dict[str, Any]:
    cid = _correlation_id.get()
    if cid:
        event.setdefault("correlation_id", cid)
    return event


def _mask_sensitive_fields(_logger: Any, _method: str, event: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event.items()):
        if not isinstance(value, str):
            continue
        lowered = key.lower()
        if any(marker in lowered for marker in _MASKED_FIELDS):
            event[key] = _mask(value)
    return event


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    """(Re)configure structlog.

    JSON lines in production; colored console output when ``dev_mode`` is
    set or ``json_output`` is off.
    """
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _with_correlation_id,
        _mask_sensitive_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    dev_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_LEAKY_PATTERNS = [
    re.compile(pattern)
    for pattern in (
        # SQL fragments and driver messages
        r"(?i)(sql|query|select|insert|update|delete|where|from|join)\s+.{0,50}",
        r"(?i)database\s+error",
        r"(?i)connection\s+.*\s+(failed|refused|timeout)",
        r"(?i)(relation|foreign\s+key)\s+\S+",
        # Filesystem paths
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+",
        r"(?i)[a-z]:\\[^\s]+",
        # Inline credentials
        r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+",
        r"(?i)traceback\s*\(most recent call last\)",
    )
]

_MAX_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub SQL, paths, inline credentials and tracebacks from a caller-visible message."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _LEAKY_PATTERNS:
        error = pattern.sub(replacement, error)
    if len(error) > _MAX_ERROR_LENGTH:
        error = error[: _MAX_ERROR_LENGTH - 3] + "..."
    return error

from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - session_invalid (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - storage_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthRequiredError(ServiceError):
    """No authenticated actor accompanied the request (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "authentication required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionInvalidError(AuthRequiredError):
    """Session failed validation. ``reason`` is for logs, never for callers."""
    error_code = "session_invalid"

    def __init__(self, reason: str, message: str = "session is not valid") -> None:
        super().__init__(message)
        self.reason = reason


class ForbiddenError(ServiceError):
    """Actor role is below the operation's tier (403)."""
    status_code = 403
    error_code = "forbidden"

    def __init__(self, message: str = "insufficient permissions", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ValidationFailedError(ServiceError):
    """Input rejected before the business call (400)."""
    status_code = 400
    error_code = "validation_error"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Quota exhausted for the current window (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        reset_seconds: int,
        *,
        limit: Optional[int] = None,
        message: str = "rate limit exceeded",
    ) -> None:
        super().__init__(message, detail={"reset_seconds": reset_seconds})
        self.reset_seconds = reset_seconds
        self.limit = limit


class StorageUnavailableError(ServiceError):
    """Backing store unreachable; security checks fail closed (503)."""
    status_code = 503
    error_code = "storage_unavailable"

    def __init__(self, message: str = "storage temporarily unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UnknownOperationError(LookupError):
    """Operation name missing from the operation table; a programming error."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"unknown operation: {operation}")
        self.operation = operation


__all__ = [
    "ServiceError",
    "AuthRequiredError",
    "SessionInvalidError",
    "ForbiddenError",
    "ValidationFailedError",
    "NotFoundError",
    "RateLimitedError",
    "StorageUnavailableError",
    "UnknownOperationError",
]

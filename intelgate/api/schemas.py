from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "session_invalid",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "method_not_allowed",
    "storage_unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class SessionResponse(BaseModel):
    id: str
    actor_id: str
    state: str
    network_address: Optional[str] = None
    client_agent: Optional[str] = None
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    revoked_reason: Optional[str] = None
    revoked_at: Optional[datetime] = None


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class SessionValidationResponse(BaseModel):
    valid: bool
    session: Optional[SessionResponse] = None


class SessionSecurityResponse(BaseModel):
    suspicious: bool
    last_seen_network_address: Optional[str] = None
    last_seen_client_agent: Optional[str] = None
    concurrent_sessions: bool
    active_sessions: int


class RevokeSessionsRequest(BaseModel):
    reason: str = Field("admin_revoke", pattern="^(admin_revoke|suspension|compromise)$")
    except_session_id: Optional[str] = Field(None, max_length=128)


class RevokeSessionsResponse(BaseModel):
    user_id: str
    revoked: int


class CleanupResponse(BaseModel):
    sessions_deleted: int
    counters_deleted: int


class AuditLogQuery(BaseModel):
    actor_id: Optional[str] = Field(None, max_length=256)
    action: Optional[str] = Field(None, max_length=128)
    resource_type: Optional[str] = Field(None, max_length=128)
    limit: int = Field(100, ge=1, le=500)


class AuditEntryResponse(BaseModel):
    id: str
    actor_id: str
    action: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class AuditLogListResponse(BaseModel):
    items: List[AuditEntryResponse]

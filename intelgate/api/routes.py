from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, Query, Request, Response

from intelgate.api.schemas import (
    AuditEntryResponse,
    AuditLogListResponse,
    AuditLogQuery,
    CleanupResponse,
    Envelope,
    RevokeSessionsRequest,
    RevokeSessionsResponse,
    SessionListResponse,
    SessionResponse,
    SessionSecurityResponse,
    SessionValidationResponse,
)
from intelgate.logging import get_logger
from intelgate.service.errors import AuthRequiredError, NotFoundError
from intelgate.service.gate import Validator
from intelgate.service.runtime import Runtime, get_runtime
from intelgate.storage.models import ActorIdentity, AuditEntry, RevocationReason, SessionRecord

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def get_actor(request: Request) -> ActorIdentity:
    return get_runtime().identity.resolve(request.headers)


def get_authenticated_actor(actor: ActorIdentity = Depends(get_actor)) -> ActorIdentity:
    if not actor.authenticated:
        raise AuthRequiredError()
    return actor


def _client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _client_agent(request: Request) -> str:
    return request.headers.get("user-agent", "")


def _session_to_response(runtime: Runtime, sess: SessionRecord) -> SessionResponse:
    return SessionResponse(
        id=sess.id,
        actor_id=sess.actor_id,
        state=sess.state(runtime.clock.now()).value,
        network_address=sess.network_address,
        client_agent=sess.client_agent,
        created_at=sess.created_at,
        last_activity_at=sess.last_activity_at,
        expires_at=sess.expires_at,
        revoked_reason=sess.revoked_reason,
        revoked_at=sess.revoked_at,
    )


def _audit_entry_to_response(entry: AuditEntry) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=entry.id,
        actor_id=entry.actor_id,
        action=entry.action,
        resource_type=entry.resource_type,
        resource_id=entry.resource_id,
        metadata=entry.metadata,
        created_at=entry.created_at,
    )


async def _guarded(
    runtime: Runtime,
    response: Response,
    operation: str,
    actor: ActorIdentity,
    payload: Any,
    business_fn: Callable[[Any], Any],
    *,
    validator: Optional[Validator] = None,
    resource_id: Optional[str] = None,
) -> Any:
    """Run an endpoint body through the security gate and expose its quota."""
    outcome = await runtime.gate.execute(
        operation,
        actor,
        payload,
        business_fn,
        validator=validator,
        resource_id=resource_id,
    )
    decision = outcome.decision
    RateLimitInfo(decision.limit, decision.remaining, decision.reset_seconds).apply_headers(response)
    return outcome.result


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


@router.post("/sessions", response_model=Envelope, tags=["sessions"])
async def create_session(
    request: Request, actor: ActorIdentity = Depends(get_authenticated_actor)
):
    """Open a session bound to the caller's address and user agent.

    The suspicious-activity check runs against the sessions that existed
    before this one, so the response tells the caller whether to demand
    re-authentication.
    """
    runtime = get_runtime()
    address = _client_address(request)
    agent = _client_agent(request)
    report = runtime.sessions.detect_suspicious_activity(actor.id, address, agent)
    sess = runtime.sessions.create_session(actor.id, address, agent)
    return Envelope(
        status="ok",
        data={
            "session": _session_to_response(runtime, sess).model_dump(mode="json"),
            "suspicious": report.suspicious,
        },
    )


@router.post("/sessions/validate", response_model=Envelope, tags=["sessions"])
async def validate_session(
    request: Request,
    session_id: Optional[str] = Header(None, alias="Session-Id"),
    actor: ActorIdentity = Depends(get_authenticated_actor),
):
    runtime = get_runtime()
    sess = runtime.sessions.require_session(
        session_id or "",
        actor.id,
        _client_address(request),
        _client_agent(request),
    )
    return Envelope(
        status="ok",
        data=SessionValidationResponse(valid=True, session=_session_to_response(runtime, sess)),
    )


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def logout(session_id: str, actor: ActorIdentity = Depends(get_authenticated_actor)):
    runtime = get_runtime()
    sess = runtime.sessions.get_session(session_id)
    # Other actors' sessions are reported as missing
    if sess is None or sess.actor_id != actor.id:
        raise NotFoundError("session not found")
    revoked = runtime.sessions.revoke_session(
        session_id, RevocationReason.LOGOUT, performed_by=actor.id
    )
    return Envelope(status="ok", data={"session_id": session_id, "revoked": revoked})


@router.get("/sessions/security", response_model=Envelope, tags=["sessions"])
async def session_security(
    request: Request,
    session_id: Optional[str] = Header(None, alias="Session-Id"),
    actor: ActorIdentity = Depends(get_authenticated_actor),
):
    runtime = get_runtime()
    report = runtime.sessions.detect_suspicious_activity(
        actor.id,
        _client_address(request),
        _client_agent(request),
        exclude_session_id=session_id,
    )
    active = runtime.sessions.list_active_sessions(actor.id)
    return Envelope(
        status="ok",
        data=SessionSecurityResponse(
            suspicious=report.suspicious,
            last_seen_network_address=report.last_seen_network_address,
            last_seen_client_agent=report.last_seen_client_agent,
            concurrent_sessions=len(active) > 1,
            active_sessions=len(active),
        ),
    )


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


@router.get("/admin/users/{user_id}/sessions", response_model=Envelope, tags=["admin"])
async def admin_list_user_sessions(
    user_id: str, response: Response, actor: ActorIdentity = Depends(get_actor)
):
    runtime = get_runtime()

    def _list(_: Any) -> SessionListResponse:
        sessions = runtime.sessions.list_sessions(user_id)
        return SessionListResponse(items=[_session_to_response(runtime, s) for s in sessions])

    data = await _guarded(
        runtime, response, "USER_SESSIONS_LIST", actor, None, _list, resource_id=user_id
    )
    return Envelope(status="ok", data=data)


@router.delete("/admin/users/{user_id}/sessions", response_model=Envelope, tags=["admin"])
async def admin_revoke_user_sessions(
    user_id: str,
    response: Response,
    body: Optional[Dict[str, Any]] = Body(None),
    actor: ActorIdentity = Depends(get_actor),
):
    runtime = get_runtime()

    def _revoke(req: RevokeSessionsRequest) -> RevokeSessionsResponse:
        count = runtime.sessions.revoke_all_sessions(
            user_id,
            RevocationReason(req.reason),
            except_session_id=req.except_session_id,
            performed_by=actor.id,
        )
        return RevokeSessionsResponse(user_id=user_id, revoked=count)

    data = await _guarded(
        runtime,
        response,
        "USER_SESSIONS_REVOKE",
        actor,
        body or {},
        _revoke,
        validator=RevokeSessionsRequest,
        resource_id=user_id,
    )
    return Envelope(status="ok", data=data)


@router.post("/admin/sessions/cleanup", response_model=Envelope, tags=["admin"])
async def admin_cleanup_sessions(response: Response, actor: ActorIdentity = Depends(get_actor)):
    runtime = get_runtime()

    async def _cleanup(_: Any) -> CleanupResponse:
        result = await asyncio.to_thread(runtime.sweep)
        return CleanupResponse(**result)

    data = await _guarded(runtime, response, "SESSION_CLEANUP", actor, None, _cleanup)
    return Envelope(status="ok", data=data)


@router.get("/admin/audit-logs", response_model=Envelope, tags=["admin"])
async def admin_list_audit_logs(
    response: Response,
    actor_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    resource_type: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    actor: ActorIdentity = Depends(get_actor),
):
    runtime = get_runtime()
    filters = {
        key: value
        for key, value in {
            "actor_id": actor_id,
            "action": action,
            "resource_type": resource_type,
            "limit": limit,
        }.items()
        if value is not None
    }

    async def _list(query: AuditLogQuery) -> AuditLogListResponse:
        # Writes launched by earlier requests become visible before listing
        await runtime.audit.drain()
        entries = runtime.audit.list_entries(
            actor_id=query.actor_id,
            action=query.action,
            resource_type=query.resource_type,
            limit=query.limit,
        )
        return AuditLogListResponse(items=[_audit_entry_to_response(e) for e in entries])

    data = await _guarded(
        runtime, response, "AUDIT_LOG_LIST", actor, filters, _list, validator=AuditLogQuery
    )
    return Envelope(status="ok", data=data)

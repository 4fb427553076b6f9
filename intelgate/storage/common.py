"""Common storage utilities shared between memory and postgres implementations.

Keeps the fixed-window arithmetic and record (de)serialization in one place
so every backend applies identical semantics.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from intelgate.clock import ensure_aware
from intelgate.storage.models import (
    AuditEntry,
    RateLimitCounter,
    RateLimitHit,
    SessionRecord,
)


# ============================================================================
# FIXED WINDOW COUNTERS
# ============================================================================

def window_elapsed(window_started_at: datetime, now: datetime) -> float:
    return max(0.0, (ensure_aware(now) - ensure_aware(window_started_at)).total_seconds())


def apply_fixed_window(
    counter: Optional[RateLimitCounter],
    key: str,
    max_calls: int,
    window_seconds: int,
    now: datetime,
) -> Tuple[RateLimitCounter, RateLimitHit]:
    """Apply one hit to a fixed-window counter.

    Must be called while holding whatever lock or transaction makes the
    read-modify-write atomic for ``key``. A missing counter behaves like an
    expired window. Rollover happens before the limit check, and a rejected
    hit leaves the count untouched.
    """
    now = ensure_aware(now)
    if counter is None or window_elapsed(counter.window_started_at, now) >= window_seconds:
        counter = RateLimitCounter(key=key, count=0, window_started_at=now)

    if counter.count >= max_calls:
        return counter, RateLimitHit(
            allowed=False, count=counter.count, window_started_at=counter.window_started_at
        )

    counter.count += 1
    return counter, RateLimitHit(
        allowed=True, count=counter.count, window_started_at=counter.window_started_at
    )


# ============================================================================
# SERIALIZATION
# ============================================================================

def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    return ensure_aware(dt).isoformat() if dt is not None else None


def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return ensure_aware(datetime.fromisoformat(raw))


def serialize_session(session: SessionRecord) -> Dict[str, Any]:
    return {
        "id": session.id,
        "actor_id": session.actor_id,
        "fingerprint": session.fingerprint,
        "network_address": session.network_address,
        "client_agent": session.client_agent,
        "created_at": _serialize_datetime(session.created_at),
        "last_activity_at": _serialize_datetime(session.last_activity_at),
        "expires_at": _serialize_datetime(session.expires_at),
        "revoked": session.revoked,
        "revoked_reason": session.revoked_reason,
        "revoked_at": _serialize_datetime(session.revoked_at),
    }


def deserialize_session(data: Dict[str, Any]) -> SessionRecord:
    created_at = _deserialize_datetime(data["created_at"])
    return SessionRecord(
        id=data["id"],
        actor_id=data["actor_id"],
        fingerprint=data["fingerprint"],
        network_address=data.get("network_address"),
        client_agent=data.get("client_agent"),
        created_at=created_at,
        last_activity_at=_deserialize_datetime(data.get("last_activity_at")) or created_at,
        expires_at=_deserialize_datetime(data["expires_at"]),
        revoked=bool(data.get("revoked", False)),
        revoked_reason=data.get("revoked_reason"),
        revoked_at=_deserialize_datetime(data.get("revoked_at")),
    )


def session_from_row(row: Dict[str, Any]) -> SessionRecord:
    """Build a session from a ``dict_row`` result of the gate_session table."""
    return SessionRecord(
        id=str(row["id"]),
        actor_id=str(row["actor_id"]),
        fingerprint=row["fingerprint"],
        network_address=str(row["network_address"]) if row.get("network_address") is not None else None,
        client_agent=row.get("client_agent"),
        created_at=ensure_aware(row["created_at"]),
        last_activity_at=ensure_aware(row["last_activity_at"]),
        expires_at=ensure_aware(row["expires_at"]),
        revoked=bool(row.get("revoked", False)),
        revoked_reason=row.get("revoked_reason"),
        revoked_at=ensure_aware(row["revoked_at"]) if row.get("revoked_at") else None,
    )


def serialize_audit_entry(entry: AuditEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "actor_id": entry.actor_id,
        "action": entry.action,
        "resource_type": entry.resource_type,
        "resource_id": entry.resource_id,
        "metadata": entry.metadata,
        "created_at": _serialize_datetime(entry.created_at),
    }


def deserialize_audit_entry(data: Dict[str, Any]) -> AuditEntry:
    return AuditEntry(
        id=data["id"],
        actor_id=data["actor_id"],
        action=data["action"],
        resource_type=data.get("resource_type"),
        resource_id=data.get("resource_id"),
        metadata=dict(data.get("metadata") or {}),
        created_at=_deserialize_datetime(data["created_at"]),
    )


def audit_entry_matches(
    entry: AuditEntry,
    *,
    actor_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
) -> bool:
    if actor_id is not None and entry.actor_id != actor_id:
        return False
    if action is not None and entry.action != action:
        return False
    if resource_type is not None and entry.resource_type != resource_type:
        return False
    return True

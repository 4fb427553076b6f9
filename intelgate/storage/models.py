from __future__ import annotations

import hashlib
import hmac
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from intelgate.clock import ensure_aware


class Role(str, Enum):
    """Role tiers ordered admin > analyst > user > viewer."""

    ADMIN = "admin"
    ANALYST = "analyst"
    USER = "user"
    VIEWER = "viewer"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def satisfies(self, required: "Role") -> bool:
        return self.rank >= required.rank

    @classmethod
    def parse(cls, value: Any) -> Optional["Role"]:
        """Return the matching role or None for unknown values."""
        if isinstance(value, Role):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


_ROLE_RANK = {
    Role.VIEWER: 0,
    Role.USER: 1,
    Role.ANALYST: 2,
    Role.ADMIN: 3,
}


@dataclass(frozen=True)
class ActorIdentity:
    id: str
    # None when the upstream role is not one we recognise; satisfies no tier
    role: Optional[Role]
    authenticated: bool = True

    @classmethod
    def anonymous(cls) -> "ActorIdentity":
        return cls(id="", role=Role.VIEWER, authenticated=False)


@dataclass
class RateLimitCounter:
    key: str
    count: int
    window_started_at: datetime


@dataclass
class RateLimitHit:
    """Result of one atomic fixed-window hit against a counter store."""

    allowed: bool
    count: int
    window_started_at: datetime


class SessionState(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class RevocationReason(str, Enum):
    LOGOUT = "logout"
    ADMIN_REVOKE = "admin_revoke"
    SUSPENSION = "suspension"
    COMPROMISE = "compromise"
    INACTIVITY = "inactivity"


def session_fingerprint(network_address: str, client_agent: str) -> str:
    """One-way hash binding a session to the address and agent that created it."""
    combined = f"{network_address or ''}:{client_agent or ''}"
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()


@dataclass
class SessionRecord:
    id: str
    actor_id: str
    fingerprint: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    network_address: Optional[str] = None
    client_agent: Optional[str] = None
    revoked: bool = False
    revoked_reason: Optional[str] = None
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        actor_id: str,
        network_address: str,
        client_agent: str,
        *,
        now: datetime,
        ttl: timedelta,
    ) -> "SessionRecord":
        now = ensure_aware(now)
        return cls(
            id=str(uuid.uuid4()),
            actor_id=actor_id,
            fingerprint=session_fingerprint(network_address, client_agent),
            created_at=now,
            last_activity_at=now,
            expires_at=now + ttl,
            network_address=network_address,
            client_agent=client_agent,
        )

    def is_expired(self, now: datetime) -> bool:
        return ensure_aware(self.expires_at) <= ensure_aware(now)

    def is_usable(self, now: datetime) -> bool:
        return not self.revoked and not self.is_expired(now)

    def state(self, now: datetime) -> SessionState:
        # Revocation wins over expiry so audits keep the explicit cause
        if self.revoked:
            return SessionState.REVOKED
        if self.is_expired(now):
            return SessionState.EXPIRED
        # A session becomes active on its first successful validation
        if ensure_aware(self.last_activity_at) == ensure_aware(self.created_at):
            return SessionState.CREATED
        return SessionState.ACTIVE

    def matches_fingerprint(self, network_address: str, client_agent: str) -> bool:
        presented = session_fingerprint(network_address, client_agent)
        return hmac.compare_digest(presented, self.fingerprint)


@dataclass
class AuditEntry:
    actor_id: str
    action: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

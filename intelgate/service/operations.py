"""Static per-operation security policy: role tier, rate limit and audit action."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from intelgate.logging import get_logger
from intelgate.service.errors import UnknownOperationError
from intelgate.storage.models import Role

logger = get_logger(__name__)

HOUR = 60 * 60

# Short keys accepted in operations files
_SHORT_NAMES = {"max": "max_calls", "window": "window_seconds", "audit": "audit_action"}


class OperationPolicy(BaseModel):
    """The role/limit/audit tuple declared once per guarded operation."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    role: Role
    max_calls: int = Field(ge=1, validation_alias=AliasChoices("max", "max_calls"))
    window_seconds: int = Field(ge=1, validation_alias=AliasChoices("window", "window_seconds"))
    audit_action: str = Field(min_length=1, validation_alias=AliasChoices("audit", "audit_action"))
    resource_type: Optional[str] = None
    description: str = ""

    @field_validator("role", mode="before")
    @classmethod
    def _parse_role(cls, value: Any) -> Any:
        role = Role.parse(value)
        if role is None:
            raise ValueError(f"unknown role: {value!r}")
        return role


def _op(
    role: Role,
    max_calls: int,
    resource_type: str,
    description: str,
    *,
    window_seconds: int = HOUR,
    audit_action: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "role": role,
        "max_calls": max_calls,
        "window_seconds": window_seconds,
        "audit_action": audit_action,
        "resource_type": resource_type,
        "description": description,
    }


_DEFAULT_ENTRIES: Dict[str, Dict[str, Any]] = {
    # signals
    "SIGNAL_CREATE": _op(Role.ANALYST, 100, "signal", "Create signal"),
    "SIGNAL_UPDATE": _op(Role.ANALYST, 200, "signal", "Update signal"),
    "SIGNAL_DELETE": _op(Role.ANALYST, 50, "signal", "Delete signal"),
    "SIGNAL_FEATURE": _op(Role.ANALYST, 100, "signal", "Feature signal"),
    "SIGNAL_VERIFY": _op(Role.ANALYST, 100, "signal", "Verify signal"),
    "SIGNAL_SEARCH": _op(Role.VIEWER, 1000, "signal", "Search signals"),
    # sources
    "SOURCE_CREATE": _op(Role.ANALYST, 50, "source", "Create source"),
    "SOURCE_UPDATE": _op(Role.ANALYST, 100, "source", "Update source"),
    "SOURCE_DELETE": _op(Role.ADMIN, 20, "source", "Delete source"),
    "SOURCE_LIST": _op(Role.VIEWER, 1000, "source", "List sources"),
    # tags
    "TAG_CREATE": _op(Role.ANALYST, 100, "tag", "Create tag"),
    "TAG_UPDATE": _op(Role.ANALYST, 100, "tag", "Update tag"),
    "TAG_DELETE": _op(Role.ANALYST, 50, "tag", "Delete tag"),
    "TAG_LIST": _op(Role.VIEWER, 1000, "tag", "List tags"),
    # bulk
    "BULK_DELETE": _op(Role.ADMIN, 10, "signal", "Bulk delete"),
    "BULK_UPDATE": _op(Role.ANALYST, 10, "signal", "Bulk update"),
    "BULK_FEATURE": _op(Role.ANALYST, 10, "signal", "Bulk feature"),
    "BULK_VERIFY": _op(Role.ANALYST, 10, "signal", "Bulk verify"),
    # imports
    "IMPORT_SIGNALS": _op(Role.ANALYST, 5, "signal", "Import signals"),
    "IMPORT_VALIDATE": _op(Role.ANALYST, 50, "signal", "Validate import"),
    # user management
    "USER_LIST": _op(Role.ADMIN, 100, "user", "List users"),
    "USER_READ": _op(Role.ADMIN, 500, "user", "Read user details"),
    "USER_UPDATE": _op(Role.ADMIN, 100, "user", "Update user"),
    "USER_DELETE": _op(Role.ADMIN, 10, "user", "Delete user"),
    "USER_SUSPEND": _op(Role.ADMIN, 20, "user", "Suspend user"),
    "USER_UNSUSPEND": _op(Role.ADMIN, 20, "user", "Unsuspend user"),
    "USER_BULK_UPDATE": _op(Role.ADMIN, 5, "user", "Bulk update users"),
    "USER_BULK_SUSPEND": _op(Role.ADMIN, 5, "user", "Bulk suspend users"),
    # subscriptions and billing
    "SUBSCRIPTION_CREATE": _op(Role.ADMIN, 50, "subscription", "Create subscription"),
    "SUBSCRIPTION_UPDATE": _op(Role.ADMIN, 100, "subscription", "Update subscription"),
    "SUBSCRIPTION_CANCEL": _op(Role.ADMIN, 20, "subscription", "Cancel subscription"),
    "SUBSCRIPTION_REFUND": _op(Role.ADMIN, 10, "subscription", "Refund subscription"),
    "SUBSCRIPTION_DELETE": _op(Role.ADMIN, 20, "subscription", "Delete subscription"),
    "SUBSCRIPTION_LIST": _op(Role.ADMIN, 500, "subscription", "List subscriptions"),
    "SUBSCRIPTION_TIERS": _op(Role.ADMIN, 1000, "subscription_tier", "List subscription tiers"),
    "SUBSCRIPTION_REQUESTS": _op(Role.ADMIN, 100, "upgrade_request", "List upgrade requests"),
    "BILLING_HISTORY": _op(Role.ADMIN, 500, "billing", "View billing history"),
    "TIER_CREATE": _op(Role.ADMIN, 20, "subscription_tier", "Create subscription tier"),
    "TIER_UPDATE": _op(Role.ADMIN, 50, "subscription_tier", "Update subscription tier"),
    "TIER_DELETE": _op(Role.ADMIN, 10, "subscription_tier", "Delete subscription tier"),
    "UPGRADE_REQUEST_APPROVE": _op(Role.ADMIN, 100, "upgrade_request", "Approve upgrade request"),
    "UPGRADE_REQUEST_REJECT": _op(Role.ADMIN, 100, "upgrade_request", "Reject upgrade request"),
    # ingestion and stats
    "INGESTION_LIST": _op(Role.ANALYST, 1000, "ingestion_log", "List ingestion logs"),
    "STATS_VIEW": _op(Role.VIEWER, 1000, "stats", "View statistics"),
    "SIGNAL_STATS": _op(Role.VIEWER, 1000, "stats", "Signal statistics"),
    "SIGNAL_CATEGORY": _op(Role.VIEWER, 1000, "stats", "Signals by category"),
    "SIGNAL_SEVERITY": _op(Role.VIEWER, 1000, "stats", "Signals by severity"),
    "SOURCE_STATS": _op(Role.VIEWER, 1000, "stats", "Source statistics"),
    # audit and session administration
    "AUDIT_LOG_LIST": _op(Role.ADMIN, 500, "audit_log", "List audit logs"),
    "USER_SESSIONS_LIST": _op(Role.ADMIN, 500, "session", "List a user's sessions"),
    "USER_SESSIONS_REVOKE": _op(Role.ADMIN, 50, "session", "Revoke all of a user's sessions"),
    "SESSION_CLEANUP": _op(Role.ADMIN, 10, "session", "Delete expired sessions"),
}


def _build(entries: Mapping[str, Dict[str, Any]]) -> Dict[str, OperationPolicy]:
    policies = {}
    for name, entry in entries.items():
        data = dict(entry)
        data["audit_action"] = data.get("audit_action") or name.lower()
        policies[name] = OperationPolicy.model_validate(data)
    return policies


DEFAULT_OPERATIONS: Dict[str, OperationPolicy] = _build(_DEFAULT_ENTRIES)


class OperationTable:
    """Read-only lookup from operation name to its policy."""

    def __init__(self, policies: Optional[Mapping[str, OperationPolicy]] = None) -> None:
        self._policies: Dict[str, OperationPolicy] = dict(
            policies if policies is not None else DEFAULT_OPERATIONS
        )

    def __contains__(self, operation: object) -> bool:
        return operation in self._policies

    def __iter__(self) -> Iterator[str]:
        return iter(self._policies)

    def __len__(self) -> int:
        return len(self._policies)

    def get(self, operation: str) -> Optional[OperationPolicy]:
        return self._policies.get(operation)

    def require(self, operation: str) -> OperationPolicy:
        policy = self._policies.get(operation)
        if policy is None:
            raise UnknownOperationError(operation)
        return policy

    @property
    def max_window_seconds(self) -> int:
        return max((p.window_seconds for p in self._policies.values()), default=HOUR)

    def with_overrides(self, overrides: Mapping[str, Mapping[str, Any]]) -> "OperationTable":
        """Return a new table with per-operation fields replaced.

        Overrides for known operations may be partial; new operations must
        declare every field except ``audit_action``, which defaults to the
        lower-cased operation name.
        """
        merged = dict(self._policies)
        for name, fields in overrides.items():
            if not isinstance(fields, Mapping):
                raise ValueError(f"operation {name}: override must be an object")
            base = merged[name].model_dump() if name in merged else {"audit_action": name.lower()}
            fields = {_SHORT_NAMES.get(key, key): value for key, value in fields.items()}
            try:
                merged[name] = OperationPolicy.model_validate({**base, **fields})
            except ValidationError as exc:
                raise ValueError(f"operation {name}: {exc.errors()[0]['msg']}") from exc
        return OperationTable(merged)


def load_operation_table(path: Optional[str] = None) -> OperationTable:
    """Default table, optionally overridden from a JSON file."""

    table = OperationTable()
    if not path:
        return table
    try:
        raw = json.loads(Path(path).read_text())
    except (OSError, ValueError) as exc:
        logger.error("operations_file_unreadable", path=path, error=str(exc))
        raise ValueError(f"cannot read operations file {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValueError(f"operations file {path} must contain a JSON object")
    table = table.with_overrides(raw)
    logger.info("operations_file_loaded", path=path, overrides=len(raw))
    return table

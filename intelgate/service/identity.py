from __future__ import annotations

from typing import Mapping, Optional, Protocol

from intelgate.logging import get_logger
from intelgate.storage.models import ActorIdentity, Role

logger = get_logger(__name__)

ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"


class IdentityResolver(Protocol):
    def resolve(self, headers: Mapping[str, str]) -> ActorIdentity: ...


class HeaderIdentityResolver:
    """Trust identity headers set by the upstream identity proxy.

    Credentials are verified upstream; this only reads the result. A missing
    actor id yields the anonymous identity. An unrecognised role keeps the
    actor authenticated but with no role, so it satisfies no tier.
    """

    def __init__(
        self,
        *,
        id_header: str = ACTOR_ID_HEADER,
        role_header: str = ACTOR_ROLE_HEADER,
        default_role: Role = Role.VIEWER,
    ) -> None:
        self.id_header = id_header
        self.role_header = role_header
        self.default_role = default_role

    @staticmethod
    def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
        value = headers.get(name)
        if value is None:
            value = headers.get(name.lower())
        return value.strip() if isinstance(value, str) else None

    def resolve(self, headers: Mapping[str, str]) -> ActorIdentity:
        actor_id = self._header(headers, self.id_header)
        if not actor_id:
            return ActorIdentity.anonymous()
        raw_role = self._header(headers, self.role_header)
        if not raw_role:
            return ActorIdentity(id=actor_id, role=self.default_role)
        role = Role.parse(raw_role)
        if role is None:
            logger.warning("identity_unknown_role", actor_id=actor_id, role=raw_role)
        return ActorIdentity(id=actor_id, role=role)

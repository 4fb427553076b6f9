from __future__ import annotations

import contextlib
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Iterator, List, Optional

from intelgate.clock import Clock, SystemClock, ensure_aware
from intelgate.logging import get_logger
from intelgate.service.audit import AuditLogger
from intelgate.service.errors import SessionInvalidError, StorageUnavailableError
from intelgate.storage.errors import StorageUnavailable
from intelgate.storage.models import RevocationReason, SessionRecord

logger = get_logger(__name__)

DEFAULT_SESSION_TTL = timedelta(days=7)
DEFAULT_INACTIVITY_TIMEOUT_MINUTES = 30


class ValidationReason(str, Enum):
    NOT_FOUND = "not_found"
    ACTOR_MISMATCH = "actor_mismatch"
    FINGERPRINT_MISMATCH = "fingerprint_mismatch"
    REVOKED = "revoked"
    EXPIRED = "expired"
    INACTIVE = "inactive"


@dataclass(frozen=True)
class SessionValidation:
    valid: bool
    reason: Optional[ValidationReason] = None
    session: Optional[SessionRecord] = None


@dataclass(frozen=True)
class SuspiciousActivityReport:
    suspicious: bool
    last_seen_network_address: Optional[str] = None
    last_seen_client_agent: Optional[str] = None


class SessionManager:
    """Session lifecycle and anomaly signals on top of a session store.

    Only ``last_activity_at`` and the revocation fields are ever changed on a
    stored record. Storage failures surface as ``StorageUnavailableError`` so
    validation fails closed.
    """

    def __init__(
        self,
        store: Any,
        *,
        audit: Optional[AuditLogger] = None,
        clock: Optional[Clock] = None,
        ttl: timedelta = DEFAULT_SESSION_TTL,
        inactivity_timeout_minutes: Optional[int] = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.clock = clock or SystemClock()
        self.ttl = ttl
        self.inactivity_timeout_minutes = inactivity_timeout_minutes

    @contextlib.contextmanager
    def _storage(self, operation: str) -> Iterator[None]:
        try:
            yield
        except StorageUnavailable as exc:
            logger.error(
                "session_store_unavailable",
                operation=operation,
                backend=exc.backend,
                error=exc.message,
            )
            raise StorageUnavailableError() from exc

    def _audit(self, actor_id: str, action: str, resource_id: Optional[str], **metadata: Any) -> None:
        if self.audit is not None:
            self.audit.log(actor_id, action, "session", resource_id, metadata)

    def create_session(
        self, actor_id: str, network_address: str, client_agent: str
    ) -> SessionRecord:
        with self._storage("create_session"):
            sess = self.store.create_session(
                actor_id,
                network_address,
                client_agent,
                now=self.clock.now(),
                ttl=self.ttl,
            )
        logger.info("session_created", actor_id=actor_id, session_id=sess.id)
        return sess

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._storage("get_session"):
            return self.store.get_session(session_id)

    def validate_session(
        self,
        session_id: str,
        actor_id: str,
        network_address: str,
        client_agent: str,
        *,
        inactivity_timeout_minutes: Optional[int] = None,
    ) -> SessionValidation:
        now = self.clock.now()
        # An explicit 0 turns the idle check off for this call
        timeout = (
            inactivity_timeout_minutes
            if inactivity_timeout_minutes is not None
            else self.inactivity_timeout_minutes
        )
        with self._storage("validate_session"):
            sess = self.store.get_session(session_id) if session_id else None
            reason = self._rejection_reason(sess, actor_id, network_address, client_agent, now)
            if reason is None and timeout and self._idle_too_long(sess, timeout, now):
                self._logout_inactive(sess, timeout, now)
                reason = ValidationReason.INACTIVE
            if reason is not None:
                logger.warning(
                    "session_validation_failed",
                    session_id=session_id,
                    actor_id=actor_id,
                    reason=reason.value,
                )
                return SessionValidation(valid=False, reason=reason)
            self.store.touch_session(sess.id, now)
        sess.last_activity_at = now
        return SessionValidation(valid=True, session=sess)

    @staticmethod
    def _rejection_reason(
        sess: Optional[SessionRecord],
        actor_id: str,
        network_address: str,
        client_agent: str,
        now,
    ) -> Optional[ValidationReason]:
        if sess is None:
            return ValidationReason.NOT_FOUND
        if sess.actor_id != actor_id:
            return ValidationReason.ACTOR_MISMATCH
        if sess.revoked:
            return ValidationReason.REVOKED
        if sess.is_expired(now):
            return ValidationReason.EXPIRED
        if not sess.matches_fingerprint(network_address, client_agent):
            return ValidationReason.FINGERPRINT_MISMATCH
        return None

    def require_session(
        self,
        session_id: str,
        actor_id: str,
        network_address: str,
        client_agent: str,
        *,
        inactivity_timeout_minutes: Optional[int] = None,
    ) -> SessionRecord:
        result = self.validate_session(
            session_id,
            actor_id,
            network_address,
            client_agent,
            inactivity_timeout_minutes=inactivity_timeout_minutes,
        )
        if not result.valid:
            raise SessionInvalidError(result.reason.value)
        return result.session

    def revoke_session(
        self,
        session_id: str,
        reason: RevocationReason = RevocationReason.LOGOUT,
        *,
        performed_by: Optional[str] = None,
    ) -> bool:
        """Revoke one session. Returns True only when this call revoked it."""
        reason = RevocationReason(reason)
        now = self.clock.now()
        with self._storage("revoke_session"):
            sess = self.store.get_session(session_id)
            if sess is None or sess.revoked:
                return False
            revoked = self.store.revoke_session(session_id, reason.value, now)
        if revoked:
            logger.info("session_revoked", session_id=session_id, reason=reason.value)
            self._audit(
                performed_by or sess.actor_id,
                "session_revoke",
                session_id,
                reason=reason.value,
                session_actor_id=sess.actor_id,
            )
        return revoked

    def revoke_all_sessions(
        self,
        actor_id: str,
        reason: RevocationReason = RevocationReason.ADMIN_REVOKE,
        *,
        except_session_id: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> int:
        reason = RevocationReason(reason)
        with self._storage("revoke_all_sessions"):
            count = self.store.revoke_actor_sessions(
                actor_id, reason.value, self.clock.now(), except_session_id=except_session_id
            )
        logger.info("sessions_revoked_for_actor", actor_id=actor_id, reason=reason.value, count=count)
        self._audit(
            performed_by or actor_id,
            "session_revoke_all",
            None,
            reason=reason.value,
            session_actor_id=actor_id,
            revoked_count=count,
        )
        return count

    def list_sessions(self, actor_id: str) -> List[SessionRecord]:
        """Every stored session for the actor, revoked ones included."""
        with self._storage("list_sessions"):
            return self.store.list_actor_sessions(actor_id)

    def list_active_sessions(self, actor_id: str) -> List[SessionRecord]:
        now = self.clock.now()
        return [s for s in self.list_sessions(actor_id) if s.is_usable(now)]

    def detect_suspicious_activity(
        self,
        actor_id: str,
        network_address: str,
        client_agent: str,
        *,
        exclude_session_id: Optional[str] = None,
    ) -> SuspiciousActivityReport:
        """Compare a login attempt with the actor's most recently active session."""
        candidates = [
            s for s in self.list_active_sessions(actor_id) if s.id != exclude_session_id
        ]
        if not candidates:
            return SuspiciousActivityReport(suspicious=False)
        last = candidates[0]
        suspicious = (
            last.network_address != network_address or last.client_agent != client_agent
        )
        if suspicious:
            logger.warning(
                "session_suspicious_activity",
                actor_id=actor_id,
                address_changed=last.network_address != network_address,
                agent_changed=last.client_agent != client_agent,
            )
            self._audit(
                actor_id,
                "session_suspicious_activity",
                last.id,
                address_changed=last.network_address != network_address,
                agent_changed=last.client_agent != client_agent,
            )
        return SuspiciousActivityReport(
            suspicious=suspicious,
            last_seen_network_address=last.network_address,
            last_seen_client_agent=last.client_agent,
        )

    def has_concurrent_sessions(self, actor_id: str) -> bool:
        return len(self.list_active_sessions(actor_id)) > 1

    def auto_logout_inactive(
        self,
        session_id: str,
        inactivity_timeout_minutes: int = DEFAULT_INACTIVITY_TIMEOUT_MINUTES,
    ) -> bool:
        now = self.clock.now()
        with self._storage("auto_logout_inactive"):
            sess = self.store.get_session(session_id)
            if sess is None or not sess.is_usable(now):
                return False
            if not self._idle_too_long(sess, inactivity_timeout_minutes, now):
                return False
            return self._logout_inactive(sess, inactivity_timeout_minutes, now)

    @staticmethod
    def _idle_too_long(sess: SessionRecord, timeout_minutes: int, now) -> bool:
        idle = ensure_aware(now) - ensure_aware(sess.last_activity_at)
        return idle > timedelta(minutes=timeout_minutes)

    def _logout_inactive(self, sess: SessionRecord, timeout_minutes: int, now) -> bool:
        revoked = self.store.revoke_session(sess.id, RevocationReason.INACTIVITY.value, now)
        if revoked:
            logger.info(
                "session_inactivity_logout",
                session_id=sess.id,
                actor_id=sess.actor_id,
                timeout_minutes=timeout_minutes,
            )
            self._audit(
                sess.actor_id,
                "session_inactivity_logout",
                sess.id,
                reason=RevocationReason.INACTIVITY.value,
                timeout_minutes=timeout_minutes,
            )
        return revoked

    def cleanup_expired_sessions(self) -> int:
        with self._storage("cleanup_expired_sessions"):
            removed = self.store.delete_expired_sessions(self.clock.now())
        if removed:
            logger.info("expired_sessions_deleted", count=removed)
        return removed

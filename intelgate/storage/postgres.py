from __future__ import annotations

import contextlib
import json
import uuid
from datetime import datetime, timedelta
from typing import Iterator, List, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from intelgate.clock import ensure_aware
from intelgate.logging import get_logger
from intelgate.storage.common import (
    apply_fixed_window,
    session_from_row,
)
from intelgate.storage.errors import StorageUnavailable
from intelgate.storage.models import (
    AuditEntry,
    RateLimitCounter,
    RateLimitHit,
    SessionRecord,
)


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS gate_session (
        id UUID PRIMARY KEY,
        actor_id TEXT NOT NULL,
        fingerprint TEXT NOT NULL,
        network_address TEXT,
        client_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_reason TEXT,
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS gate_session_actor_idx ON gate_session (actor_id, last_activity_at DESC)",
    "CREATE INDEX IF NOT EXISTS gate_session_expires_idx ON gate_session (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS rate_limit_counters (
        key TEXT PRIMARY KEY,
        count INTEGER NOT NULL DEFAULT 0,
        window_started_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id UUID PRIMARY KEY,
        actor_id TEXT NOT NULL,
        action TEXT NOT NULL,
        resource_type TEXT,
        resource_id TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_created_idx ON audit_log (created_at DESC)",
    "CREATE INDEX IF NOT EXISTS audit_log_actor_idx ON audit_log (actor_id, created_at DESC)",
)


def _is_uuid(value: object) -> bool:
    """Ids that are not UUIDs cannot name a stored session (the column is UUID)."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed store for counters, sessions and audit entries."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        """Borrow a pooled connection; driver failures surface as StorageUnavailable."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_operation_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise StorageUnavailable(str(exc), backend="postgres") from exc

    def _ensure_schema(self) -> None:
        """Create the gate tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # rate limits
    def hit_rate_limit(
        self, key: str, max_calls: int, window_seconds: int, now: datetime
    ) -> RateLimitHit:
        now = ensure_aware(now)
        with self._connect() as conn:
            # The no-op DO UPDATE row-locks an existing counter and returns it
            # in the same statement, so concurrent first hits cannot miss the row
            row = conn.execute(
                """
                INSERT INTO rate_limit_counters (key, count, window_started_at)
                VALUES (%s, 0, %s)
                ON CONFLICT (key) DO UPDATE SET key = EXCLUDED.key
                RETURNING key, count, window_started_at
                """,
                (key, now),
            ).fetchone()
            current = RateLimitCounter(
                key=row["key"],
                count=int(row["count"]),
                window_started_at=ensure_aware(row["window_started_at"]),
            )
            counter, hit = apply_fixed_window(current, key, max_calls, window_seconds, now)
            conn.execute(
                "UPDATE rate_limit_counters SET count = %s, window_started_at = %s WHERE key = %s",
                (counter.count, counter.window_started_at, key),
            )
        return hit

    def get_rate_limit_counter(self, key: str) -> Optional[RateLimitCounter]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT key, count, window_started_at FROM rate_limit_counters WHERE key = %s",
                (key,),
            ).fetchone()
        if not row:
            return None
        return RateLimitCounter(
            key=row["key"],
            count=int(row["count"]),
            window_started_at=ensure_aware(row["window_started_at"]),
        )

    def cleanup_rate_limit_counters(self, now: datetime, max_window_seconds: int) -> int:
        cutoff = ensure_aware(now) - timedelta(seconds=max_window_seconds)
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM rate_limit_counters WHERE window_started_at <= %s",
                (cutoff,),
            )
            return result.rowcount or 0

    # sessions
    def create_session(
        self,
        actor_id: str,
        network_address: str,
        client_agent: str,
        *,
        now: datetime,
        ttl: timedelta,
    ) -> SessionRecord:
        sess = SessionRecord.new(
            actor_id, network_address, client_agent, now=now, ttl=ttl
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO gate_session (id, actor_id, fingerprint, network_address, client_agent,
                                          created_at, last_activity_at, expires_at, revoked)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, FALSE)
                """,
                (
                    sess.id,
                    sess.actor_id,
                    sess.fingerprint,
                    sess.network_address,
                    sess.client_agent,
                    sess.created_at,
                    sess.last_activity_at,
                    sess.expires_at,
                ),
            )
        return sess

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        if not _is_uuid(session_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM gate_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return session_from_row(row)

    def touch_session(self, session_id: str, at: datetime) -> bool:
        if not _is_uuid(session_id):
            return False
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE gate_session SET last_activity_at = %s WHERE id = %s",
                (ensure_aware(at), session_id),
            )
            return (result.rowcount or 0) > 0

    def revoke_session(self, session_id: str, reason: str, at: datetime) -> bool:
        if not _is_uuid(session_id):
            return False
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE gate_session
                SET revoked = TRUE, revoked_reason = %s, revoked_at = %s
                WHERE id = %s AND revoked = FALSE
                """,
                (reason, ensure_aware(at), session_id),
            )
            return (result.rowcount or 0) > 0

    def revoke_actor_sessions(
        self,
        actor_id: str,
        reason: str,
        at: datetime,
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        query = """
            UPDATE gate_session
            SET revoked = TRUE, revoked_reason = %s, revoked_at = %s
            WHERE actor_id = %s AND revoked = FALSE
        """
        params: list = [reason, ensure_aware(at), actor_id]
        # A non-UUID id matches no row, so there is nothing to exclude
        if except_session_id and _is_uuid(except_session_id):
            query += " AND id <> %s"
            params.append(except_session_id)
        with self._connect() as conn:
            result = conn.execute(query, params)
            return result.rowcount or 0

    def list_actor_sessions(self, actor_id: str) -> List[SessionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM gate_session WHERE actor_id = %s ORDER BY last_activity_at DESC",
                (actor_id,),
            ).fetchall()
        return [session_from_row(row) for row in rows]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM gate_session WHERE expires_at < %s", (ensure_aware(now),)
            )
            return result.rowcount or 0

    # audit
    def append_audit_entry(self, entry: AuditEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (id, actor_id, action, resource_type, resource_id, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.actor_id,
                    entry.action,
                    entry.resource_type,
                    entry.resource_id,
                    json.dumps(entry.metadata or {}, default=str),
                    ensure_aware(entry.created_at),
                ),
            )

    def list_audit_entries(
        self,
        *,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        resource_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        clauses: list[str] = []
        params: list = []
        if actor_id is not None:
            clauses.append("actor_id = %s")
            params.append(actor_id)
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        if resource_type is not None:
            clauses.append("resource_type = %s")
            params.append(resource_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY created_at DESC LIMIT %s",
                params,
            ).fetchall()
        entries = []
        for row in rows:
            metadata = row.get("metadata")
            if isinstance(metadata, str):
                try:
                    metadata = json.loads(metadata)
                except ValueError:
                    metadata = {}
            entries.append(
                AuditEntry(
                    id=str(row["id"]),
                    actor_id=row["actor_id"],
                    action=row["action"],
                    resource_type=row.get("resource_type"),
                    resource_id=row.get("resource_id"),
                    metadata=metadata or {},
                    created_at=ensure_aware(row["created_at"]),
                )
            )
        return entries

from __future__ import annotations

import contextlib
import json
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from intelgate.clock import ensure_aware
from intelgate.logging import get_logger
from intelgate.storage.common import (
    apply_fixed_window,
    audit_entry_matches,
    deserialize_audit_entry,
    deserialize_session,
    serialize_audit_entry,
    serialize_session,
    window_elapsed,
)
from intelgate.storage.errors import StorageUnavailable
from intelgate.storage.models import (
    AuditEntry,
    RateLimitCounter,
    RateLimitHit,
    SessionRecord,
)


class MemoryStore:
    """In-process backing store for counters, sessions and audit entries.

    When ``fs_root`` is given, sessions and audit entries are mirrored to a
    JSON state file so a development server survives restarts. Rate-limit
    counters are never persisted.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.sessions: Dict[str, SessionRecord] = {}
        self.audit_entries: List[AuditEntry] = []
        self.counters: Dict[str, RateLimitCounter] = {}
        # RLock for session/audit data; nested acquisitions happen on persist
        self._data_lock = threading.RLock()
        # Per-key locks so unrelated counters never contend
        self._counter_locks: Dict[str, threading.Lock] = {}
        self._counter_locks_guard = threading.Lock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # rate limits
    @contextlib.contextmanager
    def _locked_counter(self, key: str) -> Iterator[None]:
        """Hold the live lock for ``key``.

        Cleanup may retire a key's lock while another thread waits on it, so
        the lock is re-checked once acquired and the wait is retried on a
        fresh one if it was retired. Lock order is key lock, then guard.
        """
        while True:
            with self._counter_locks_guard:
                lock = self._counter_locks.get(key)
                if lock is None:
                    lock = threading.Lock()
                    self._counter_locks[key] = lock
            with lock:
                with self._counter_locks_guard:
                    live = self._counter_locks.get(key) is lock
                if live:
                    yield
                    return

    def hit_rate_limit(
        self, key: str, max_calls: int, window_seconds: int, now: datetime
    ) -> RateLimitHit:
        with self._locked_counter(key):
            current = self.counters.get(key)
            counter, hit = apply_fixed_window(
                replace(current) if current else None, key, max_calls, window_seconds, now
            )
            self.counters[key] = counter
            return hit

    def get_rate_limit_counter(self, key: str) -> Optional[RateLimitCounter]:
        # Counters are replaced, never mutated, so a plain read is consistent
        counter = self.counters.get(key)
        return replace(counter) if counter else None

    def cleanup_rate_limit_counters(self, now: datetime, max_window_seconds: int) -> int:
        with self._counter_locks_guard:
            keys = list(self.counters.keys())
        removed = 0
        for key in keys:
            with self._locked_counter(key):
                counter = self.counters.get(key)
                if counter is not None:
                    if window_elapsed(counter.window_started_at, now) < max_window_seconds:
                        continue
                    self.counters.pop(key, None)
                    removed += 1
                with self._counter_locks_guard:
                    # Waiters on the retired lock retry on a new one
                    self._counter_locks.pop(key, None)
        return removed

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
        with self._data_lock:
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            sess.last_activity_at = ensure_aware(at)
            self._persist_state()
            return True

    def revoke_session(self, session_id: str, reason: str, at: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked:
                return False
            sess.revoked = True
            sess.revoked_reason = reason
            sess.revoked_at = ensure_aware(at)
            self._persist_state()
            return True

    def revoke_actor_sessions(
        self,
        actor_id: str,
        reason: str,
        at: datetime,
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            revoked = 0
            for sess in self.sessions.values():
                if sess.actor_id != actor_id or sess.revoked:
                    continue
                if except_session_id and sess.id == except_session_id:
                    continue
                sess.revoked = True
                sess.revoked_reason = reason
                sess.revoked_at = ensure_aware(at)
                revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def list_actor_sessions(self, actor_id: str) -> List[SessionRecord]:
        with self._data_lock:
            found = [replace(s) for s in self.sessions.values() if s.actor_id == actor_id]
        found.sort(key=lambda s: ensure_aware(s.last_activity_at), reverse=True)
        return found

    def delete_expired_sessions(self, now: datetime) -> int:
        now = ensure_aware(now)
        with self._data_lock:
            stale = [
                sid for sid, sess in self.sessions.items()
                if ensure_aware(sess.expires_at) < now
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # audit
    def append_audit_entry(self, entry: AuditEntry) -> None:
        with self._data_lock:
            self.audit_entries.append(entry)
            self._persist_state()

    def list_audit_entries(
        self,
        *,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        resource_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        with self._data_lock:
            matches = [
                e for e in reversed(self.audit_entries)
                if audit_entry_matches(
                    e, actor_id=actor_id, action=action, resource_type=resource_type
                )
            ]
        return matches[:limit]

    # persistence
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "gate_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "sessions": [serialize_session(s) for s in self.sessions.values()],
            "audit_entries": [serialize_audit_entry(e) for e in self.audit_entries],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2, default=str))
        except OSError as exc:
            raise StorageUnavailable(
                f"failed to persist in-memory state: {exc}", backend="memory"
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Read directly instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            self.logger.warning("memory_state_load_failed", path=str(path), error=str(exc))
            return False
        with self._data_lock:
            self.sessions = {
                s["id"]: deserialize_session(s) for s in data.get("sessions", [])
            }
            self.audit_entries = [
                deserialize_audit_entry(e) for e in data.get("audit_entries", [])
            ]
        self.logger.info(
            "memory_state_loaded",
            sessions=len(self.sessions),
            audit_entries=len(self.audit_entries),
        )
        return True

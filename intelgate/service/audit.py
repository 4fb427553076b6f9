"""Detached, non-throwing audit trail for sensitive operations."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Set

from intelgate.clock import Clock, SystemClock
from intelgate.logging import get_logger
from intelgate.service.errors import StorageUnavailableError
from intelgate.storage.errors import StorageUnavailable
from intelgate.storage.models import AuditEntry

logger = get_logger(__name__)

ANONYMOUS_ACTOR = "anonymous"


class AuditLogger:
    """Append-only audit writer.

    ``log`` never raises and never makes the caller wait on the store: inside
    a running event loop the append is launched as a tracked task that runs
    the store call in a worker thread; outside a loop (scripts, sweeps) it is
    written inline. Failed writes are reported as ``audit_write_failed`` and
    dropped. They are never retried.
    """

    def __init__(self, store: Any, *, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def log(
        self,
        actor_id: Optional[str],
        action: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            entry = AuditEntry(
                actor_id=actor_id or ANONYMOUS_ACTOR,
                action=action,
                resource_type=resource_type,
                resource_id=str(resource_id) if resource_id is not None else None,
                metadata=dict(metadata or {}),
                created_at=self.clock.now(),
            )
        except Exception as exc:
            logger.error("audit_entry_build_failed", action=action, error=str(exc))
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(entry)
            return

        task = loop.create_task(self._write_detached(entry))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _write_detached(self, entry: AuditEntry) -> None:
        await asyncio.to_thread(self._write, entry)

    def _write(self, entry: AuditEntry) -> None:
        try:
            self.store.append_audit_entry(entry)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=entry.action,
                actor_id=entry.actor_id,
                resource_type=entry.resource_type,
                resource_id=entry.resource_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def drain(self) -> None:
        """Wait for every in-flight write launched so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def list_entries(
        self,
        *,
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        resource_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        try:
            return self.store.list_audit_entries(
                actor_id=actor_id,
                action=action,
                resource_type=resource_type,
                limit=limit,
            )
        except StorageUnavailable as exc:
            logger.error("audit_list_failed", backend=exc.backend, error=exc.message)
            raise StorageUnavailableError() from exc

"""Tests for the detached audit logger."""
from unittest.mock import MagicMock, patch

import pytest

from intelgate.service.audit import AuditLogger
from intelgate.service.errors import StorageUnavailableError
from intelgate.storage.errors import StorageUnavailable


class TestAuditLog:
    def test_written_inline_without_event_loop(self, audit, store, clock):
        audit.log("alice", "signal_create", "signal", 42, {"title": "x"})

        entries = store.list_audit_entries()
        assert len(entries) == 1
        entry = entries[0]
        assert entry.actor_id == "alice"
        assert entry.action == "signal_create"
        assert entry.resource_type == "signal"
        assert entry.resource_id == "42"
        assert entry.metadata == {"title": "x"}
        assert entry.created_at == clock.now()

    def test_missing_actor_recorded_as_anonymous(self, audit, store):
        audit.log(None, "login_failed")
        assert store.list_audit_entries()[0].actor_id == "anonymous"

    async def test_detached_inside_event_loop(self, audit, store):
        """Inside a loop the caller returns before the write lands."""
        audit.log("alice", "signal_update", "signal", "s-1")

        assert audit.pending == 1
        await audit.drain()
        assert audit.pending == 0
        assert store.list_audit_entries()[0].action == "signal_update"

    async def test_write_failure_never_raises(self, clock):
        store = MagicMock()
        store.append_audit_entry.side_effect = StorageUnavailable("down", backend="postgres")
        audit = AuditLogger(store, clock=clock)

        with patch("intelgate.service.audit.logger") as mock_logger:
            audit.log("alice", "signal_delete", "signal", "s-1")
            await audit.drain()

        mock_logger.error.assert_called_once()
        assert mock_logger.error.call_args[0][0] == "audit_write_failed"
        assert mock_logger.error.call_args[1]["action"] == "signal_delete"

    def test_inline_write_failure_never_raises(self, clock):
        store = MagicMock()
        store.append_audit_entry.side_effect = RuntimeError("disk full")
        audit = AuditLogger(store, clock=clock)

        with patch("intelgate.service.audit.logger") as mock_logger:
            audit.log("alice", "signal_delete")

        assert mock_logger.error.call_args[0][0] == "audit_write_failed"

    async def test_drain_with_nothing_pending(self, audit):
        await audit.drain()
        assert audit.pending == 0


class TestListEntries:
    def test_filters_and_newest_first(self, audit, clock):
        audit.log("alice", "signal_create", "signal", "1")
        clock.advance(1)
        audit.log("bob", "signal_create", "signal", "2")
        clock.advance(1)
        audit.log("alice", "tag_create", "tag", "3")

        assert [e.resource_id for e in audit.list_entries()] == ["3", "2", "1"]
        assert [e.resource_id for e in audit.list_entries(actor_id="alice")] == ["3", "1"]
        assert [e.resource_id for e in audit.list_entries(action="signal_create")] == ["2", "1"]
        assert [e.resource_id for e in audit.list_entries(resource_type="tag")] == ["3"]
        assert len(audit.list_entries(limit=2)) == 2

    def test_storage_failure_mapped(self, clock):
        store = MagicMock()
        store.list_audit_entries.side_effect = StorageUnavailable("down", backend="postgres")
        audit = AuditLogger(store, clock=clock)

        with pytest.raises(StorageUnavailableError):
            audit.list_entries()

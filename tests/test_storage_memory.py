from datetime import timedelta
from pathlib import Path

from intelgate.clock import ManualClock
from intelgate.storage.memory import MemoryStore
from intelgate.storage.models import AuditEntry


def test_state_survives_reload(tmp_path: Path):
    clock = ManualClock()
    store = MemoryStore(fs_root=str(tmp_path))
    sess = store.create_session("alice", "10.0.0.1", "agent", now=clock.now(), ttl=timedelta(days=7))
    store.revoke_session(sess.id, "logout", clock.now())
    store.append_audit_entry(
        AuditEntry(actor_id="alice", action="session_revoke", metadata={"reason": "logout"}, created_at=clock.now())
    )
    store.hit_rate_limit("OP:alice", 5, 60, clock.now())

    assert (tmp_path / "state" / "gate_store.json").exists()

    reloaded = MemoryStore(fs_root=str(tmp_path))
    restored = reloaded.get_session(sess.id)
    assert restored.revoked is True
    assert restored.revoked_reason == "logout"
    assert restored.expires_at == sess.expires_at
    assert restored.fingerprint == sess.fingerprint
    assert reloaded.list_audit_entries()[0].metadata == {"reason": "logout"}
    # Counters are process-local
    assert reloaded.get_rate_limit_counter("OP:alice") is None


def test_corrupt_state_file_ignored(tmp_path: Path):
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    (state_dir / "gate_store.json").write_text("{not json")

    store = MemoryStore(fs_root=str(tmp_path))

    assert store.sessions == {}
    assert store.audit_entries == []


def test_returned_records_are_copies():
    clock = ManualClock()
    store = MemoryStore()
    sess = store.create_session("alice", "10.0.0.1", "agent", now=clock.now(), ttl=timedelta(days=7))

    fetched = store.get_session(sess.id)
    fetched.revoked = True

    assert store.get_session(sess.id).revoked is False


def test_touch_and_revoke_missing_session():
    clock = ManualClock()
    store = MemoryStore()
    assert store.touch_session("missing", clock.now()) is False
    assert store.revoke_session("missing", "logout", clock.now()) is False
    assert store.revoke_actor_sessions("nobody", "admin_revoke", clock.now()) == 0


def test_cleanup_releases_counter_locks():
    clock = ManualClock()
    store = MemoryStore()
    for i in range(1000):
        store.hit_rate_limit(f"OP:actor-{i}", 5, 60, clock.now())
    assert len(store._counter_locks) == 1000

    clock.advance(seconds=7200)
    removed = store.cleanup_rate_limit_counters(clock.now(), 3600)

    assert removed == 1000
    assert store.counters == {}
    assert store._counter_locks == {}
    # A key whose lock was retired still counts from a fresh window
    hit = store.hit_rate_limit("OP:actor-1", 5, 60, clock.now())
    assert hit.allowed is True
    assert hit.count == 1


def test_cleanup_keeps_live_counter_locks():
    clock = ManualClock()
    store = MemoryStore()
    store.hit_rate_limit("OP:old", 5, 60, clock.now())
    clock.advance(seconds=7200)
    store.hit_rate_limit("OP:fresh", 5, 60, clock.now())

    assert store.cleanup_rate_limit_counters(clock.now(), 3600) == 1
    assert set(store._counter_locks) == {"OP:fresh"}
    assert store.get_rate_limit_counter("OP:fresh").count == 1


def test_read_does_not_allocate_lock():
    store = MemoryStore()
    assert store.get_rate_limit_counter("OP:nobody") is None
    assert store._counter_locks == {}

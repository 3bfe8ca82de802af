from __future__ import annotations

import pytest

from migration_accelerator.core.state import KeyValueState, PersistentLock
from tests.conftest import Clock


def test_key_value_roundtrip(storage):
    state = KeyValueState(storage)
    assert state.get("missing", "fallback") == "fallback"
    state.set("session", {"id": "abc", "n": 2})
    assert state.get("session") == {"id": "abc", "n": 2}
    state.set("session", True)
    assert state.get("session") is True
    state.delete("session")
    assert state.get("session") is None


def test_semaphore_insert_is_exclusive(storage):
    assert storage.semaphore_insert("lock", "a", 100.0)
    assert not storage.semaphore_insert("lock", "b", 100.0)
    assert storage.semaphore_fetch("lock")["value"] == "a"
    storage.semaphore_delete("lock", "b")
    assert storage.semaphore_fetch("lock") is not None
    storage.semaphore_delete("lock", "a")
    assert storage.semaphore_fetch("lock") is None


def test_persistent_lock_owner_and_expiry(storage):
    clock = Clock(1000.0)
    first = PersistentLock(storage, "session-a", clock=clock)
    second = PersistentLock(storage, "session-b", clock=clock)

    assert first.acquire("slot", 30)
    assert not second.acquire("slot", 30)
    assert not second.lock_may_be_available("slot")
    # The owner renews.
    assert first.acquire("slot", 30)

    clock.now = 1031.0
    assert second.lock_may_be_available("slot")
    assert second.acquire("slot", 30)
    assert not first.acquire("slot", 30)

    first.release("slot")
    assert storage.semaphore_fetch("slot")["value"] == "session-b"
    second.release("slot")
    assert first.lock_may_be_available("slot")


def test_migration_flags(storage):
    assert storage.ensure_migration_flags("m1")
    assert not storage.ensure_migration_flags("m1", skipped=True)
    assert storage.fetch_migration_flags("m1")["skipped"] == 0

    storage.update_migration_flags("m1", completed=True, last_import_timestamp=123)
    flags = storage.fetch_migration_flags("m1")
    assert flags["completed"] == 1
    assert flags["last_import_timestamp"] == 123
    assert set(storage.fetch_all_migration_flags()) == {"m1"}

    with pytest.raises(ValueError, match="Unknown migration flag columns"):
        storage.update_migration_flags("m1", label="nope")


def test_messages_by_category(storage):
    storage.insert_message("p1", "Title is required", level=1, category="entity_validation", source_ids={"nid": 1})
    storage.insert_message("p1", "Lookup failed", level=2)
    storage.insert_message("p2", "Lookup failed", level=2, migration_id="m2")

    assert storage.count_messages(["p1"]) == 2
    assert storage.count_messages(["p1"], "entity_validation") == 1
    assert storage.count_messages(["p1", "p2"], "other") == 2
    assert storage.count_messages([]) == 0

    storage.delete_messages(["p1"])
    assert storage.count_messages(["p1", "p2"]) == 1


def test_events_and_batches(storage):
    storage.insert_event("batch_started", "2024-01-01T00:00:00+00:00", migration_id="m1", payload={"batch_id": 1})
    storage.insert_event("clustering_completed", "2024-01-01T00:00:01+00:00")
    events = storage.list_events(kind="batch_started")
    assert len(events) == 1
    assert events[0]["payload"] == {"batch_id": 1}
    assert storage.list_events(migration_id="m1")[0]["kind"] == "batch_started"
    assert [event["kind"] for event in storage.list_events()] == ["batch_started", "clustering_completed"]

    batch_id = storage.create_batch("import", [{"op": "run"}], "m1", "session-a")
    batch = storage.fetch_batch(batch_id)
    assert batch["operations"] == [{"op": "run"}]
    assert batch["state"] == {"sandbox": {}, "results": {}, "finished": 0.0}
    assert batch["finished"] is False
    assert batch["session_id"] == "session-a"

    storage.update_batch(batch_id, 1, {"results": {"completed": False}}, finished=True, error={"type": "RuntimeError"})
    batch = storage.fetch_batch(batch_id)
    assert batch["cursor"] == 1
    assert batch["finished"] is True
    assert batch["error"] == {"type": "RuntimeError"}

    storage.delete_batch(batch_id)
    assert storage.fetch_batch(batch_id) is None


def test_integrity_check(storage):
    ok, message = storage.integrity_check()
    assert ok, message

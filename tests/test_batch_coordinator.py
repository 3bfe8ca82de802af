from __future__ import annotations

import pytest

from migration_accelerator.core.batch.coordinator import (
    ACTIVE_BATCH_LOCK,
    ACTIVE_BATCH_SESSION_KEY,
    BATCH_ACTIVE_FOREIGN,
    BATCH_ACTIVE_OWNED,
    BATCH_IDLE,
    MigrationBatchCoordinator,
    batch_state_from_bits,
)
from migration_accelerator.core.config import CLI_SESSION_ID
from migration_accelerator.core.errors import (
    BatchCoordinatorMisuseError,
    InconsistentBatchStateError,
)
from migration_accelerator.core.state import KeyValueState, PersistentLock
from tests.conftest import Clock


def _coordinator(storage, session_id: str, clock: Clock, ttl: int = 30) -> MigrationBatchCoordinator:
    return MigrationBatchCoordinator(
        PersistentLock(storage, session_id, clock=clock),
        KeyValueState(storage),
        session_id,
        ttl=ttl,
        storage=storage,
    )


def test_idle_by_default(storage):
    coordinator = _coordinator(storage, "a", Clock())
    assert coordinator.batch_state == BATCH_IDLE
    assert not coordinator.has_active_operation()
    assert not coordinator.can_modify_active_operation()
    assert not coordinator.controlling_session_is_known()


def test_mutual_exclusion_between_sessions(storage):
    clock = Clock()
    first = _coordinator(storage, "a", clock)
    second = _coordinator(storage, "b", clock)

    assert first.start_operation()
    assert first.batch_state == BATCH_ACTIVE_OWNED
    assert first.can_modify_active_operation()

    # Constructed before the start: the stale view loses the race on the lock.
    assert second.start_operation() is False
    assert not second.can_modify_active_operation()

    observer = _coordinator(storage, "b", clock)
    assert observer.batch_state == BATCH_ACTIVE_FOREIGN
    assert observer.has_active_operation()
    assert not observer.can_modify_active_operation()
    assert observer.controlling_session_id == "a"

    owner_again = _coordinator(storage, "a", clock)
    assert owner_again.batch_state == BATCH_ACTIVE_OWNED


def test_misuse_is_fatal(storage):
    clock = Clock()
    owner = _coordinator(storage, "a", clock)

    with pytest.raises(BatchCoordinatorMisuseError):
        owner.stop_operation()

    assert owner.start_operation()
    with pytest.raises(BatchCoordinatorMisuseError):
        owner.start_operation()

    other = _coordinator(storage, "b", clock)
    with pytest.raises(BatchCoordinatorMisuseError, match="controlling session ID: `a`"):
        other.extend_active_operation()
    with pytest.raises(BatchCoordinatorMisuseError):
        other.stop_operation()
    with pytest.raises(BatchCoordinatorMisuseError):
        other.start_operation()


def test_extend_and_stop(storage):
    clock = Clock(1000.0)
    owner = _coordinator(storage, "a", clock, ttl=10)
    assert owner.start_operation()
    assert storage.semaphore_fetch(ACTIVE_BATCH_LOCK)["expire"] == 1010.0

    clock.now = 1005.0
    assert owner.extend_active_operation()
    assert storage.semaphore_fetch(ACTIVE_BATCH_LOCK)["expire"] == 1015.0
    assert owner.extend_active_operation(20)
    assert storage.semaphore_fetch(ACTIVE_BATCH_LOCK)["expire"] == 1025.0

    owner.stop_operation()
    assert owner.batch_state == BATCH_IDLE
    assert storage.semaphore_fetch(ACTIVE_BATCH_LOCK) is None
    assert storage.kv_get(ACTIVE_BATCH_SESSION_KEY) is None
    assert owner.extend_active_operation() is False
    assert _coordinator(storage, "b", clock).batch_state == BATCH_IDLE


def test_ttl_is_capped(storage):
    clock = Clock(1000.0)
    owner = _coordinator(storage, "a", clock, ttl=600)
    assert owner.ttl == 30
    assert owner.start_operation()
    assert storage.semaphore_fetch(ACTIVE_BATCH_LOCK)["expire"] == 1030.0


def test_lock_expires_without_heartbeat(storage):
    clock = Clock(1000.0)
    owner = _coordinator(storage, "a", clock)
    assert owner.start_operation()

    clock.now = 1031.0
    # The same request still believes it holds the batch, but may not revive it.
    assert owner.extend_active_operation() is False
    assert owner.batch_state == BATCH_IDLE
    assert owner.lease_expired

    for session_id in ("a", "b"):
        later = _coordinator(storage, session_id, clock)
        assert not later.has_active_operation()
        assert later.batch_state == BATCH_IDLE

    kinds = [event["kind"] for event in storage.list_events()]
    assert kinds.count("batch_lease_expired") == 1
    assert storage.kv_get(ACTIVE_BATCH_SESSION_KEY) is None

    newcomer = _coordinator(storage, "b", clock)
    assert newcomer.start_operation()


def test_owned_without_active_bit_is_inconsistent(storage):
    with pytest.raises(InconsistentBatchStateError):
        batch_state_from_bits(0b10)

    coordinator = _coordinator(storage, "a", Clock())
    coordinator._bits = 0b10
    with pytest.raises(InconsistentBatchStateError):
        coordinator.batch_state
    with pytest.raises(InconsistentBatchStateError):
        coordinator.can_modify_active_operation()


def test_cli_controller_is_reported(storage):
    clock = Clock()
    cli = _coordinator(storage, CLI_SESSION_ID, clock)
    assert cli.start_operation()
    observer = _coordinator(storage, "browser", clock)
    assert observer.controlling_session_is_known()
    assert observer.controlling_session_is_cli()


def test_failed_extend_resets_the_instance(storage):
    clock = Clock(1000.0)
    owner = _coordinator(storage, "a", clock)
    assert owner.start_operation()

    clock.now = 1031.0
    assert owner.extend_active_operation() is False
    assert owner.batch_state == BATCH_IDLE
    assert owner.lease_expired
    assert not owner.can_modify_active_operation()
    with pytest.raises(BatchCoordinatorMisuseError):
        owner.stop_operation()


def test_stale_owner_sees_the_new_claimant(storage):
    clock = Clock(1000.0)
    owner = _coordinator(storage, "a", clock)
    assert owner.start_operation()

    clock.now = 1031.0
    newcomer = _coordinator(storage, "b", clock)
    assert newcomer.lease_expired
    assert newcomer.start_operation()
    assert not newcomer.lease_expired

    assert owner.extend_active_operation() is False
    assert owner.batch_state == BATCH_ACTIVE_FOREIGN
    assert owner.controlling_session_id == "b"
    assert owner.lease_expired
    assert _coordinator(storage, "b", clock).batch_state == BATCH_ACTIVE_OWNED

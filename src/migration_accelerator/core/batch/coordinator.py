"""Single active batch, claimed by one session at a time.

The batch state is derived once, when the coordinator is constructed, from the
persistent lock and the durable "controlling session" record. Later calls on the
same instance update the in-memory state instead of re-reading the store, so one
request keeps a consistent view even while other requests change the lock.

Bits: ``0b01`` means a batch is active, ``0b10`` means the caller controls it.
``0b10`` on its own cannot happen and is reported as an inconsistency.
"""

from __future__ import annotations

from ..errors import BatchCoordinatorMisuseError, InconsistentBatchStateError
from ..state import KeyValueState, PersistentLock
from ..storage import Storage
from ..config import CLI_SESSION_ID, LOCK_TTL_CAP
from ..utils import now_iso

ACTIVE_BATCH_LOCK = "migration_accelerator__active_batch"
ACTIVE_BATCH_SESSION_KEY = "migration_accelerator.active_batch_session"
NO_ACTIVE_BATCH_SESSION = "___NO_ACTIVE_BATCH_SESSION___"

BATCH_IDLE = "idle"
BATCH_ACTIVE_FOREIGN = "active_foreign"
BATCH_ACTIVE_OWNED = "active_owned"

_ACTIVE_BIT = 0b01
_OWNED_BIT = 0b10


def batch_state_from_bits(bits: int) -> str:
    if bits == 0b00:
        return BATCH_IDLE
    if bits == 0b01:
        return BATCH_ACTIVE_FOREIGN
    if bits == 0b11:
        return BATCH_ACTIVE_OWNED
    raise InconsistentBatchStateError(
        f"Batch state {bits:#04b} is unreachable: a batch cannot be owned without being active."
    )


class MigrationBatchCoordinator:
    def __init__(
        self,
        lock: PersistentLock,
        state: KeyValueState,
        session_id: str,
        *,
        ttl: int = LOCK_TTL_CAP,
        storage: Storage | None = None,
    ) -> None:
        self.lock = lock
        self.state = state
        self.session_id = session_id
        self.ttl = min(int(ttl), LOCK_TTL_CAP) if ttl > 0 else LOCK_TTL_CAP
        self.storage = storage
        # Set once this instance has seen the active batch lose its lease.
        self.lease_expired = False

        has_active_batch = not lock.lock_may_be_available(ACTIVE_BATCH_LOCK)
        self.controlling_session_id: str = state.get(
            ACTIVE_BATCH_SESSION_KEY, NO_ACTIVE_BATCH_SESSION
        )
        if not has_active_batch and self.controlling_session_id != NO_ACTIVE_BATCH_SESSION:
            # Nobody polled within the TTL.
            self._expire()
        owned = has_active_batch and self.controlling_session_id == self.session_id
        self._bits = (int(owned) << 1) | int(has_active_batch)

    def _expire(self) -> None:
        self._record("batch_lease_expired", {"session_id": self.controlling_session_id})
        self.state.delete(ACTIVE_BATCH_SESSION_KEY)
        self.controlling_session_id = NO_ACTIVE_BATCH_SESSION
        self.lease_expired = True
        self._bits = 0b00

    def _record(self, kind: str, payload: dict) -> None:
        if self.storage is not None:
            self.storage.insert_event(kind, now_iso(), payload=payload)

    @property
    def batch_state(self) -> str:
        return batch_state_from_bits(self._bits)

    def has_active_operation(self) -> bool:
        return bool(self._bits & _ACTIVE_BIT)

    def can_modify_active_operation(self) -> bool:
        if self._bits & _OWNED_BIT and not self._bits & _ACTIVE_BIT:
            batch_state_from_bits(self._bits)
        return bool(self._bits & _OWNED_BIT)

    def start_operation(self) -> bool:
        """Claim the batch slot; False means another session won the race."""

        if self.has_active_operation():
            raise BatchCoordinatorMisuseError("An operation can only be started if none is active.")
        success = self.lock.acquire(ACTIVE_BATCH_LOCK, self.ttl)
        if success:
            self.state.set(ACTIVE_BATCH_SESSION_KEY, self.session_id)
            self.controlling_session_id = self.session_id
            self.lease_expired = False
            self._bits = 0b11
        return success

    def extend_active_operation(self, seconds: int | None = None) -> bool:
        # Not active anymore: most likely interrupted between two polls.
        if not self.has_active_operation():
            return False
        if not self.can_modify_active_operation():
            raise BatchCoordinatorMisuseError(
                "An operation can only be extended by the session that created it. "
                f"Current session ID: `{self.session_id}`, "
                f"controlling session ID: `{self.controlling_session_id}`."
            )
        # An expired lease must not be revived: the batch died.
        if self.lock.lock_may_be_available(ACTIVE_BATCH_LOCK):
            self._expire()
            return False
        if self.lock.acquire(ACTIVE_BATCH_LOCK, seconds if seconds is not None else self.ttl):
            return True
        # Another session claimed the slot after our lease ran out.
        self.lease_expired = True
        self.controlling_session_id = self.state.get(
            ACTIVE_BATCH_SESSION_KEY, NO_ACTIVE_BATCH_SESSION
        )
        self._bits = _ACTIVE_BIT
        return False

    def stop_operation(self) -> None:
        if not self.has_active_operation():
            raise BatchCoordinatorMisuseError("An operation can only be stopped if one is active.")
        if not self.can_modify_active_operation():
            raise BatchCoordinatorMisuseError(
                "An operation can only be stopped by the session that created it."
            )
        self.lock.release(ACTIVE_BATCH_LOCK)
        self.state.delete(ACTIVE_BATCH_SESSION_KEY)
        self.controlling_session_id = NO_ACTIVE_BATCH_SESSION
        self._bits = 0b00

    def controlling_session_is_known(self) -> bool:
        return self.controlling_session_id != NO_ACTIVE_BATCH_SESSION

    def controlling_session_is_cli(self) -> bool:
        return self.controlling_session_is_known() and self.controlling_session_id == CLI_SESSION_ID

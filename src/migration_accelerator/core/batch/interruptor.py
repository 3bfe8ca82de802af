from __future__ import annotations

from typing import Any

from ..events import POST_ROW_DELETE, POST_ROW_SAVE, EventDispatcher, RowEvent
from ..runtime import RESULT_STOPPED, MigrationRuntime
from ..state import KeyValueState
from ..storage import Storage
from ..utils import now_iso
from .coordinator import MigrationBatchCoordinator

STOP_REQUESTED_KEY = "migration_accelerator.stop_requested"


class InstantaneousBatchInterruptor:
    """Halts the running batch at the next row checkpoint once a stop was requested.

    The runtime is interrupted before the lock is released, so a poll that sees the
    released lock also sees a stopped runtime.
    """

    def __init__(
        self,
        state: KeyValueState,
        coordinator: MigrationBatchCoordinator,
        runtime: MigrationRuntime,
        storage: Storage | None = None,
    ) -> None:
        self.state = state
        self.coordinator = coordinator
        self.runtime = runtime
        self.storage = storage

    def register(self, dispatcher: EventDispatcher) -> None:
        dispatcher.subscribe(POST_ROW_SAVE, self.on_row_event)
        dispatcher.subscribe(POST_ROW_DELETE, self.on_row_event)

    def request_stop(self) -> None:
        self.state.set(STOP_REQUESTED_KEY, True)

    def stop_requested(self) -> bool:
        return self.state.get(STOP_REQUESTED_KEY, False) is True

    def on_row_event(self, event: RowEvent) -> bool:
        return self.interrupt(getattr(event, "plugin_id", None))

    def interrupt(self, plugin_id: str | None = None) -> bool:
        if not self.stop_requested():
            return False
        self.state.delete(STOP_REQUESTED_KEY)
        self.runtime.interrupt_migration(RESULT_STOPPED)
        payload: dict[str, Any] = {"result": RESULT_STOPPED}
        if self.coordinator.can_modify_active_operation():
            self.coordinator.stop_operation()
            payload["released"] = True
        if self.storage is not None:
            self.storage.insert_event("batch_interrupted", now_iso(), plugin_id=plugin_id, payload=payload)
        return True

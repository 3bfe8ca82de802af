"""Contracts for the plugin execution runtime the accelerator drives.

The runtime owns row-level ETL: source iteration, transformation, destination
writes and the id map. The accelerator only orders, groups, starts, interrupts
and rolls back its plugins.
"""

from __future__ import annotations

from typing import Any, Iterable, Protocol

RESULT_COMPLETED = "completed"
RESULT_INCOMPLETE = "incomplete"
RESULT_STOPPED = "stopped"
RESULT_FAILED = "failed"

MESSAGE_CATEGORY_ENTITY_VALIDATION = "entity_validation"
MESSAGE_CATEGORY_OTHER = "other"
MESSAGE_CATEGORIES = (MESSAGE_CATEGORY_ENTITY_VALIDATION, MESSAGE_CATEGORY_OTHER)


class IdMap(Protocol):
    """Cursor over one plugin's source-id to destination-id rows."""

    def prepare_update(self) -> None:  # pragma: no cover - protocol
        ...

    def rewind(self) -> None:  # pragma: no cover - protocol
        ...

    def valid(self) -> bool:  # pragma: no cover - protocol
        ...

    def next(self) -> None:  # pragma: no cover - protocol
        ...

    def current_source(self) -> dict[str, Any]:  # pragma: no cover - protocol
        ...

    def current_destination(self) -> dict[str, Any]:  # pragma: no cover - protocol
        ...

    def delete(self, source_ids: dict[str, Any]) -> None:  # pragma: no cover - protocol
        ...

    def save_message(
        self, source_ids: dict[str, Any], message: str, level: int
    ) -> None:  # pragma: no cover - protocol
        ...

    def processed_count(self) -> int:  # pragma: no cover - protocol
        ...


class BatchContext(Protocol):
    """Per-operation scratch space; `finished` below 1.0 asks for another slice."""

    sandbox: dict[str, Any]
    results: dict[str, Any]
    finished: float
    message: str


class MigrationRuntime(Protocol):
    """Executes plugins incrementally.

    `run` and `rollback` process one slice per call and set `context.finished`
    below 1.0 while work remains. `run` stores its outcome (one of the RESULT_*
    values) in `context.results["result"]`.
    """

    def run(
        self, plugin_ids: list[str], config: dict[str, Any], context: BatchContext
    ) -> None:  # pragma: no cover - protocol
        ...

    def rollback(
        self, plugin_ids: list[str], context: BatchContext
    ) -> None:  # pragma: no cover - protocol
        ...

    def interrupt_migration(self, result: str) -> None:  # pragma: no cover - protocol
        ...

    def get_id_map(self, plugin_id: str) -> IdMap:  # pragma: no cover - protocol
        ...

    def source_ids(self, plugin_id: str) -> Iterable[dict[str, Any]]:  # pragma: no cover - protocol
        ...

    def rollback_destination(
        self, plugin_id: str, destination_ids: dict[str, Any]
    ) -> None:  # pragma: no cover - protocol
        ...

    def is_runnable(self, plugin_id: str) -> bool:  # pragma: no cover - protocol
        ...

    def source_count(self, plugin_id: str) -> int:  # pragma: no cover - protocol
        ...

    def processed_count(self, plugin_id: str) -> int:  # pragma: no cover - protocol
        ...

    def all_rows_processed(self, plugin_id: str) -> bool:  # pragma: no cover - protocol
        ...

    def source_fingerprint(self, plugin_id: str) -> str | None:  # pragma: no cover - protocol
        ...

    def attach_dispatcher(self, dispatcher: Any) -> None:  # pragma: no cover - protocol
        """Row save/delete and id map message events are dispatched through `dispatcher`."""
        ...

"""Persisted operation lists, advanced one slice per tick.

An operation is a json mapping with an ``op`` name and its arguments. The handler
for an operation receives the operation and an :class:`OperationContext`; setting
``context.finished`` below 1.0 asks for another slice of the same operation, with
``context.sandbox`` carried over. ``context.results`` lives for the whole batch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from ..storage import Storage
from ..utils import now_iso

OperationHandler = Callable[[dict[str, Any], "OperationContext"], None]


@dataclass
class OperationContext:
    sandbox: dict[str, Any] = field(default_factory=dict)
    results: dict[str, Any] = field(default_factory=dict)
    finished: float = 1.0
    message: str = ""


class BatchExecutor:
    def __init__(self, storage: Storage, handlers: dict[str, OperationHandler] | None = None) -> None:
        self.storage = storage
        self.handlers: dict[str, OperationHandler] = dict(handlers or {})

    def register(self, op: str, handler: OperationHandler) -> None:
        self.handlers[op] = handler

    def create(
        self,
        action: str,
        operations: list[dict[str, Any]],
        migration_id: str | None = None,
        session_id: str | None = None,
    ) -> int:
        unknown = sorted({item["op"] for item in operations} - set(self.handlers))
        if unknown:
            raise ValueError(f"No handler for batch operations: {', '.join(unknown)}")
        batch_id = self.storage.create_batch(action, operations, migration_id, session_id)
        self.storage.insert_event(
            "batch_started",
            now_iso(),
            migration_id=migration_id,
            payload={"batch_id": batch_id, "action": action, "operations": len(operations)},
        )
        return batch_id

    def load(self, batch_id: int) -> dict[str, Any] | None:
        return self.storage.fetch_batch(batch_id)

    @staticmethod
    def progress(batch: dict[str, Any]) -> float:
        if batch["finished"]:
            return 1.0
        total = len(batch["operations"])
        if total == 0:
            return 1.0
        partial = float(batch["state"].get("finished", 0.0) or 0.0)
        partial = min(max(partial, 0.0), 0.999)
        return (int(batch["cursor"]) + partial) / total

    def tick(self, batch_id: int) -> float:
        """Run one slice of the current operation and return the batch progress."""

        batch = self.storage.fetch_batch(batch_id)
        if batch is None:
            raise LookupError(f"Unknown batch: {batch_id}")
        if batch["finished"]:
            return 1.0
        operations = batch["operations"]
        cursor = int(batch["cursor"])
        state = batch["state"]
        if cursor >= len(operations):
            self._finish(batch, cursor, state)
            return 1.0

        operation = operations[cursor]
        context = OperationContext(
            sandbox=dict(state.get("sandbox") or {}),
            results=dict(state.get("results") or {}),
        )
        try:
            self.handlers[operation["op"]](operation, context)
        except Exception as exc:
            context.results["completed"] = False
            error = {
                "type": type(exc).__name__,
                "message": str(exc),
                "op": operation["op"],
                "cursor": cursor,
            }
            self.storage.update_batch(
                batch_id,
                cursor,
                {"sandbox": context.sandbox, "results": context.results, "finished": 0.0},
                finished=True,
                error=error,
            )
            self.storage.insert_event(
                "batch_failed",
                now_iso(),
                migration_id=batch.get("migration_id"),
                payload={"batch_id": batch_id, **error},
            )
            raise

        if context.finished >= 1.0:
            cursor += 1
            new_state = {"sandbox": {}, "results": context.results, "finished": 0.0}
        else:
            new_state = {
                "sandbox": context.sandbox,
                "results": context.results,
                "finished": float(context.finished),
            }
        if context.message:
            new_state["message"] = context.message
        if cursor >= len(operations):
            self._finish(batch, cursor, new_state)
            return 1.0
        self.storage.update_batch(batch_id, cursor, new_state)
        batch.update(cursor=cursor, state=new_state)
        return self.progress(batch)

    def _finish(self, batch: dict[str, Any], cursor: int, state: dict[str, Any]) -> None:
        self.storage.update_batch(batch["batch_id"], cursor, state, finished=True)
        self.storage.insert_event(
            "batch_finished",
            now_iso(),
            migration_id=batch.get("migration_id"),
            payload={"batch_id": batch["batch_id"], "action": batch["action"]},
        )

    def interrupt(self, batch_id: int, reason: str) -> None:
        """Mark a batch finished without running its remaining operations."""

        batch = self.storage.fetch_batch(batch_id)
        if batch is None or batch["finished"]:
            return
        state = dict(batch["state"])
        results = dict(state.get("results") or {})
        results["completed"] = False
        results["interrupted"] = reason
        state["results"] = results
        self.storage.update_batch(batch_id, int(batch["cursor"]), state, finished=True)
        self.storage.insert_event(
            "batch_interrupted",
            now_iso(),
            migration_id=batch.get("migration_id"),
            payload={"batch_id": batch_id, "reason": reason, "cursor": int(batch["cursor"])},
        )

from __future__ import annotations

from typing import Any, Callable

from ..clusterer.heuristics import SHARED_STRUCTURE_PREFIX
from ..errors import BatchConflictError, UnknownBatchActionError
from ..repository import Migration, MigrationRepository
from ..runtime import RESULT_COMPLETED, RESULT_STOPPED, MigrationRuntime
from ..storage import Storage
from ..types import BatchStatus, BatchUnknown
from ..utils import now_iso, now_ts
from .coordinator import MigrationBatchCoordinator
from .executor import BatchExecutor, OperationContext
from .interruptor import STOP_REQUESTED_KEY
from .purger import MigrationPurger

ACTION_IMPORT = "import"
ACTION_ROLLBACK = "rollback"
ACTION_ROLLBACK_AND_IMPORT = "rollback-and-import"
ACTION_REFRESH = "refresh"
ACTION_INITIAL_IMPORT = "initial-import"
ACTIONS = (ACTION_IMPORT, ACTION_ROLLBACK, ACTION_ROLLBACK_AND_IMPORT, ACTION_REFRESH)

ACTIVE_BATCH_ID_KEY = "migration_accelerator.active_batch_id"

# Progress stays below 1.0 until the batch is observed to be finished.
PROGRESS_CEILING = 0.99

OP_RECORD_IMPORT_START = "record_import_start"
OP_RECORD_IMPORT_DURATION = "record_import_duration"
OP_RESET_IMPORT_METADATA = "reset_import_metadata"
OP_CALCULATE_COMPLETENESS = "calculate_completeness"
OP_RUN = "run"
OP_ROLLBACK = "rollback"
OP_PURGE = "purge"

INTERRUPTED_LEASE_EXPIRED = "lease_expired"
INTERRUPTED_SUPERSEDED = "superseded"


class MigrationBatchManager:
    """Builds operation lists for migration actions and drives them by polling."""

    def __init__(
        self,
        repository: MigrationRepository,
        executor: BatchExecutor,
        coordinator: MigrationBatchCoordinator,
        runtime: MigrationRuntime,
        *,
        purger: MigrationPurger | None = None,
        config: dict[str, Any] | None = None,
        clock: Callable[[], int] = now_ts,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.coordinator = coordinator
        self.runtime = runtime
        self.purger = purger
        self.config = config or {}
        self.clock = clock
        executor.register(OP_RECORD_IMPORT_START, self._op_record_import_start)
        executor.register(OP_RECORD_IMPORT_DURATION, self._op_record_import_duration)
        executor.register(OP_RESET_IMPORT_METADATA, self._op_reset_import_metadata)
        executor.register(OP_CALCULATE_COMPLETENESS, self._op_calculate_completeness)
        executor.register(OP_RUN, self._op_run)
        executor.register(OP_ROLLBACK, self._op_rollback)
        executor.register(OP_PURGE, self._op_purge)

    @property
    def storage(self) -> Storage:
        return self.executor.storage

    def import_config(self) -> dict[str, Any]:
        section = self.config.get("import", {})
        return {
            "source_base_path": section.get("source_base_path", ""),
            "source_private_file_path": section.get("source_private_file_path"),
        }

    # Operation assembly.

    def get_batch_operation(self, migration: Migration, action: str) -> dict[str, Any]:
        plugin_ids = list(migration.plugin_ids)
        if action == ACTION_IMPORT:
            return {"op": OP_RUN, "plugin_ids": plugin_ids, "config": self.import_config()}
        if action == ACTION_ROLLBACK:
            # Destinations are torn down in the opposite order they were built.
            return {"op": OP_ROLLBACK, "plugin_ids": list(reversed(plugin_ids))}
        raise UnknownBatchActionError(action)

    def build_operations(self, migration_id: str, action: str) -> list[dict[str, Any]]:
        if action not in ACTIONS:
            raise UnknownBatchActionError(action)
        migration = self.repository.get_migration(migration_id)

        def mark(op: str) -> dict[str, Any]:
            return {"op": op, "migration_id": migration_id}

        if action == ACTION_IMPORT:
            operations = [
                mark(OP_RECORD_IMPORT_START),
                self.get_batch_operation(migration, ACTION_IMPORT),
                mark(OP_RECORD_IMPORT_DURATION),
            ]
        elif action == ACTION_ROLLBACK:
            operations = [
                mark(OP_RESET_IMPORT_METADATA),
                self.get_batch_operation(migration, ACTION_ROLLBACK),
            ]
        elif action == ACTION_ROLLBACK_AND_IMPORT:
            operations = [
                mark(OP_RESET_IMPORT_METADATA),
                self.get_batch_operation(migration, ACTION_ROLLBACK),
                mark(OP_RECORD_IMPORT_START),
                self.get_batch_operation(migration, ACTION_IMPORT),
                mark(OP_RECORD_IMPORT_DURATION),
            ]
        else:
            operations = [
                mark(OP_RESET_IMPORT_METADATA),
                mark(OP_RECORD_IMPORT_START),
                {"op": OP_PURGE, "plugin_ids": list(migration.plugin_ids)},
                self.get_batch_operation(migration, ACTION_IMPORT),
                mark(OP_RECORD_IMPORT_DURATION),
            ]
        operations.append(mark(OP_CALCULATE_COMPLETENESS))
        return operations

    def initial_plugin_ids(self) -> tuple[list[str], list[str]]:
        """Plugin ids of the initial import and the migrations it fully imports.

        Every migration's non-data plugins are included together with their
        required dependencies. Data plugins pull in required dependencies that
        live in a "Shared structure for" migration they depend upon.
        """

        clustering = self.repository.clustering()
        known = set(clustering.plugin_ids)
        migrations = self.repository.get_migrations()
        by_id = {migration.migration_id: migration for migration in migrations}
        selected: list[str] = []
        for migration in migrations:
            non_data = list(migration.non_data_plugin_ids)
            dependencies: list[str] = []
            for pid in non_data:
                for dep in clustering.get(pid).required:
                    if dep in known and dep not in non_data and dep not in selected:
                        dependencies.append(dep)
            shared: set[str] = set()
            for dep_id in migration.dependencies:
                dep_migration = by_id.get(dep_id)
                if dep_migration is not None and SHARED_STRUCTURE_PREFIX in dep_migration.label:
                    shared.update(dep_migration.plugin_ids)
            for pid in migration.data_plugin_ids:
                dependencies.extend(dep for dep in clustering.get(pid).required if dep in shared)
            for pid in dependencies + non_data:
                if pid not in selected:
                    selected.append(pid)
        chosen = set(selected)
        ordered = [pid for pid in clustering.plugin_ids if pid in chosen]
        completely_imported = [
            migration.migration_id
            for migration in migrations
            if set(migration.plugin_ids) <= chosen
        ]
        return ordered, completely_imported

    # Batch creation.

    def _claim(self) -> None:
        if self.coordinator.has_active_operation() or not self.coordinator.start_operation():
            raise BatchConflictError(
                "Another migration operation is in progress. Wait for it to finish or stop it."
            )
        # A stop request outlives the batch it targeted only until the next claim.
        self.coordinator.state.delete(STOP_REQUESTED_KEY)

    def _create(
        self, action: str, operations: list[dict[str, Any]], migration_id: str | None
    ) -> BatchStatus:
        self._claim()
        try:
            batch_id = self.executor.create(
                action, operations, migration_id, self.coordinator.session_id
            )
        except Exception:
            self.coordinator.stop_operation()
            raise
        self.coordinator.state.set(ACTIVE_BATCH_ID_KEY, batch_id)
        return BatchStatus(batch_id, 0.0)

    def create_migration_batch(self, migration_id: str, action: str) -> BatchStatus:
        operations = self.build_operations(migration_id, action)
        return self._create(action, operations, migration_id)

    def create_initial_migration_batch(self) -> BatchStatus:
        plugin_ids, completely_imported = self.initial_plugin_ids()
        operations: list[dict[str, Any]] = [
            {"op": OP_RECORD_IMPORT_START, "migration_id": mid} for mid in completely_imported
        ]
        operations.append({"op": OP_RUN, "plugin_ids": plugin_ids, "config": self.import_config()})
        for mid in completely_imported:
            operations.append({"op": OP_RECORD_IMPORT_DURATION, "migration_id": mid})
            operations.append({"op": OP_CALCULATE_COMPLETENESS, "migration_id": mid})
        return self._create(ACTION_INITIAL_IMPORT, operations, None)

    def request_stop(self) -> bool:
        """Ask the running batch to stop at its next row; False when nothing runs."""

        if not self.coordinator.has_active_operation():
            return False
        self.coordinator.state.set(STOP_REQUESTED_KEY, True)
        self.storage.insert_event(
            "migration_stop_requested",
            now_iso(),
            payload={"session_id": self.coordinator.session_id},
        )
        return True

    # Polling.

    def is_migration_batch_ongoing(self, batch_id: int) -> BatchStatus | BatchUnknown:
        batch = self.executor.load(batch_id)
        if batch is None:
            return BatchUnknown()
        if batch["finished"]:
            return BatchStatus(batch_id, 1.0)

        coordinator = self.coordinator
        try:
            if not coordinator.has_active_operation():
                # Stopped by an interruption, or the lease lapsed.
                self._finalize_interrupted(batch, self._inactive_reason())
                return BatchStatus(batch_id, 1.0)
            if not coordinator.can_modify_active_operation():
                return BatchStatus(batch_id, min(self.executor.progress(batch), PROGRESS_CEILING))
            if coordinator.state.get(ACTIVE_BATCH_ID_KEY) != batch_id:
                self._finalize_interrupted(batch, INTERRUPTED_SUPERSEDED)
                return BatchStatus(batch_id, 1.0)
            if not coordinator.extend_active_operation():
                self._finalize_interrupted(batch, INTERRUPTED_LEASE_EXPIRED)
                return BatchStatus(batch_id, 1.0)

            progress = self.executor.tick(batch_id)
            if progress >= 1.0:
                if coordinator.can_modify_active_operation():
                    coordinator.stop_operation()
                return BatchStatus(batch_id, 1.0)
            if not coordinator.has_active_operation():
                # Interrupted during this slice; remaining operations are dropped.
                self._finalize_interrupted(batch, RESULT_STOPPED)
                return BatchStatus(batch_id, 1.0)
            return BatchStatus(batch_id, min(progress, PROGRESS_CEILING))
        except Exception:
            if coordinator.can_modify_active_operation():
                coordinator.stop_operation()
            raise

    def _inactive_reason(self) -> str:
        if self.coordinator.lease_expired:
            return INTERRUPTED_LEASE_EXPIRED
        return RESULT_STOPPED

    def _finalize_interrupted(self, batch: dict[str, Any], reason: str) -> None:
        self.executor.interrupt(batch["batch_id"], reason)
        migration_id = batch.get("migration_id")
        if migration_id:
            self.repository.calculate_completeness(migration_id)

    # Operation handlers.

    def _op_record_import_start(self, op: dict[str, Any], context: OperationContext) -> None:
        self.repository.record_import_start(op["migration_id"], self.clock())

    def _op_record_import_duration(self, op: dict[str, Any], context: OperationContext) -> None:
        status = str(context.results.get("result", RESULT_COMPLETED))
        context.results.setdefault("durations", {})[op["migration_id"]] = (
            self.repository.record_import_duration(op["migration_id"], self.clock(), status)
        )

    def _op_reset_import_metadata(self, op: dict[str, Any], context: OperationContext) -> None:
        self.repository.reset_import_metadata(op["migration_id"])

    def _op_calculate_completeness(self, op: dict[str, Any], context: OperationContext) -> None:
        completed = self.repository.calculate_completeness(op["migration_id"])
        context.results.setdefault("completeness", {})[op["migration_id"]] = completed

    def _op_run(self, op: dict[str, Any], context: OperationContext) -> None:
        self.runtime.run(list(op["plugin_ids"]), dict(op.get("config") or {}), context)

    def _op_rollback(self, op: dict[str, Any], context: OperationContext) -> None:
        self.runtime.rollback(list(op["plugin_ids"]), context)

    def _op_purge(self, op: dict[str, Any], context: OperationContext) -> None:
        if self.purger is None:
            raise RuntimeError("Refreshing requires a purger.")
        plugin_ids = list(op["plugin_ids"])
        index = int(context.sandbox.get("index", 0))
        if index < len(plugin_ids):
            purged = self.purger.purge(plugin_ids[index])
            context.results["purged"] = int(context.results.get("purged", 0)) + purged
            index += 1
        context.sandbox["index"] = index
        context.finished = 1.0 if index >= len(plugin_ids) else index / len(plugin_ids)

from __future__ import annotations


class HeuristicConfigurationError(RuntimeError):
    """A heuristic table or heuristic implementation is wired incorrectly."""


class ClusterAssignmentError(RuntimeError):
    """A plugin was assigned a cluster twice, or never."""


class InconsistentBatchStateError(AssertionError):
    pass


class BatchCoordinatorMisuseError(RuntimeError):
    pass


class BatchConflictError(RuntimeError):
    pass


class UnknownBatchActionError(ValueError):
    pass


class MigrationNotFoundError(KeyError):
    def __init__(self, migration_id: str) -> None:
        super().__init__(migration_id)
        self.migration_id = migration_id

    def __str__(self) -> str:
        return f"Unknown migration: {self.migration_id}"


class ConfigError(ValueError):
    pass

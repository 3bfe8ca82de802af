"""Per-request object graph: one coordinator and one manager per session."""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from .batch.coordinator import MigrationBatchCoordinator
from .batch.executor import BatchExecutor
from .batch.interruptor import InstantaneousBatchInterruptor
from .batch.manager import MigrationBatchManager
from .batch.purger import MigrationPurger
from .clusterer.clusterer import MigrationClusterer
from .config import lock_ttl
from .errors import ConfigError
from .events import EventDispatcher, MessageRecorder
from .plugin_manager import PluginManager, load_runtime
from .repository import MigrationRepository
from .runtime import MigrationRuntime
from .state import KeyValueState, PersistentLock
from .storage import Storage
from .utils import get_appdata_dir, make_file_logger


@dataclass
class AcceleratorServices:
    config: dict[str, Any]
    storage: Storage
    runtime: MigrationRuntime
    plugin_manager: PluginManager
    repository: MigrationRepository
    coordinator: MigrationBatchCoordinator
    dispatcher: EventDispatcher
    interruptor: InstantaneousBatchInterruptor
    manager: MigrationBatchManager
    logger: Callable[[str], None]


def open_storage(appdata: Path | None = None) -> Storage:
    return Storage((appdata or get_appdata_dir()) / "state.sqlite")


def build_runtime(config: dict[str, Any]) -> MigrationRuntime:
    runtime_config = config.get("runtime", {})
    entrypoint = runtime_config.get("entrypoint")
    if not entrypoint:
        raise ConfigError(
            "No migration runtime configured; set runtime.entrypoint or MIGRATION_ACCELERATOR_RUNTIME"
        )
    return load_runtime(entrypoint, dict(runtime_config.get("settings") or {}))


def build_services(
    config: dict[str, Any],
    session_id: str,
    *,
    runtime: MigrationRuntime | None = None,
    storage: Storage | None = None,
    appdata: Path | None = None,
    logger: Callable[[str], None] | None = None,
    clock: Callable[[], float] = time.time,
) -> AcceleratorServices:
    appdata = appdata or get_appdata_dir()
    storage = storage or open_storage(appdata)
    logger = logger or make_file_logger(appdata / "logs" / "accelerator.log")
    runtime = runtime or build_runtime(config)

    plugin_manager = PluginManager(Path(config["migrations_dir"]))
    clusterer = MigrationClusterer(
        inspector=runtime, settings=config.get("clusterer", {}), logger=logger
    )
    repository = MigrationRepository(
        storage,
        runtime,
        plugin_manager.discover_available(),
        clusterer=clusterer,
        config=config,
        logger=logger,
    )

    state = KeyValueState(storage)
    lock = PersistentLock(storage, session_id, clock=clock)
    coordinator = MigrationBatchCoordinator(
        lock, state, session_id, ttl=lock_ttl(config), storage=storage
    )

    dispatcher = EventDispatcher()
    MessageRecorder(storage, repository.migration_of).register(dispatcher)
    interruptor = InstantaneousBatchInterruptor(state, coordinator, runtime, storage)
    interruptor.register(dispatcher)
    runtime.attach_dispatcher(dispatcher)

    manager = MigrationBatchManager(
        repository,
        BatchExecutor(storage),
        coordinator,
        runtime,
        purger=MigrationPurger(runtime, dispatcher, storage),
        config=config,
    )
    return AcceleratorServices(
        config=config,
        storage=storage,
        runtime=runtime,
        plugin_manager=plugin_manager,
        repository=repository,
        coordinator=coordinator,
        dispatcher=dispatcher,
        interruptor=interruptor,
        manager=manager,
        logger=logger,
    )

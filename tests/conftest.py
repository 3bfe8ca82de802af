from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml

from migration_accelerator.core.config import merge_config
from migration_accelerator.core.events import (
    IDMAP_MESSAGE,
    POST_ROW_DELETE,
    POST_ROW_SAVE,
    EventDispatcher,
    IdMapMessageEvent,
    RowEvent,
)
from migration_accelerator.core.runtime import RESULT_COMPLETED, RESULT_FAILED
from migration_accelerator.core.services import AcceleratorServices, build_services
from migration_accelerator.core.storage import Storage
from migration_accelerator.core.types import MigrationPluginDefinition
from migration_accelerator.core.utils import null_logger


def make_plugin(
    plugin_id: str,
    *,
    label: str | None = None,
    tags: tuple[str, ...] = (),
    source: dict[str, Any] | None = None,
    destination: str = "entity:node",
    required: tuple[str, ...] = (),
    optional: tuple[str, ...] = (),
) -> MigrationPluginDefinition:
    return MigrationPluginDefinition(
        plugin_id=plugin_id,
        label=label or plugin_id,
        tags=tags,
        source=source or {"plugin": plugin_id.split(":", 1)[0]},
        destination={"plugin": destination},
        required=required,
        optional=optional,
    )


def article_site() -> list[MigrationPluginDefinition]:
    """A node bundle with its structure, plus the users it references."""

    return [
        make_plugin(
            "d7_node:article",
            label="Article",
            tags=("Drupal 7", "Content"),
            source={"plugin": "d7_node", "node_type": "article"},
            destination="entity:node",
            required=("d7_user", "d7_node_type:article"),
            optional=("d7_field_instance:node:article",),
        ),
        make_plugin(
            "d7_node_type:article",
            label="Content type: Article",
            tags=("Drupal 7", "Configuration"),
            source={"plugin": "d7_node_type", "node_type": "article"},
            destination="entity:node_type",
        ),
        make_plugin(
            "d7_field_instance:node:article",
            label="Field instance: Article",
            tags=("Drupal 7", "Configuration"),
            source={"plugin": "d7_field_instance", "entity_type": "node", "bundle": "article"},
            destination="entity:field_config",
            required=("d7_node_type:article",),
        ),
        make_plugin(
            "d7_user",
            label="User accounts",
            tags=("Drupal 7", "Content"),
            source={"plugin": "d7_user"},
            destination="entity:user",
        ),
    ]


class FakeIdMap:
    """Id map over (source ids, destination ids) rows; iteration walks a snapshot."""

    def __init__(self) -> None:
        self.rows: list[tuple[dict[str, Any], dict[str, Any]]] = []
        self.needs_update = False
        self.deleted: list[dict[str, Any]] = []
        self.messages: list[tuple[dict[str, Any], str, int]] = []
        self._snapshot: list[tuple[dict[str, Any], dict[str, Any]]] = []
        self._position = 0

    def add(self, source_ids: dict[str, Any], destination_ids: dict[str, Any]) -> None:
        self.rows.append((dict(source_ids), dict(destination_ids)))

    def has(self, source_ids: dict[str, Any]) -> bool:
        return any(row[0] == source_ids for row in self.rows)

    def prepare_update(self) -> None:
        self.needs_update = True

    def rewind(self) -> None:
        self._snapshot = list(self.rows)
        self._position = 0

    def valid(self) -> bool:
        return self._position < len(self._snapshot)

    def next(self) -> None:
        self._position += 1

    def current_source(self) -> dict[str, Any]:
        return dict(self._snapshot[self._position][0])

    def current_destination(self) -> dict[str, Any]:
        return dict(self._snapshot[self._position][1])

    def delete(self, source_ids: dict[str, Any]) -> None:
        self.rows = [row for row in self.rows if row[0] != source_ids]
        self.deleted.append(dict(source_ids))

    def save_message(self, source_ids: dict[str, Any], message: str, level: int) -> None:
        self.messages.append((dict(source_ids), message, level))

    def processed_count(self) -> int:
        return len(self.rows)


class FakeRuntime:
    """In-memory plugin runtime: every source row becomes one destination row."""

    def __init__(
        self,
        source_rows: dict[str, list[dict[str, Any]]] | None = None,
        *,
        rows_per_slice: int = 0,
        unrunnable: set[str] | None = None,
    ) -> None:
        self.source_rows = {pid: list(rows) for pid, rows in (source_rows or {}).items()}
        self.rows_per_slice = rows_per_slice
        self.unrunnable = set(unrunnable or ())
        self.id_maps: dict[str, FakeIdMap] = {}
        self.fingerprints: dict[str, str | None] = {}
        self.fail_on: set[str] = set()
        self.message_on: dict[str, str] = {}
        self.calls: list[tuple[str, list[str]]] = []
        self.rolled_back: list[tuple[str, dict[str, Any]]] = []
        self.interrupted: str | None = None
        self.journal: list[str] = []
        self.dispatcher: EventDispatcher | None = None

    def attach_dispatcher(self, dispatcher: EventDispatcher) -> None:
        self.dispatcher = dispatcher

    def _dispatch(self, event_name: str, event: Any) -> None:
        if self.dispatcher is not None:
            self.dispatcher.dispatch(event_name, event)

    def get_id_map(self, plugin_id: str) -> FakeIdMap:
        return self.id_maps.setdefault(plugin_id, FakeIdMap())

    def run(self, plugin_ids: list[str], config: dict[str, Any], context: Any) -> None:
        if not context.sandbox:
            self.calls.append(("run", list(plugin_ids)))
            self.journal.append("run")
        self.interrupted = None
        budget = self.rows_per_slice
        done = 0
        total = sum(len(self.source_rows.get(pid, [])) for pid in plugin_ids) or 1
        for pid in plugin_ids:
            if pid in self.fail_on:
                context.results["result"] = RESULT_FAILED
                raise RuntimeError(f"{pid} exploded")
            id_map = self.get_id_map(pid)
            for source_ids in self.source_rows.get(pid, []):
                if id_map.has(source_ids):
                    done += 1
                    continue
                if budget and context.sandbox.get("slice_rows", 0) >= budget:
                    context.sandbox["slice_rows"] = 0
                    context.finished = done / total
                    return
                destination_ids = {"id": f"{pid}/{len(id_map.rows) + 1}"}
                id_map.add(source_ids, destination_ids)
                done += 1
                context.sandbox["slice_rows"] = context.sandbox.get("slice_rows", 0) + 1
                if pid in self.message_on:
                    self._dispatch(
                        IDMAP_MESSAGE,
                        IdMapMessageEvent(pid, source_ids, self.message_on[pid], 1),
                    )
                self._dispatch(POST_ROW_SAVE, RowEvent(pid, destination_ids, source_ids))
                if self.interrupted:
                    context.results["result"] = self.interrupted
                    return
        context.results["result"] = RESULT_COMPLETED

    def rollback(self, plugin_ids: list[str], context: Any) -> None:
        self.calls.append(("rollback", list(plugin_ids)))
        for pid in plugin_ids:
            id_map = self.get_id_map(pid)
            for source_ids, destination_ids in list(id_map.rows):
                self.rolled_back.append((pid, destination_ids))
                id_map.delete(source_ids)
                self._dispatch(POST_ROW_DELETE, RowEvent(pid, destination_ids, source_ids))

    def interrupt_migration(self, result: str) -> None:
        self.interrupted = result
        self.journal.append(f"interrupt:{result}")

    def source_ids(self, plugin_id: str) -> list[dict[str, Any]]:
        return [dict(ids) for ids in self.source_rows.get(plugin_id, [])]

    def rollback_destination(self, plugin_id: str, destination_ids: dict[str, Any]) -> None:
        self.rolled_back.append((plugin_id, dict(destination_ids)))
        self.journal.append(f"rollback_destination:{plugin_id}")

    def is_runnable(self, plugin_id: str) -> bool:
        return plugin_id not in self.unrunnable

    def source_count(self, plugin_id: str) -> int:
        return len(self.source_rows.get(plugin_id, []))

    def processed_count(self, plugin_id: str) -> int:
        return self.get_id_map(plugin_id).processed_count()

    def all_rows_processed(self, plugin_id: str) -> bool:
        return self.processed_count(plugin_id) >= self.source_count(plugin_id)

    def source_fingerprint(self, plugin_id: str) -> str | None:
        if plugin_id in self.fingerprints:
            return self.fingerprints[plugin_id]
        return str(len(self.source_rows.get(plugin_id, [])))


def article_rows(nodes: int = 3) -> dict[str, list[dict[str, Any]]]:
    return {
        "d7_node:article": [{"nid": n} for n in range(1, nodes + 1)],
        "d7_node_type:article": [{"type": "article"}],
        "d7_field_instance:node:article": [{"field_name": "body"}, {"field_name": "field_tags"}],
        "d7_user": [{"uid": 1}, {"uid": 2}],
    }


def fake_runtime_factory(settings: dict[str, Any]) -> FakeRuntime:
    return FakeRuntime(settings.get("rows") or article_rows())


def manifest_for(plugin: MigrationPluginDefinition) -> dict[str, Any]:
    return {
        "id": plugin.plugin_id,
        "label": plugin.label,
        "migration_tags": list(plugin.tags),
        "source": dict(plugin.source),
        "destination": dict(plugin.destination),
        "migration_dependencies": {
            "required": list(plugin.required),
            "optional": list(plugin.optional),
        },
    }


def write_manifests(directory: Path, plugins: list[MigrationPluginDefinition]) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    for plugin in plugins:
        name = plugin.plugin_id.replace(":", "__") + ".yml"
        (directory / name).write_text(
            yaml.safe_dump(manifest_for(plugin), sort_keys=False), encoding="utf-8"
        )
    return directory


class Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def open_session(
    tmp_path: Path,
    runtime: FakeRuntime,
    session_id: str,
    *,
    clock: Clock | None = None,
    config: dict[str, Any] | None = None,
) -> AcceleratorServices:
    """Services as one request of `session_id` would see them."""

    migrations_dir = tmp_path / "migrations"
    if not migrations_dir.exists():
        write_manifests(migrations_dir, article_site())
    merged = merge_config({"migrations_dir": str(migrations_dir), **(config or {})})
    return build_services(
        merged,
        session_id,
        runtime=runtime,
        appdata=tmp_path / "appdata",
        logger=null_logger,
        clock=clock or Clock(),
    )


def drive(services: AcceleratorServices, batch_id: int, limit: int = 100) -> list[float]:
    progress: list[float] = []
    for _ in range(limit):
        status = services.manager.is_migration_batch_ongoing(batch_id)
        progress.append(status.progress)
        if status.is_complete:
            return progress
    raise AssertionError(f"batch {batch_id} did not finish in {limit} polls")


def migration_id_for(services: AcceleratorServices, label: str) -> str:
    for migration in services.repository.get_migrations():
        if migration.label == label:
            return migration.migration_id
    raise AssertionError(f"no migration labelled {label!r}")


@pytest.fixture()
def storage(tmp_path: Path) -> Storage:
    return Storage(tmp_path / "state.sqlite")


@pytest.fixture()
def runtime() -> FakeRuntime:
    return FakeRuntime(article_rows())

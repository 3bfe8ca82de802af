"""Migrations: the operator-facing bundles built from clustered plugins.

A migration is one cluster. Plugins clustered as ``LIFTED-<label>`` belong to the
``<label>`` migration but only contribute supporting rows; unless they carry the
``Content`` tag they are not counted as that migration's data.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from .clusterer.clusterer import MigrationClusterer
from .clusterer.heuristics import LANGUAGE_SETTINGS, LIFTED_PREFIX, SHARED_STRUCTURE_PREFIX
from .errors import MigrationNotFoundError
from .runtime import MESSAGE_CATEGORIES, MigrationRuntime
from .state import KeyValueState
from .storage import Storage
from .types import TAG_CONTENT, ClusteringResult, MigrationPluginDefinition
from .utils import md5_text, now_iso, sha256_text

FINGERPRINT_NOT_COMPUTED = "fingerprint_not_computed"
FINGERPRINT_NOT_SUPPORTED = "fingerprint_not_supported"
FINGERPRINT_FAILED = "fingerprint_failed"

_MIGRATION_ID_LABEL_LIMIT = 192
_MIGRATION_ID_RE = re.compile(r"[0-9a-f]{32}-.+", re.DOTALL)
_NATURAL_SPLIT_RE = re.compile(r"(\d+)")

CLUSTERING_CACHE_KEY = "migration_accelerator.clustering"


def generate_migration_id(label: str) -> str:
    if not label:
        raise ValueError("A migration label cannot be empty.")
    return md5_text(label) + "-" + label.replace("/", "-")[:_MIGRATION_ID_LABEL_LIMIT]


def is_valid_migration_id(migration_id: str) -> bool:
    return bool(_MIGRATION_ID_RE.fullmatch(migration_id))


def detect_change(old_fingerprint: str, new_fingerprint: str) -> bool:
    """A change only counts once an import fingerprint has been recorded."""

    return old_fingerprint != FINGERPRINT_NOT_COMPUTED and old_fingerprint != new_fingerprint


def _natural_key(label: str) -> list[Any]:
    return [int(part) if part.isdigit() else part for part in _NATURAL_SPLIT_RE.split(label)]


@dataclass(frozen=True)
class Migration:
    migration_id: str
    label: str
    plugin_ids: tuple[str, ...]
    data_plugin_ids: tuple[str, ...]
    dependencies: tuple[str, ...] = ()
    completed: bool = False
    skipped: bool = False
    last_import_fingerprint: str = FINGERPRINT_NOT_COMPUTED
    last_computed_fingerprint: str = FINGERPRINT_NOT_COMPUTED
    last_import_timestamp: int | None = None
    last_import_duration: int | None = None

    @property
    def non_data_plugin_ids(self) -> tuple[str, ...]:
        data = set(self.data_plugin_ids)
        return tuple(pid for pid in self.plugin_ids if pid not in data)

    def is_supporting_config_only(self) -> bool:
        return self.label == LANGUAGE_SETTINGS or SHARED_STRUCTURE_PREFIX in self.label

    def is_imported(self) -> bool:
        return self.last_import_timestamp is not None

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.migration_id,
            "label": self.label,
            "plugins": list(self.plugin_ids),
            "data_plugins": list(self.data_plugin_ids),
            "dependencies": list(self.dependencies),
            "completed": self.completed,
            "skipped": self.skipped,
            "imported": self.is_imported(),
            "last_import_timestamp": self.last_import_timestamp,
            "last_import_duration": self.last_import_duration,
        }


@dataclass(frozen=True)
class _Structure:
    migration_id: str
    label: str
    plugin_ids: tuple[str, ...]
    data_plugin_ids: tuple[str, ...]
    dependencies: tuple[str, ...]


class MigrationRepository:
    """Maps clusters to migrations and keeps their per-migration flags.

    Clustering is stored in the key-value state and reused by later instances until
    the plugin definitions change. Flags are re-read from storage on every lookup so
    that concurrent requests observe each other.
    """

    def __init__(
        self,
        storage: Storage,
        runtime: MigrationRuntime,
        plugins: Iterable[MigrationPluginDefinition],
        clusterer: MigrationClusterer | None = None,
        config: dict[str, Any] | None = None,
        logger: Callable[[str], None] | None = None,
    ) -> None:
        self.storage = storage
        self.runtime = runtime
        self.state = KeyValueState(storage)
        self.plugins = list(plugins)
        self.clusterer = clusterer or MigrationClusterer(inspector=runtime)
        self.config = config or {}
        self.logger = logger
        self._clustering: ClusteringResult | None = None
        self._structures: list[_Structure] | None = None
        self._lookup: dict[str, str] = {}

    def _log(self, msg: str) -> None:
        if self.logger is not None:
            self.logger(msg)

    @property
    def alphabetical_threshold(self) -> int:
        return int(self.config.get("repository", {}).get("alphabetical_threshold", 10))

    def clustering(self) -> ClusteringResult:
        """Clusters for the discovered plugins, reused until their definitions change."""

        if self._clustering is not None:
            return self._clustering
        fingerprint = self.clusterer.fingerprint(self.plugins)
        cached = self.state.get(CLUSTERING_CACHE_KEY)
        if isinstance(cached, dict) and cached.get("fingerprint") == fingerprint:
            self._clustering = ClusteringResult.from_payload(cached["result"])
            return self._clustering

        self._clustering = self.clusterer.compute_clusters(self.plugins)
        self.state.set(
            CLUSTERING_CACHE_KEY,
            {"fingerprint": fingerprint, "result": self._clustering.payload()},
        )
        self.storage.insert_event(
            "clustering_completed",
            now_iso(),
            payload={
                "plugins": len(self._clustering.plugins),
                "clusters": len(self._clustering.clusters()),
            },
        )
        return self._clustering

    def _build_structures(self) -> list[_Structure]:
        if self._structures is not None:
            return self._structures
        clustering = self.clustering()
        labels: list[str] = []
        plugins_by_label: dict[str, list[str]] = {}
        data_by_label: dict[str, list[str]] = {}
        first_time: set[str] = set()

        for plugin in clustering.plugins:
            cluster = clustering.cluster_of(plugin.plugin_id)
            if cluster.startswith(LIFTED_PREFIX):
                continue
            if cluster not in plugins_by_label:
                labels.append(cluster)
                plugins_by_label[cluster] = []
                data_by_label[cluster] = []
                if self.storage.ensure_migration_flags(generate_migration_id(cluster)):
                    first_time.add(cluster)

        lookup: dict[str, str] = {}
        for plugin in clustering.plugins:
            cluster = clustering.cluster_of(plugin.plugin_id)
            is_data = True
            if cluster.startswith(LIFTED_PREFIX):
                cluster = cluster[len(LIFTED_PREFIX):]
                is_data = plugin.has_tag(TAG_CONTENT)
            if cluster not in plugins_by_label:
                # A lifted cluster whose host migration has no own plugins.
                labels.append(cluster)
                plugins_by_label[cluster] = []
                data_by_label[cluster] = []
                if self.storage.ensure_migration_flags(generate_migration_id(cluster)):
                    first_time.add(cluster)
            plugins_by_label[cluster].append(plugin.plugin_id)
            if is_data:
                data_by_label[cluster].append(plugin.plugin_id)
            lookup[plugin.plugin_id] = cluster

        dependencies: dict[str, list[str]] = {label: [] for label in labels}
        for plugin in clustering.plugins:
            own = lookup[plugin.plugin_id]
            for dep in plugin.required:
                dep_cluster = lookup.get(dep)
                if dep_cluster is None or dep_cluster == own:
                    continue
                dep_id = generate_migration_id(dep_cluster)
                if dep_id not in dependencies[own]:
                    dependencies[own].append(dep_id)

        for label in labels:
            if label not in first_time:
                continue
            has_rows = any(self.runtime.source_count(pid) > 0 for pid in data_by_label[label])
            if not has_rows:
                self.storage.update_migration_flags(generate_migration_id(label), skipped=True)
                self._log(f"migration_id={generate_migration_id(label)}|auto_skipped=1")

        self._lookup = {pid: generate_migration_id(label) for pid, label in lookup.items()}
        self._structures = [
            _Structure(
                migration_id=generate_migration_id(label),
                label=label,
                plugin_ids=tuple(plugins_by_label[label]),
                data_plugin_ids=tuple(data_by_label[label]),
                dependencies=tuple(dependencies[label]),
            )
            for label in labels
        ]
        return self._structures

    def _sorted(self, structures: list[_Structure]) -> list[_Structure]:
        if len(structures) < self.alphabetical_threshold:
            return sorted(structures, key=lambda item: _natural_key(item.label))
        return list(structures)

    def _hydrate(self, structure: _Structure, flags: dict[str, Any] | None) -> Migration:
        flags = flags or {}
        return Migration(
            migration_id=structure.migration_id,
            label=structure.label,
            plugin_ids=structure.plugin_ids,
            data_plugin_ids=structure.data_plugin_ids,
            dependencies=structure.dependencies,
            completed=bool(flags.get("completed")),
            skipped=bool(flags.get("skipped")),
            last_import_fingerprint=flags.get("last_import_fingerprint") or FINGERPRINT_NOT_COMPUTED,
            last_computed_fingerprint=flags.get("last_computed_fingerprint")
            or FINGERPRINT_NOT_COMPUTED,
            last_import_timestamp=flags.get("last_import_timestamp"),
            last_import_duration=flags.get("last_import_duration"),
        )

    def get_migrations(self) -> list[Migration]:
        structures = self._sorted(self._build_structures())
        flags = self.storage.fetch_all_migration_flags()
        return [self._hydrate(item, flags.get(item.migration_id)) for item in structures]

    def get_migration(self, migration_id: str) -> Migration:
        for structure in self._build_structures():
            if structure.migration_id == migration_id:
                return self._hydrate(structure, self.storage.fetch_migration_flags(migration_id))
        raise MigrationNotFoundError(migration_id)

    def migration_of(self, plugin_id: str) -> str | None:
        self._build_structures()
        return self._lookup.get(plugin_id)

    def plugin_order(self) -> list[str]:
        return self.clustering().plugin_ids

    # Aggregates over a migration's plugins.

    def source_count(self, migration: Migration) -> int:
        return sum(max(self.runtime.source_count(pid), 0) for pid in migration.data_plugin_ids)

    def processed_count(self, migration: Migration) -> int:
        return sum(self.runtime.processed_count(pid) for pid in migration.data_plugin_ids)

    def all_rows_processed(self, migration: Migration) -> bool:
        return all(self.runtime.all_rows_processed(pid) for pid in migration.plugin_ids)

    def message_count(self, migration: Migration, category: str | None = None) -> int:
        if category is not None and category not in MESSAGE_CATEGORIES:
            raise ValueError(f"Unknown message category: {category}")
        return self.storage.count_messages(list(migration.plugin_ids), category)

    def can_be_rolled_back(self, migration: Migration) -> bool:
        return self.processed_count(migration) > 0

    def is_stale(self, migration: Migration) -> bool:
        return detect_change(
            migration.last_import_fingerprint, migration.last_computed_fingerprint
        ) and self.can_be_rolled_back(migration)

    def compute_fingerprint(self, migration: Migration) -> str:
        parts: list[str] = []
        for pid in migration.data_plugin_ids:
            try:
                fingerprint = self.runtime.source_fingerprint(pid)
            except Exception as exc:  # recorded, the migration stays usable
                self.storage.insert_event(
                    "migration_fingerprint_failed",
                    now_iso(),
                    migration_id=migration.migration_id,
                    plugin_id=pid,
                    payload={"error": f"{type(exc).__name__}: {exc}"},
                )
                return FINGERPRINT_FAILED
            if fingerprint is None:
                return FINGERPRINT_NOT_SUPPORTED
            parts.append(f"{pid}={fingerprint}")
        return sha256_text("\n".join(parts))

    # Flag bookkeeping used by batch operations.

    def calculate_completeness(self, migration_id: str) -> bool:
        """A migration is complete when every row was processed without messages."""

        migration = self.get_migration(migration_id)
        messages = self.message_count(migration)
        completed = self.all_rows_processed(migration) and messages == 0
        fingerprint = self.compute_fingerprint(migration)
        fields: dict[str, Any] = {
            "completed": completed,
            "last_computed_fingerprint": fingerprint,
        }
        if completed:
            fields["last_import_fingerprint"] = fingerprint
        self.storage.update_migration_flags(migration_id, **fields)
        self.storage.insert_event(
            "migration_completeness",
            now_iso(),
            migration_id=migration_id,
            payload={"completed": completed, "messages": messages, "fingerprint": fingerprint},
        )
        return completed

    def record_import_start(self, migration_id: str, timestamp: int) -> None:
        self.storage.update_migration_flags(
            migration_id, last_import_timestamp=int(timestamp), last_import_duration=None
        )
        self.storage.insert_event(
            "migration_import_started",
            now_iso(),
            migration_id=migration_id,
            payload={"last_import_timestamp": int(timestamp)},
        )
        self._log(f"migration_id={migration_id}|last_import_timestamp={int(timestamp)}")

    def record_import_duration(self, migration_id: str, current_time: int, status: str) -> int:
        migration = self.get_migration(migration_id)
        started = migration.last_import_timestamp
        duration = int(current_time) - int(started) if started is not None else 0
        self.storage.update_migration_flags(migration_id, last_import_duration=duration)
        count = self.processed_count(migration)
        total = self.source_count(migration)
        messages = self.message_count(migration)
        self.storage.insert_event(
            "migration_import_duration",
            now_iso(),
            migration_id=migration_id,
            payload={
                "duration": duration,
                "count": count,
                "total": total,
                "messages": messages,
                "status": status,
            },
        )
        self._log(
            f"migration_id={migration_id}|duration={duration}|count={count}"
            f"|total={total}|messages={messages}|status={status}"
        )
        return duration

    def reset_import_metadata(self, migration_id: str) -> None:
        self.storage.update_migration_flags(
            migration_id,
            last_import_timestamp=None,
            last_import_duration=None,
        )
        self.storage.insert_event(
            "migration_import_metadata_reset", now_iso(), migration_id=migration_id
        )

    def set_skipped(self, migration_id: str, skipped: bool) -> None:
        self.get_migration(migration_id)
        self.storage.update_migration_flags(migration_id, skipped=skipped)

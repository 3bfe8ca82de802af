from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

DERIVATIVE_SEPARATOR = ":"

CATEGORY_CONTENT = "Content"
CATEGORY_CONFIG_ENTITY = "Configuration entity"
CATEGORY_SIMPLE_CONFIG = "Simple configuration"
CATEGORY_OTHER = "Other"
CATEGORY_NO_DATA = "No data"

TAG_CONTENT = "Content"
TAG_CONFIGURATION = "Configuration"


@dataclass(frozen=True)
class MigrationPluginDefinition:
    """One executable migration plugin, as declared by its manifest."""

    plugin_id: str
    label: str
    tags: tuple[str, ...] = ()
    source: Mapping[str, Any] = field(default_factory=dict, hash=False, compare=False)
    destination: Mapping[str, Any] = field(default_factory=dict, hash=False, compare=False)
    required: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()
    path: Path | None = field(default=None, compare=False)

    @property
    def base_id(self) -> str:
        return self.plugin_id.split(DERIVATIVE_SEPARATOR, 1)[0]

    @property
    def derivative_id(self) -> str | None:
        parts = self.plugin_id.split(DERIVATIVE_SEPARATOR, 1)
        return parts[1] if len(parts) > 1 else None

    @property
    def source_plugin(self) -> str:
        return str(self.source.get("plugin") or "")

    @property
    def destination_plugin(self) -> str:
        return str(self.destination.get("plugin") or "")

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags

    @property
    def dependencies(self) -> tuple[str, ...]:
        return self.required + tuple(dep for dep in self.optional if dep not in self.required)

    def payload(self) -> dict[str, Any]:
        return {
            "id": self.plugin_id,
            "label": self.label,
            "tags": list(self.tags),
            "source": dict(self.source),
            "destination": dict(self.destination),
            "required": list(self.required),
            "optional": list(self.optional),
            "path": str(self.path) if self.path is not None else None,
        }

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> MigrationPluginDefinition:
        return cls(
            plugin_id=str(data["id"]),
            label=str(data["label"]),
            tags=tuple(data.get("tags") or ()),
            source=dict(data.get("source") or {}),
            destination=dict(data.get("destination") or {}),
            required=tuple(data.get("required") or ()),
            optional=tuple(data.get("optional") or ()),
            path=Path(data["path"]) if data.get("path") else None,
        )


@dataclass(frozen=True)
class PluginMetadata:
    """Graph facts computed for one plugin; never mutated after construction."""

    after: frozenset[str]
    before: frozenset[str]
    required_after: frozenset[str]
    category: str
    weight: int
    cluster: str | None = None

    def payload(self) -> dict[str, Any]:
        return {
            "after": sorted(self.after),
            "before": sorted(self.before),
            "required_after": sorted(self.required_after),
            "category": self.category,
            "weight": self.weight,
            "cluster": self.cluster,
        }

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> PluginMetadata:
        return cls(
            after=frozenset(data.get("after") or ()),
            before=frozenset(data.get("before") or ()),
            required_after=frozenset(data.get("required_after") or ()),
            category=str(data["category"]),
            weight=int(data["weight"]),
            cluster=data.get("cluster"),
        )


@dataclass(frozen=True)
class ClusteringResult:
    plugins: tuple[MigrationPluginDefinition, ...]
    metadata: Mapping[str, PluginMetadata]
    matches: Mapping[str, tuple[str, ...]]
    _by_id: Mapping[str, MigrationPluginDefinition] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))
        object.__setattr__(self, "matches", MappingProxyType(dict(self.matches)))
        object.__setattr__(
            self, "_by_id", MappingProxyType({plugin.plugin_id: plugin for plugin in self.plugins})
        )

    @property
    def plugin_ids(self) -> list[str]:
        return [plugin.plugin_id for plugin in self.plugins]

    def cluster_of(self, plugin_id: str) -> str:
        cluster = self.metadata[plugin_id].cluster
        if not cluster:
            raise LookupError(f"Plugin {plugin_id} has no cluster assigned.")
        return cluster

    def get(self, plugin_id: str) -> MigrationPluginDefinition:
        return self._by_id[plugin_id]

    def payload(self) -> dict[str, Any]:
        return {
            "plugins": [plugin.payload() for plugin in self.plugins],
            "metadata": {pid: item.payload() for pid, item in self.metadata.items()},
            "matches": {hid: list(ids) for hid, ids in self.matches.items()},
        }

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> ClusteringResult:
        return cls(
            plugins=tuple(MigrationPluginDefinition.from_payload(item) for item in data["plugins"]),
            metadata={
                pid: PluginMetadata.from_payload(item) for pid, item in data["metadata"].items()
            },
            matches={hid: tuple(ids) for hid, ids in data["matches"].items()},
        )

    def clusters(self) -> dict[str, list[str]]:
        grouped: dict[str, list[str]] = {}
        for plugin in self.plugins:
            grouped.setdefault(self.cluster_of(plugin.plugin_id), []).append(plugin.plugin_id)
        return grouped


@dataclass(frozen=True)
class BatchStatus:
    batch_id: int
    progress: float

    @property
    def is_complete(self) -> bool:
        return self.progress >= 1.0

    def payload(self) -> dict[str, Any]:
        if self.is_complete:
            return {"status": "complete", "batch_id": self.batch_id, "progress": 1.0}
        return {"status": "in-progress", "batch_id": self.batch_id, "progress": self.progress}


@dataclass(frozen=True)
class BatchUnknown:
    """Poll result for a batch id the executor does not know (anymore)."""

    @property
    def batch_id(self) -> int:
        raise LookupError("An unknown batch has no id.")

    def payload(self) -> dict[str, Any]:
        return {"status": "unknown"}

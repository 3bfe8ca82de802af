from __future__ import annotations

import importlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validate

from .types import MigrationPluginDefinition
from .utils import read_json

MANIFEST_SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "migration_plugin.schema.json"
_COMPLETE_SIBLING_STRIP = ("entity_translation_", "translation_", "revision_")


@dataclass(frozen=True)
class PluginDiscoveryError:
    plugin_id: str
    path: Path
    message: str


class PluginManager:
    """Discovers migration plugin manifests (yaml) under a directory."""

    def __init__(self, migrations_dir: Path) -> None:
        self.migrations_dir = migrations_dir
        self._manifest_schema: dict[str, Any] | None = None
        self.discovery_errors: list[PluginDiscoveryError] = []

    def _record_discovery_error(self, plugin_id: str, manifest: Path, message: str) -> None:
        self.discovery_errors.append(
            PluginDiscoveryError(
                plugin_id=plugin_id or manifest.stem,
                path=manifest,
                message=message,
            )
        )

    def _manifest_paths(self) -> list[Path]:
        if not self.migrations_dir.is_dir():
            return []
        paths = set(self.migrations_dir.rglob("*.yml")) | set(self.migrations_dir.rglob("*.yaml"))
        return sorted(paths)

    def discover(self) -> list[MigrationPluginDefinition]:
        definitions: list[MigrationPluginDefinition] = []
        self.discovery_errors = []
        manifest_schema = self._load_manifest_schema()
        seen: set[str] = set()
        for manifest in self._manifest_paths():
            try:
                data = yaml.safe_load(manifest.read_text(encoding="utf-8"))
            except yaml.YAMLError as exc:
                self._record_discovery_error(manifest.stem, manifest, f"Invalid YAML: {exc}")
                continue
            entries = data if isinstance(data, list) else [data]
            for entry in entries:
                if not isinstance(entry, dict):
                    self._record_discovery_error(
                        manifest.stem, manifest, "Invalid manifest payload"
                    )
                    continue
                plugin_id = str(entry.get("id") or manifest.stem)
                try:
                    validate(instance=entry, schema=manifest_schema)
                except ValidationError as exc:
                    self._record_discovery_error(
                        plugin_id, manifest, f"Invalid manifest: {exc.message}"
                    )
                    continue
                if plugin_id in seen:
                    self._record_discovery_error(plugin_id, manifest, "Duplicate plugin id")
                    continue
                seen.add(plugin_id)
                definitions.append(definition_from_manifest(entry, manifest))
        return definitions

    def discover_available(self) -> list[MigrationPluginDefinition]:
        return drop_superseded_by_complete(self.discover())

    def _load_manifest_schema(self) -> dict[str, Any]:
        if self._manifest_schema is None:
            self._manifest_schema = read_json(MANIFEST_SCHEMA_PATH)
        return self._manifest_schema


def definition_from_manifest(
    data: dict[str, Any], path: Path | None = None
) -> MigrationPluginDefinition:
    dependencies = data.get("migration_dependencies") or {}
    return MigrationPluginDefinition(
        plugin_id=str(data["id"]),
        label=str(data.get("label") or data["id"]),
        tags=tuple(str(tag) for tag in data.get("migration_tags") or []),
        source=dict(data.get("source") or {}),
        destination=dict(data.get("destination") or {}),
        required=tuple(str(dep) for dep in dependencies.get("required") or []),
        optional=tuple(str(dep) for dep in dependencies.get("optional") or []),
        path=path,
    )


def drop_superseded_by_complete(
    plugins: list[MigrationPluginDefinition],
) -> list[MigrationPluginDefinition]:
    """Omit entity(_revision):* plugins when an entity_complete sibling exists."""

    known = {plugin.plugin_id for plugin in plugins}
    kept: list[MigrationPluginDefinition] = []
    for plugin in plugins:
        destination = plugin.destination_plugin
        if destination.startswith("entity:") or destination.startswith("entity_revision:"):
            base = plugin.base_id
            sibling = plugin.plugin_id.replace(base, f"{base}_complete")
            for fragment in _COMPLETE_SIBLING_STRIP:
                sibling = sibling.replace(fragment, "")
            if sibling != plugin.plugin_id and sibling in known:
                continue
        kept.append(plugin)
    return kept


def load_entrypoint(entrypoint: str) -> Any:
    module_path, attr = entrypoint.split(":", 1)
    if module_path.endswith(".py"):
        module_path = module_path[:-3]
    module = importlib.import_module(module_path)
    return getattr(module, attr)


def load_runtime(entrypoint: str, settings: dict[str, Any] | None = None) -> Any:
    factory = load_entrypoint(entrypoint)
    return factory(dict(settings or {}))

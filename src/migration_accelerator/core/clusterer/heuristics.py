"""Clustering heuristics.

A heuristic is a plain record tagged along two axes:

- how it matches (`match_kind`): independent heuristics look at one plugin at a
  time and see every available plugin; dependent heuristics see only what is
  still unclustered, plus the matches of the heuristics they declare as
  dependencies and their own matches so far; lifting heuristics are dependent
  heuristics that may also inspect every available plugin.
- how it names clusters (`cluster_kind`): one fixed cluster, a cluster computed
  from the plugin, or a cluster computed from the dependent matches.

The clusterer dispatches on these tags; nothing here keeps state between runs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from ..errors import HeuristicConfigurationError
from ..types import TAG_CONFIGURATION, MigrationPluginDefinition, PluginMetadata
from .entity import (
    PARAGRAPHS_LEGACY_ENTITY_TYPES,
    destination_entity_type_id,
    is_config_entity_destination,
    is_content_entity_default_translation_destination,
    is_content_entity_destination,
    is_content_entity_translation_destination,
    plural_label,
    source_entity_parameters,
)

MATCH_INDEPENDENT = "independent"
MATCH_DEPENDENT = "dependent"
MATCH_LIFTING = "lifting"
MATCH_KINDS = (MATCH_INDEPENDENT, MATCH_DEPENDENT, MATCH_LIFTING)

CLUSTER_SINGLE = "single"
CLUSTER_COMPUTED = "computed"
CLUSTER_DEPENDENT_COMPUTED = "dependent_computed"
CLUSTER_KINDS = (CLUSTER_SINGLE, CLUSTER_COMPUTED, CLUSTER_DEPENDENT_COMPUTED)

LIFTED_PREFIX = "LIFTED-"
SITE_CONFIGURATION = "Site configuration"
LANGUAGE_SETTINGS = "Language settings"
SHARED_STRUCTURE_PREFIX = "Shared structure for "


@dataclass
class HeuristicView:
    """Read-only window on the clustering pass handed to heuristic callables."""

    plugins: Mapping[str, MigrationPluginDefinition]
    metadata: Mapping[str, PluginMetadata]
    matches: Mapping[str, list[str]]
    clusters: Mapping[str, str]
    settings: Mapping[str, Any] = field(default_factory=dict)
    cache: dict[str, Any] = field(default_factory=dict)

    def after(self, plugin_id: str) -> frozenset[str]:
        return self.metadata[plugin_id].after

    def before(self, plugin_id: str) -> frozenset[str]:
        return self.metadata[plugin_id].before


Matcher = Callable[[MigrationPluginDefinition, HeuristicView], bool]
ClusterNamer = Callable[[MigrationPluginDefinition, HeuristicView], str]


@dataclass(frozen=True)
class Heuristic:
    heuristic_id: str
    match_kind: str
    cluster_kind: str
    matches: Matcher
    cluster: str | None = None
    compute_cluster: ClusterNamer | None = None
    dependencies: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.match_kind not in MATCH_KINDS:
            raise HeuristicConfigurationError(
                f"{self.heuristic_id}: unknown heuristic matching type {self.match_kind!r}"
            )
        if self.cluster_kind not in CLUSTER_KINDS:
            raise HeuristicConfigurationError(
                f"{self.heuristic_id}: unknown cluster computing type {self.cluster_kind!r}"
            )
        if self.cluster_kind == CLUSTER_SINGLE and not self.cluster:
            raise HeuristicConfigurationError(f"{self.heuristic_id}: single cluster name missing")
        if self.cluster_kind != CLUSTER_SINGLE and self.compute_cluster is None:
            raise HeuristicConfigurationError(f"{self.heuristic_id}: cluster callable missing")
        if self.match_kind == MATCH_INDEPENDENT:
            if self.dependencies:
                raise HeuristicConfigurationError(
                    f"{self.heuristic_id}: independent heuristics cannot declare dependencies"
                )
            if self.cluster_kind == CLUSTER_DEPENDENT_COMPUTED:
                raise HeuristicConfigurationError(
                    f"{self.heuristic_id}: independent heuristics have no dependent matches"
                )

    @property
    def is_dependent(self) -> bool:
        return self.match_kind in (MATCH_DEPENDENT, MATCH_LIFTING)


def _label(plugin: MigrationPluginDefinition, view: HeuristicView) -> str:
    return plugin.label


def _in_ids(*plugin_ids: str) -> Matcher:
    wanted = frozenset(plugin_ids)

    def matches(plugin: MigrationPluginDefinition, view: HeuristicView) -> bool:
        return plugin.plugin_id in wanted

    return matches


def _in_base_ids(*base_ids: str) -> Matcher:
    wanted = frozenset(base_ids)

    def matches(plugin: MigrationPluginDefinition, view: HeuristicView) -> bool:
        return plugin.base_id in wanted

    return matches


# Shared structure.

_MEDIA_SHARED_SOURCE_PLUGINS = {"d7_media_view_mode"}
_ENTITY_TYPE_SCOPED_FIELD_BASES = {
    "d7_field",
    "d7_field_instance",
    "d7_field_formatter_settings",
    "d7_field_instance_widget_settings",
    "d7_view_modes",
}


def _shared_structure_matches(plugin: MigrationPluginDefinition, view: HeuristicView) -> bool:
    dest_entity_type = destination_entity_type_id(plugin)
    if dest_entity_type in {"paragraphs_type", "menu"}:
        return True
    # Targets non-bundleable menu links, but belongs with the menus.
    if plugin.plugin_id == "d7_language_content_menu_settings":
        return True
    source_entity_type, source_bundle = source_entity_parameters(plugin)
    if (
        source_entity_type in PARAGRAPHS_LEGACY_ENTITY_TYPES
        and plugin.base_id in _ENTITY_TYPE_SCOPED_FIELD_BASES
    ):
        return True
    if not is_config_entity_destination(plugin):
        return False
    if plugin.source_plugin in _MEDIA_SHARED_SOURCE_PLUGINS:
        return True
    # Shared means shared by every bundle of one entity type.
    if not source_entity_type or source_bundle:
        return False
    bundleable = set(view.settings.get("bundleable_entity_types") or ())
    has_bundles = source_entity_type in bundleable
    if has_bundles and view.after(plugin.plugin_id):
        raise HeuristicConfigurationError(
            f"Shared structure migrations are expected to be dependencyless; "
            f"{plugin.plugin_id} depends on: {', '.join(sorted(view.after(plugin.plugin_id)))}"
        )
    return has_bundles


def _shared_structure_cluster(plugin: MigrationPluginDefinition, view: HeuristicView) -> str:
    source = plugin.source
    field_entity_type = source.get("entity_type")
    dest_entity_type = destination_entity_type_id(plugin)
    target_type = (source.get("constants") or {}).get("target_type")
    source_plugin = plugin.source_plugin
    if field_entity_type == "field_collection_item" or source_plugin == "d7_field_collection_type":
        label = "field collection items"
    elif field_entity_type == "paragraphs_item" or source_plugin == "d7_paragraphs_type":
        label = "paragraphs"
    elif source_plugin in _MEDIA_SHARED_SOURCE_PLUGINS or field_entity_type == "file":
        label = plural_label("media")
    elif field_entity_type:
        label = plural_label(str(field_entity_type))
    elif target_type:
        if target_type == "menu_link_content":
            target_type = "menu"
        label = plural_label(str(target_type))
    elif dest_entity_type:
        label = plural_label(dest_entity_type)
    else:
        raise HeuristicConfigurationError(
            f"Shared structure label could not be determined for {plugin.plugin_id}"
        )
    return f"{SHARED_STRUCTURE_PREFIX}{label}"


# Shared data.

_PARAGRAPHS_MIGRATION_BASES = {
    "d7_paragraphs",
    "d7_paragraphs_revisions",
    "d7_field_collection",
    "d7_field_collection_revisions",
}


def _shared_data_matches(plugin: MigrationPluginDefinition, view: HeuristicView) -> bool:
    if destination_entity_type_id(plugin) != "paragraph":
        return False
    parts = plugin.plugin_id.split(":")
    if len(parts) < 3:
        return False
    return parts[0] in _PARAGRAPHS_MIGRATION_BASES and parts[1] in PARAGRAPHS_LEGACY_ENTITY_TYPES


def _shared_data_cluster(plugin: MigrationPluginDefinition, view: HeuristicView) -> str:
    parent_type = plugin.source.get("parent_type") or "unknown"
    dest_entity_type = destination_entity_type_id(plugin) or "unknown"
    if (dest_entity_type, parent_type) == ("paragraph", "field_collection_item"):
        label = "nested field collection items"
    elif (dest_entity_type, parent_type) == ("paragraph", "paragraphs_item"):
        label = "nested paragraphs"
    else:
        label = plural_label(dest_entity_type)
    return f"Shared data for {label}"


# Site configuration.


def _site_config_matches(plugin: MigrationPluginDefinition, view: HeuristicView) -> bool:
    pid = plugin.plugin_id
    return (
        pid not in view.matches["config_needs_human"]
        and not view.before(pid)
        and not view.after(pid)
        and destination_entity_type_id(plugin) is None
        and pid not in view.matches["lang"]
    )


def _site_config_pushed_matches(plugin: MigrationPluginDefinition, view: HeuristicView) -> bool:
    if not view.after(plugin.plugin_id):
        return True
    site_config = set(view.matches["site_config"]) | set(view.matches["site_config_pushed"])
    return any(dep in site_config for dep in plugin.required)


# Moderation flows.


def _moderation_flow_pushed_matches(plugin: MigrationPluginDefinition, view: HeuristicView) -> bool:
    flows = view.matches["moderation_flow"]
    if not flows:
        return False
    flow_dependencies: set[str] = set()
    for flow_id in flows:
        flow_dependencies.update(view.plugins[flow_id].required)
    return plugin.plugin_id in flow_dependencies


def _moderation_flow_pushed_cluster(plugin: MigrationPluginDefinition, view: HeuristicView) -> str:
    successors = view.before(plugin.plugin_id)
    for flow_id in view.matches["moderation_flow"]:
        if flow_id in successors:
            return view.clusters[flow_id]
    raise HeuristicConfigurationError(f"No moderation flow depends on {plugin.plugin_id}")


# Content entity bundles and everything pulled towards them.

_PARAGRAPHS_CURRENT_REVISION_BASES = {
    "d7_field_collection",
    "d7_paragraphs",
    "d7_pm_field_collection",
    "d7_pm_paragraphs",
}


def _recursively_required(
    plugin_id: str,
    plugins: Mapping[str, MigrationPluginDefinition],
    stack: tuple[str, ...] = (),
) -> list[str]:
    # Required dependencies are only missing when the source lacks them.
    if plugin_id not in plugins:
        return []
    if plugin_id in stack:
        parts = plugin_id.split(":")
        host = parts[1] if len(parts) > 1 else ""
        # Second-level paragraphs are handled by shared data.
        if parts[0] in _PARAGRAPHS_CURRENT_REVISION_BASES and host in PARAGRAPHS_LEGACY_ENTITY_TYPES:
            return []
        raise HeuristicConfigurationError(
            f"Recursion limit reached collecting required dependencies of {plugin_id}"
        )
    required = list(dict.fromkeys(plugins[plugin_id].required))
    collected = list(required)
    for dep in required:
        for nested in _recursively_required(dep, plugins, stack + (plugin_id,)):
            if nested not in collected:
                collected.append(nested)
    return collected


def _lifted_bundle_dependencies(view: HeuristicView) -> dict[str, str]:
    cached = view.cache.get("lifted")
    if cached is not None:
        return cached
    already_clustered: set[str] = set()
    for matched in view.matches.values():
        already_clustered.update(matched)
    lifted: dict[str, str] = {}
    for bundle_id in view.matches["entity_bundles"]:
        if not view.after(bundle_id):
            continue
        target = view.clusters.get(bundle_id) or view.plugins[bundle_id].label
        for dep in _recursively_required(bundle_id, view.plugins):
            if dep in already_clustered or dep in lifted:
                continue
            lifted[dep] = target
    view.cache["lifted"] = lifted
    return lifted


def _bundle_dependencies_matches(plugin: MigrationPluginDefinition, view: HeuristicView) -> bool:
    return plugin.plugin_id in _lifted_bundle_dependencies(view)


def _bundle_dependencies_cluster(plugin: MigrationPluginDefinition, view: HeuristicView) -> str:
    return LIFTED_PREFIX + _lifted_bundle_dependencies(view)[plugin.plugin_id]


def _bundle_plugins(plugin_ids: tuple[str, ...], view: HeuristicView) -> list[str]:
    bundles = view.matches["entity_bundles"]
    return [bundle_id for bundle_id in bundles if bundle_id in plugin_ids]


def _translations_matches(plugin: MigrationPluginDefinition, view: HeuristicView) -> bool:
    if not is_content_entity_translation_destination(plugin):
        return False
    return bool(_bundle_plugins(plugin.required + plugin.optional, view))


def _translations_cluster(plugin: MigrationPluginDefinition, view: HeuristicView) -> str:
    candidates = _bundle_plugins(plugin.required, view) or _bundle_plugins(plugin.optional, view)
    if not candidates:
        raise HeuristicConfigurationError(
            f"{plugin.plugin_id} does not depend on any content entity bundle migration"
        )
    return view.clusters[candidates[0]]


def _depending(heuristic_id: str, config: bool) -> tuple[Matcher, ClusterNamer]:
    def clustered_dependees(plugin: MigrationPluginDefinition, view: HeuristicView) -> list[str]:
        pool = (
            list(view.matches["entity_bundles"])
            + list(view.matches["entity_bundles_dependencies"])
            # Dependees matched earlier by this same heuristic count too.
            + list(view.matches[heuristic_id])
        )
        return [pid for pid in pool if pid in plugin.required]

    def matches(plugin: MigrationPluginDefinition, view: HeuristicView) -> bool:
        if plugin.has_tag(TAG_CONFIGURATION) != config:
            return False
        dependees = clustered_dependees(plugin, view)
        if not dependees:
            return False
        pure = len(dependees) == len(plugin.required)
        return pure or not view.before(plugin.plugin_id)

    def compute(plugin: MigrationPluginDefinition, view: HeuristicView) -> str:
        # The dependee that runs last, so every dependency is met in that cluster.
        return view.clusters[clustered_dependees(plugin, view)[-1]]

    return matches, compute


def _candidate_target_plugin_ids(entity_type: str, bundle: str | None) -> list[str]:
    candidates: list[str] = []
    if bundle:
        candidates.append(f"d7_{entity_type}_complete:{bundle}")
        candidates.append(f"d7_{entity_type}:{bundle}")
        candidates.append(f"{entity_type}:{bundle}")
    candidates.append(f"d7_{entity_type}_complete")
    candidates.append(f"d7_{entity_type}")
    candidates.append(entity_type)
    return candidates


def _related(config: bool) -> tuple[Matcher, ClusterNamer]:
    def targets(plugin: MigrationPluginDefinition, view: HeuristicView) -> list[str]:
        entity_type, bundle = source_entity_parameters(plugin)
        if not entity_type and is_content_entity_destination(plugin):
            entity_type = destination_entity_type_id(plugin)
        if not entity_type:
            return []
        bundles = set(view.matches["entity_bundles"])
        return [
            candidate
            for candidate in _candidate_target_plugin_ids(entity_type, bundle)
            if candidate in bundles
        ]

    def matches(plugin: MigrationPluginDefinition, view: HeuristicView) -> bool:
        if plugin.has_tag(TAG_CONFIGURATION) != config:
            return False
        return bool(targets(plugin, view))

    def compute(plugin: MigrationPluginDefinition, view: HeuristicView) -> str:
        return LIFTED_PREFIX + view.clusters[targets(plugin, view)[0]]

    return matches, compute


def _config_entity_matches(plugin: MigrationPluginDefinition, view: HeuristicView) -> bool:
    return is_config_entity_destination(plugin)


def _anything(plugin: MigrationPluginDefinition, view: HeuristicView) -> bool:
    return True


def _content_bundle_matches(plugin: MigrationPluginDefinition, view: HeuristicView) -> bool:
    return is_content_entity_default_translation_destination(plugin)


_depending_config = _depending("entity_depending_config", config=True)
_depending_content = _depending("entity_depending_content", config=False)
_related_config = _related(config=True)
_related_content = _related(config=False)


def default_heuristics() -> list[tuple[Heuristic, int]]:
    """Priority list of (heuristic, weight); list order is matching order."""

    return [
        (
            Heuristic(
                "lang",
                MATCH_INDEPENDENT,
                CLUSTER_SINGLE,
                _in_ids(
                    "language",
                    "default_language",
                    "d7_language_types",
                    "d7_language_negotiation_settings",
                    "language_prefixes_and_domains",
                ),
                cluster=LANGUAGE_SETTINGS,
            ),
            0,
        ),
        (
            Heuristic(
                "config_needs_human",
                MATCH_INDEPENDENT,
                CLUSTER_COMPUTED,
                _in_ids("d7_filter_format"),
                compute_cluster=_label,
            ),
            0,
        ),
        (
            Heuristic(
                "blocks",
                MATCH_INDEPENDENT,
                CLUSTER_SINGLE,
                _in_base_ids("d7_block", "d7_block_translation"),
                cluster="Block placements",
            ),
            500,
        ),
        (
            Heuristic(
                "bean_blocks",
                MATCH_INDEPENDENT,
                CLUSTER_SINGLE,
                _in_base_ids("bean_block", "bean_block_translation_et", "bean_block_translation_i18n"),
                cluster="Bean block placements",
            ),
            500,
        ),
        (
            Heuristic(
                "moderation_flow",
                MATCH_INDEPENDENT,
                CLUSTER_COMPUTED,
                _in_base_ids("workbench_moderation_flow"),
                compute_cluster=_label,
            ),
            50,
        ),
        (
            Heuristic(
                "vote_type",
                MATCH_INDEPENDENT,
                CLUSTER_SINGLE,
                _in_base_ids("d7_vote_type", "fivestar_vote_type"),
                cluster="Shared structure for Vote types",
            ),
            0,
        ),
        (
            Heuristic(
                "enable_colorapi",
                MATCH_INDEPENDENT,
                CLUSTER_SINGLE,
                _in_base_ids("enable_colorapi"),
                cluster="Shared structure for Color API fields",
            ),
            0,
        ),
        (
            Heuristic(
                "shared_structure",
                MATCH_INDEPENDENT,
                CLUSTER_COMPUTED,
                _shared_structure_matches,
                compute_cluster=_shared_structure_cluster,
            ),
            0,
        ),
        (
            Heuristic(
                "shared_data",
                MATCH_INDEPENDENT,
                CLUSTER_COMPUTED,
                _shared_data_matches,
                compute_cluster=_shared_data_cluster,
            ),
            0,
        ),
        (
            Heuristic(
                "book",
                MATCH_INDEPENDENT,
                CLUSTER_SINGLE,
                _in_ids("d7_book"),
                cluster="Book outlines",
            ),
            500,
        ),
        (
            Heuristic(
                "site_config",
                MATCH_DEPENDENT,
                CLUSTER_SINGLE,
                _site_config_matches,
                cluster=SITE_CONFIGURATION,
                dependencies=("config_needs_human", "lang"),
            ),
            500,
        ),
        (
            Heuristic(
                "moderation_flow_pushed",
                MATCH_LIFTING,
                CLUSTER_DEPENDENT_COMPUTED,
                _moderation_flow_pushed_matches,
                compute_cluster=_moderation_flow_pushed_cluster,
                dependencies=("moderation_flow",),
            ),
            40,
        ),
        (
            Heuristic(
                "entity_bundles",
                MATCH_INDEPENDENT,
                CLUSTER_COMPUTED,
                _content_bundle_matches,
                compute_cluster=_label,
            ),
            100,
        ),
        (
            Heuristic(
                "entity_bundles_dependencies",
                MATCH_LIFTING,
                CLUSTER_DEPENDENT_COMPUTED,
                _bundle_dependencies_matches,
                compute_cluster=_bundle_dependencies_cluster,
                dependencies=(
                    "entity_bundles",
                    "lang",
                    "config_needs_human",
                    "shared_structure",
                    "shared_data",
                ),
            ),
            70,
        ),
        (
            Heuristic(
                "entity_translations",
                MATCH_DEPENDENT,
                CLUSTER_DEPENDENT_COMPUTED,
                _translations_matches,
                compute_cluster=_translations_cluster,
                dependencies=("entity_bundles",),
            ),
            200,
        ),
        (
            Heuristic(
                "entity_depending_config",
                MATCH_DEPENDENT,
                CLUSTER_DEPENDENT_COMPUTED,
                _depending_config[0],
                compute_cluster=_depending_config[1],
                dependencies=("entity_bundles", "entity_bundles_dependencies"),
            ),
            80,
        ),
        (
            Heuristic(
                "entity_depending_content",
                MATCH_DEPENDENT,
                CLUSTER_DEPENDENT_COMPUTED,
                _depending_content[0],
                compute_cluster=_depending_content[1],
                dependencies=("entity_bundles", "entity_bundles_dependencies"),
            ),
            110,
        ),
        (
            Heuristic(
                "entity_related_config",
                MATCH_DEPENDENT,
                CLUSTER_DEPENDENT_COMPUTED,
                _related_config[0],
                compute_cluster=_related_config[1],
                dependencies=("entity_bundles",),
            ),
            90,
        ),
        (
            Heuristic(
                "entity_related_content",
                MATCH_DEPENDENT,
                CLUSTER_DEPENDENT_COMPUTED,
                _related_content[0],
                compute_cluster=_related_content[1],
                dependencies=("entity_bundles",),
            ),
            120,
        ),
        (
            Heuristic(
                "site_config_pushed",
                MATCH_DEPENDENT,
                CLUSTER_SINGLE,
                _site_config_pushed_matches,
                cluster=SITE_CONFIGURATION,
                dependencies=("site_config",),
            ),
            500,
        ),
        (
            Heuristic(
                "config_entity",
                MATCH_DEPENDENT,
                CLUSTER_COMPUTED,
                _config_entity_matches,
                compute_cluster=_label,
                dependencies=(
                    "site_config",
                    "site_config_pushed",
                    "entity_bundles_dependencies",
                    "entity_depending_config",
                    "entity_related_config",
                ),
            ),
            500,
        ),
        (
            Heuristic("other", MATCH_DEPENDENT, CLUSTER_SINGLE, _anything, cluster="Other"),
            1000,
        ),
    ]

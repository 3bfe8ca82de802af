from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Iterable, Mapping, Protocol

from ..dependency_graph import build_dependency_graph, stable_toposort
from ..errors import ClusterAssignmentError, HeuristicConfigurationError
from ..types import ClusteringResult, MigrationPluginDefinition, PluginMetadata
from ..utils import json_dumps, sha256_text
from .entity import is_content_entity_destination
from .heuristics import (
    CLUSTER_COMPUTED,
    CLUSTER_DEPENDENT_COMPUTED,
    CLUSTER_SINGLE,
    MATCH_DEPENDENT,
    MATCH_INDEPENDENT,
    MATCH_LIFTING,
    Heuristic,
    HeuristicView,
    default_heuristics,
)

OVERRIDDEN_PREFIX = "original___"


class PluginInspector(Protocol):
    """Runtime facts the clusterer needs to decide which plugins are worth showing."""

    def is_runnable(self, plugin_id: str) -> bool:  # pragma: no cover - protocol
        ...

    def source_count(self, plugin_id: str) -> int:  # pragma: no cover - protocol
        ...

    def all_rows_processed(self, plugin_id: str) -> bool:  # pragma: no cover - protocol
        ...


class MigrationClusterer:
    """Groups migration plugins into clusters, one heuristic at a time.

    Heuristics run in list order and the first one to claim a plugin wins. The
    output lists plugins grouped by heuristic weight (ascending, ties in list
    order), then repaired so that no plugin precedes one of its dependencies.
    """

    def __init__(
        self,
        heuristics: list[tuple[Heuristic, int]] | None = None,
        inspector: PluginInspector | None = None,
        settings: Mapping[str, Any] | None = None,
        logger: Callable[[str], None] | None = None,
    ) -> None:
        self.heuristics = heuristics if heuristics is not None else default_heuristics()
        self.inspector = inspector
        self.settings = dict(settings or {})
        self.logger = logger

    def _log(self, msg: str) -> None:
        if self.logger is not None:
            self.logger(msg)

    def _is_available(self, plugin: MigrationPluginDefinition) -> bool:
        if plugin.plugin_id.startswith(OVERRIDDEN_PREFIX):
            return False
        if self.inspector is None:
            return True
        if not self.inspector.is_runnable(plugin.plugin_id):
            return False
        omittable = (
            not is_content_entity_destination(plugin)
            and self.inspector.all_rows_processed(plugin.plugin_id)
            # Counts below zero mean "uncountable", which is not empty.
            and self.inspector.source_count(plugin.plugin_id) == 0
        )
        return not omittable

    def available_plugins(
        self, plugins: Iterable[MigrationPluginDefinition]
    ) -> tuple[list[MigrationPluginDefinition], dict[str, PluginMetadata]]:
        kept = [plugin for plugin in plugins if self._is_available(plugin)]
        by_id = {plugin.plugin_id: plugin for plugin in kept}
        graph = build_dependency_graph(kept, self.inspector)
        return [by_id[pid] for pid in graph.order], dict(graph.metadata)

    def fingerprint(self, plugins: Iterable[MigrationPluginDefinition]) -> str:
        """Identifies a clustering input: definitions, heuristic table and settings."""

        definitions = sorted(
            (plugin.payload() for plugin in plugins), key=lambda item: item["id"]
        )
        for item in definitions:
            item.pop("path", None)
        return sha256_text(
            json_dumps(
                {
                    "plugins": definitions,
                    "heuristics": [[h.heuristic_id, weight] for h, weight in self.heuristics],
                    "settings": self.settings,
                    "inspected": self.inspector is not None,
                }
            )
        )

    def compute_clusters(self, plugins: Iterable[MigrationPluginDefinition]) -> ClusteringResult:
        ordered, metadata = self.available_plugins(plugins)
        all_plugins = {plugin.plugin_id: plugin for plugin in ordered}
        clusters: dict[str, str] = {}
        matched: dict[str, list[str]] = {}
        weights: dict[int, list[str]] = {}

        for heuristic, weight in self.heuristics:
            weights.setdefault(weight, []).append(heuristic.heuristic_id)
            # Matching and cluster naming share lookups computed during matching.
            cache: dict[str, Any] = {}
            matched[heuristic.heuristic_id] = self._match(
                heuristic, matched, all_plugins, metadata, clusters, cache
            )
            view = self._view(heuristic, matched, all_plugins, metadata, clusters, cache)
            for plugin_id in matched[heuristic.heuristic_id]:
                self._assign_cluster(all_plugins[plugin_id], heuristic, view, clusters)

        assembled: list[str] = []
        for weight in sorted(weights):
            for heuristic_id in weights[weight]:
                assembled.extend(matched[heuristic_id])

        unclustered = [pid for pid in all_plugins if not clusters.get(pid)]
        if unclustered or len(assembled) != len(all_plugins):
            raise ClusterAssignmentError(
                f"Plugins left without a cluster: {', '.join(sorted(unclustered)) or '(none)'}"
            )

        deps = {
            pid: {dep for dep in plugin.dependencies if dep in all_plugins}
            for pid, plugin in all_plugins.items()
        }
        final_order = stable_toposort(assembled, deps)
        result_metadata = {
            pid: replace(metadata[pid], cluster=clusters[pid]) for pid in final_order
        }
        self._log(
            f"clustered plugins={len(final_order)} clusters={len(set(clusters.values()))}"
        )
        return ClusteringResult(
            plugins=tuple(all_plugins[pid] for pid in final_order),
            metadata=result_metadata,
            matches={hid: tuple(ids) for hid, ids in matched.items()},
        )

    def _view(
        self,
        heuristic: Heuristic,
        matched: dict[str, list[str]],
        all_plugins: dict[str, MigrationPluginDefinition],
        metadata: dict[str, PluginMetadata],
        clusters: dict[str, str],
        cache: dict[str, Any],
        candidates: Mapping[str, MigrationPluginDefinition] | None = None,
    ) -> HeuristicView:
        if heuristic.match_kind == MATCH_INDEPENDENT:
            return HeuristicView(
                plugins={},
                metadata=metadata,
                matches={},
                clusters={},
                settings=self.settings,
                cache=cache,
            )
        # Own prior matches are always part of the dependent view.
        dependent_matches = {dep: list(matched[dep]) for dep in heuristic.dependencies}
        dependent_matches[heuristic.heuristic_id] = list(matched.get(heuristic.heuristic_id, []))
        plugins = all_plugins
        if heuristic.match_kind != MATCH_LIFTING and candidates is not None:
            plugins = candidates
        return HeuristicView(
            plugins=plugins,
            metadata=metadata,
            matches=dependent_matches,
            clusters=clusters,
            settings=self.settings,
            cache=cache,
        )

    def _match(
        self,
        heuristic: Heuristic,
        matched: dict[str, list[str]],
        all_plugins: dict[str, MigrationPluginDefinition],
        metadata: dict[str, PluginMetadata],
        clusters: dict[str, str],
        cache: dict[str, Any],
    ) -> list[str]:
        if heuristic.match_kind == MATCH_INDEPENDENT:
            view = self._view(heuristic, matched, all_plugins, metadata, clusters, cache)
            return [pid for pid, plugin in all_plugins.items() if heuristic.matches(plugin, view)]
        if heuristic.match_kind in (MATCH_DEPENDENT, MATCH_LIFTING):
            missing = [dep for dep in heuristic.dependencies if dep not in matched]
            if missing:
                raise HeuristicConfigurationError(
                    f"Heuristic {heuristic.heuristic_id} runs before its dependencies: "
                    f"{', '.join(missing)}. The heuristic priority list is misordered."
                )
            unclustered = {
                pid: plugin for pid, plugin in all_plugins.items() if not clusters.get(pid)
            }
            view = self._view(
                heuristic, matched, all_plugins, metadata, clusters, cache, unclustered
            )
            own = view.matches[heuristic.heuristic_id]
            # Incremental: later candidates see earlier matches of this heuristic.
            for pid, plugin in unclustered.items():
                if heuristic.matches(plugin, view):
                    own.append(pid)
            return list(own)
        raise HeuristicConfigurationError(
            f"Unknown heuristic matching type: {heuristic.match_kind}"
        )

    def _assign_cluster(
        self,
        plugin: MigrationPluginDefinition,
        heuristic: Heuristic,
        view: HeuristicView,
        clusters: dict[str, str],
    ) -> None:
        existing = clusters.get(plugin.plugin_id)
        if existing:
            raise ClusterAssignmentError(
                f"Plugin {plugin.plugin_id} already has cluster {existing!r}; "
                f"heuristic {heuristic.heuristic_id} tried to reassign it"
            )
        if heuristic.cluster_kind == CLUSTER_SINGLE:
            cluster = heuristic.cluster
        elif heuristic.cluster_kind in (CLUSTER_COMPUTED, CLUSTER_DEPENDENT_COMPUTED):
            cluster = heuristic.compute_cluster(plugin, view)
        else:
            raise HeuristicConfigurationError(
                f"Unknown heuristic cluster computing type: {heuristic.cluster_kind}"
            )
        if not cluster:
            raise ClusterAssignmentError(
                f"Heuristic {heuristic.heuristic_id} computed an empty cluster for {plugin.plugin_id}"
            )
        clusters[plugin.plugin_id] = cluster

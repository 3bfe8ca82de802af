from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Protocol

from .types import (
    CATEGORY_CONFIG_ENTITY,
    CATEGORY_CONTENT,
    CATEGORY_NO_DATA,
    CATEGORY_OTHER,
    CATEGORY_SIMPLE_CONFIG,
    TAG_CONFIGURATION,
    TAG_CONTENT,
    MigrationPluginDefinition,
    PluginMetadata,
)

ISOLATED_WEIGHT = 1000
ISOLATED_SIMPLE_CONFIG_WEIGHT = 2000
NO_DATA_WEIGHT_BONUS = 9999

_CONFIG_ENTITY_DESTINATIONS = {"component_entity_display", "component_entity_form_display"}
_ENTITY_DESTINATION_BASES = {
    "entity",
    "entity_revision",
    "entity_complete",
    "entity_reference_revisions",
}


class RowCountInspector(Protocol):
    def all_rows_processed(self, plugin_id: str) -> bool:  # pragma: no cover - protocol
        ...

    def source_count(self, plugin_id: str) -> int:  # pragma: no cover - protocol
        ...


@dataclass(frozen=True)
class DependencyGraph:
    order: tuple[str, ...]
    metadata: Mapping[str, PluginMetadata]


def toposort(deps: Mapping[str, set[str]]) -> list[str]:
    """Kahn's algorithm; ready nodes are taken in id order."""

    nodes = set(deps)
    indegree = {node: len(deps[node] & nodes) for node in nodes}
    dependents: dict[str, set[str]] = {node: set() for node in nodes}
    for node in nodes:
        for dep in deps[node] & nodes:
            dependents[dep].add(node)
    order: list[str] = []
    remaining = set(nodes)
    while remaining:
        ready = sorted(node for node in remaining if indegree[node] == 0)
        if not ready:
            cycle = _find_cycle_path(deps, remaining) or []
            edges = _format_edges(deps, remaining)
            detail = ""
            if cycle:
                detail = f" cycle={' -> '.join(cycle)}"
            raise ValueError(f"Cycle detected in plugin dependencies.{detail} edges={edges}")
        for node in ready:
            remaining.remove(node)
            order.append(node)
            for dependent in dependents[node]:
                indegree[dependent] -= 1
    return order


def stable_toposort(ordered: list[str], deps: Mapping[str, set[str]]) -> list[str]:
    """Reorder as little as possible so every node follows its dependencies.

    Repeatedly emits the earliest node of `ordered` whose dependencies were all
    emitted; an order that already satisfies the dependencies comes back unchanged.
    """

    position = {node: index for index, node in enumerate(ordered)}
    pending = list(ordered)
    emitted: set[str] = set()
    result: list[str] = []
    while pending:
        for index, node in enumerate(pending):
            if all(dep in emitted or dep not in position for dep in deps.get(node, set())):
                break
        else:
            cycle = _find_cycle_path(deps, set(pending)) or []
            raise ValueError(
                f"Cycle detected in plugin dependencies. cycle={' -> '.join(cycle)}"
            )
        result.append(pending.pop(index))
        emitted.add(node)
    return result


def _transitive(deps: Mapping[str, set[str]], order: list[str]) -> dict[str, frozenset[str]]:
    closure: dict[str, frozenset[str]] = {}
    for node in order:
        reach: set[str] = set()
        for dep in deps[node]:
            reach.add(dep)
            reach |= closure[dep]
        closure[node] = frozenset(reach)
    return closure


def _depths(deps: Mapping[str, set[str]], order: list[str]) -> dict[str, int]:
    depth: dict[str, int] = {}
    for node in order:
        depth[node] = 1 + max((depth[dep] for dep in deps[node]), default=-1)
    return depth


def plugin_category(plugin: MigrationPluginDefinition) -> str:
    if plugin.has_tag(TAG_CONFIGURATION):
        destination = plugin.destination_plugin
        base = destination.split(":", 1)[0]
        if base in _ENTITY_DESTINATION_BASES or destination in _CONFIG_ENTITY_DESTINATIONS:
            return CATEGORY_CONFIG_ENTITY
        return CATEGORY_SIMPLE_CONFIG
    if plugin.has_tag(TAG_CONTENT):
        return CATEGORY_CONTENT
    return CATEGORY_OTHER


def build_dependency_graph(
    plugins: Iterable[MigrationPluginDefinition],
    inspector: RowCountInspector | None = None,
) -> DependencyGraph:
    """Compute after/before/category/weight and the execution order.

    Dependencies on plugins outside `plugins` are ignored. Passing an inspector
    flags plugins with nothing to import as "No data"; their weight bonus moves
    them to the front.
    """

    plugin_list = list(plugins)
    known = {plugin.plugin_id for plugin in plugin_list}
    deps: dict[str, set[str]] = {}
    required_deps: dict[str, set[str]] = {}
    for plugin in plugin_list:
        deps[plugin.plugin_id] = {dep for dep in plugin.dependencies if dep in known}
        required_deps[plugin.plugin_id] = {dep for dep in plugin.required if dep in known}

    order = toposort(deps)
    required_order = toposort(required_deps)
    after = _transitive(deps, order)
    required_after = _transitive(required_deps, required_order)
    depths = _depths(deps, order)

    before: dict[str, set[str]] = {node: set() for node in known}
    for node, node_deps in deps.items():
        for dep in node_deps:
            before[dep].add(node)

    metadata: dict[str, PluginMetadata] = {}
    for plugin in plugin_list:
        pid = plugin.plugin_id
        category = plugin_category(plugin)
        weight = -depths[pid]
        if not after[pid] and not before[pid]:
            weight = ISOLATED_WEIGHT
            if category == CATEGORY_SIMPLE_CONFIG:
                weight = ISOLATED_SIMPLE_CONFIG_WEIGHT
        if inspector is not None:
            if inspector.all_rows_processed(pid) and inspector.source_count(pid) == 0:
                weight += NO_DATA_WEIGHT_BONUS
                category = CATEGORY_NO_DATA
        metadata[pid] = PluginMetadata(
            after=after[pid],
            before=frozenset(before[pid]),
            required_after=required_after[pid],
            category=category,
            weight=weight,
        )

    # Descending weight, then ascending id. The No data bonus can lift a plugin
    # above its dependencies, hence the repair pass.
    ordered = sorted(known, key=lambda pid: (-metadata[pid].weight, pid))
    ordered = stable_toposort(ordered, deps)
    return DependencyGraph(order=tuple(ordered), metadata=metadata)


def _format_edges(deps: Mapping[str, set[str]], nodes: set[str]) -> list[str]:
    edges: list[str] = []
    for src in sorted(nodes):
        for dst in sorted(deps.get(src, set())):
            if dst in nodes:
                edges.append(f"{src}->{dst}")
    return edges


def _find_cycle_path(deps: Mapping[str, set[str]], nodes: set[str]) -> list[str] | None:
    """Best-effort cycle path for actionable errors."""

    visiting: set[str] = set()
    visited: set[str] = set()
    parent: dict[str, str] = {}

    def dfs(node: str) -> list[str] | None:
        visiting.add(node)
        for nxt in sorted(deps.get(node, set())):
            if nxt not in nodes:
                continue
            if nxt in visited:
                continue
            if nxt in visiting:
                path = [nxt]
                cur = node
                while cur != nxt and cur in parent:
                    path.append(cur)
                    cur = parent[cur]
                path.append(nxt)
                path.reverse()
                return path
            parent[nxt] = node
            found = dfs(nxt)
            if found:
                return found
        visiting.remove(node)
        visited.add(node)
        return None

    for node in sorted(nodes):
        if node in visited:
            continue
        found = dfs(node)
        if found:
            return found
    return None

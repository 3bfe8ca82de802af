from __future__ import annotations

import pytest

from migration_accelerator.core.clusterer.clusterer import MigrationClusterer
from migration_accelerator.core.clusterer.heuristics import (
    CLUSTER_COMPUTED,
    CLUSTER_SINGLE,
    MATCH_DEPENDENT,
    MATCH_INDEPENDENT,
    SITE_CONFIGURATION,
    Heuristic,
)
from migration_accelerator.core.errors import ClusterAssignmentError, HeuristicConfigurationError
from migration_accelerator.core.types import ClusteringResult, PluginMetadata
from tests.conftest import FakeRuntime, article_rows, article_site, make_plugin


def _everything(plugin, view):
    return True


def _article_structure() -> list:
    return [
        make_plugin(
            "d7_field_instance:node:article",
            tags=("Configuration",),
            source={"plugin": "d7_field_instance", "entity_type": "node", "bundle": "article"},
            destination="entity:field_config",
            required=("d7_node_type:article",),
        ),
        make_plugin(
            "d7_node_type:article",
            tags=("Configuration",),
            destination="entity:node_type",
        ),
    ]


def _assert_dependency_order(result) -> None:
    position = {pid: index for index, pid in enumerate(result.plugin_ids)}
    for pid in result.plugin_ids:
        for dep in result.metadata[pid].after:
            assert position[dep] < position[pid], (dep, pid)


def test_single_cluster_heuristic_keeps_dependency_order():
    article = Heuristic("article", MATCH_INDEPENDENT, CLUSTER_SINGLE, _everything, cluster="Article")
    result = MigrationClusterer(heuristics=[(article, 0)]).compute_clusters(_article_structure())

    assert result.plugin_ids == ["d7_node_type:article", "d7_field_instance:node:article"]
    assert result.cluster_of("d7_node_type:article") == "Article"
    assert result.cluster_of("d7_field_instance:node:article") == "Article"
    assert result.clusters() == {
        "Article": ["d7_node_type:article", "d7_field_instance:node:article"]
    }


def test_default_heuristics_lift_bundle_structure():
    result = MigrationClusterer(inspector=FakeRuntime(article_rows())).compute_clusters(
        article_site()
    )

    assert result.cluster_of("d7_node:article") == "Article"
    assert result.cluster_of("d7_user") == "User accounts"
    assert result.cluster_of("d7_node_type:article") == "LIFTED-Article"
    assert result.cluster_of("d7_field_instance:node:article") == "LIFTED-Article"
    assert result.matches["entity_bundles"] == ("d7_user", "d7_node:article")
    assert result.matches["entity_bundles_dependencies"] == ("d7_node_type:article",)
    assert result.matches["entity_depending_config"] == ("d7_field_instance:node:article",)
    assert result.plugin_ids == [
        "d7_node_type:article",
        "d7_field_instance:node:article",
        "d7_user",
        "d7_node:article",
    ]


def test_every_plugin_gets_exactly_one_cluster():
    plugins = article_site() + [
        make_plugin("d7_filter_format", label="Filter formats", tags=("Configuration",), destination="entity:filter_format"),
        make_plugin("d7_system_site", label="Site settings", tags=("Configuration",), destination="config"),
        make_plugin("d7_block", label="Blocks", tags=("Configuration",), destination="entity:block"),
        make_plugin(
            "d7_custom_thing", label="Custom thing", destination="custom", required=("d7_filter_format",)
        ),
    ]
    result = MigrationClusterer().compute_clusters(plugins)

    assert sorted(result.plugin_ids) == sorted(plugin.plugin_id for plugin in plugins)
    assert all(result.metadata[pid].cluster for pid in result.plugin_ids)
    claimed = [pid for ids in result.matches.values() for pid in ids]
    assert sorted(claimed) == sorted(result.plugin_ids)

    assert result.cluster_of("d7_filter_format") == "Filter formats"
    assert result.cluster_of("d7_system_site") == SITE_CONFIGURATION
    assert result.cluster_of("d7_block") == "Block placements"
    assert result.cluster_of("d7_custom_thing") == "Other"
    _assert_dependency_order(result)


def test_dependent_heuristic_sees_its_own_earlier_matches():
    def chained(plugin, view):
        own = view.matches["chain"]
        return plugin.plugin_id == "a" or any(dep in own for dep in plugin.required)

    chain = Heuristic("chain", MATCH_DEPENDENT, CLUSTER_SINGLE, chained, cluster="Chain")
    rest = Heuristic("rest", MATCH_DEPENDENT, CLUSTER_SINGLE, _everything, cluster="Rest")
    plugins = [
        make_plugin("c", required=("b",)),
        make_plugin("b", required=("a",)),
        make_plugin("a"),
        make_plugin("z"),
    ]
    result = MigrationClusterer(heuristics=[(chain, 0), (rest, 10)]).compute_clusters(plugins)

    assert result.matches["chain"] == ("a", "b", "c")
    assert result.matches["rest"] == ("z",)
    assert result.cluster_of("c") == "Chain"


def test_output_is_grouped_by_weight_then_repaired():
    late = Heuristic("late", MATCH_INDEPENDENT, CLUSTER_SINGLE, lambda p, v: p.plugin_id == "base", cluster="Late")
    early = Heuristic("early", MATCH_DEPENDENT, CLUSTER_SINGLE, _everything, cluster="Early")
    plugins = [make_plugin("base"), make_plugin("leaf", required=("base",)), make_plugin("solo")]
    result = MigrationClusterer(heuristics=[(late, 100), (early, 0)]).compute_clusters(plugins)

    # "leaf" is in the lighter group but cannot run before "base".
    assert result.plugin_ids == ["solo", "base", "leaf"]
    _assert_dependency_order(result)


def test_overlapping_independent_heuristics_are_fatal():
    first = Heuristic("first", MATCH_INDEPENDENT, CLUSTER_SINGLE, _everything, cluster="First")
    second = Heuristic("second", MATCH_INDEPENDENT, CLUSTER_SINGLE, _everything, cluster="Second")
    with pytest.raises(ClusterAssignmentError, match="tried to reassign"):
        MigrationClusterer(heuristics=[(first, 0), (second, 0)]).compute_clusters(
            _article_structure()
        )


def test_dependent_heuristic_before_its_dependency_is_fatal():
    early = Heuristic(
        "early",
        MATCH_DEPENDENT,
        CLUSTER_SINGLE,
        _everything,
        cluster="Early",
        dependencies=("seed",),
    )
    seed = Heuristic("seed", MATCH_INDEPENDENT, CLUSTER_SINGLE, _everything, cluster="Seed")
    with pytest.raises(HeuristicConfigurationError, match="misordered"):
        MigrationClusterer(heuristics=[(early, 0), (seed, 0)]).compute_clusters(
            _article_structure()
        )


def test_unclustered_plugins_are_fatal():
    only_types = Heuristic(
        "types",
        MATCH_INDEPENDENT,
        CLUSTER_SINGLE,
        lambda plugin, view: plugin.base_id == "d7_node_type",
        cluster="Types",
    )
    with pytest.raises(ClusterAssignmentError, match="d7_field_instance:node:article"):
        MigrationClusterer(heuristics=[(only_types, 0)]).compute_clusters(_article_structure())


def test_empty_computed_cluster_is_fatal():
    nameless = Heuristic(
        "nameless",
        MATCH_INDEPENDENT,
        CLUSTER_COMPUTED,
        _everything,
        compute_cluster=lambda plugin, view: "",
    )
    with pytest.raises(ClusterAssignmentError, match="empty cluster"):
        MigrationClusterer(heuristics=[(nameless, 0)]).compute_clusters(_article_structure())


def test_availability_filters():
    rows = article_rows()
    rows["d7_node_type:article"] = []
    rows["d7_user"] = []
    runtime = FakeRuntime(rows, unrunnable={"d7_field_instance:node:article"})
    plugins = article_site() + [make_plugin("original___d7_user", tags=("Content",), destination="entity:user")]
    clusterer = MigrationClusterer(inspector=runtime)

    available, metadata = clusterer.available_plugins(plugins)
    ids = [plugin.plugin_id for plugin in available]

    # Empty configuration is omitted; empty content entities stay visible.
    assert "d7_node_type:article" not in ids
    assert "d7_user" in ids
    assert "d7_field_instance:node:article" not in ids
    assert "original___d7_user" not in ids
    assert set(metadata) == set(ids)


def test_dependency_cycle_is_fatal():
    plugins = [make_plugin("a", required=("b",)), make_plugin("b", required=("a",))]
    with pytest.raises(ValueError, match="Cycle detected"):
        MigrationClusterer().compute_clusters(plugins)


def test_unclustered_plugin_lookup_fails():
    plugin = make_plugin("d7_user")
    metadata = PluginMetadata(
        after=frozenset(), before=frozenset(), required_after=frozenset(), category="Content", weight=0
    )
    result = ClusteringResult(plugins=(plugin,), metadata={"d7_user": metadata}, matches={})

    assert result.get("d7_user") is plugin
    with pytest.raises(LookupError, match="d7_user has no cluster assigned"):
        result.cluster_of("d7_user")

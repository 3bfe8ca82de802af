from __future__ import annotations

import pytest

from migration_accelerator.core.clusterer.entity import (
    is_content_entity_destination,
    plural_label,
    source_entity_parameters,
)
from migration_accelerator.core.clusterer.heuristics import (
    CLUSTER_COMPUTED,
    CLUSTER_DEPENDENT_COMPUTED,
    CLUSTER_SINGLE,
    MATCH_DEPENDENT,
    MATCH_INDEPENDENT,
    MATCH_LIFTING,
    Heuristic,
    default_heuristics,
)
from migration_accelerator.core.errors import HeuristicConfigurationError
from tests.conftest import make_plugin


def _always(plugin, view):
    return True


def test_default_table_weights():
    table = [(heuristic.heuristic_id, weight) for heuristic, weight in default_heuristics()]
    assert table == [
        ("lang", 0),
        ("config_needs_human", 0),
        ("blocks", 500),
        ("bean_blocks", 500),
        ("moderation_flow", 50),
        ("vote_type", 0),
        ("enable_colorapi", 0),
        ("shared_structure", 0),
        ("shared_data", 0),
        ("book", 500),
        ("site_config", 500),
        ("moderation_flow_pushed", 40),
        ("entity_bundles", 100),
        ("entity_bundles_dependencies", 70),
        ("entity_translations", 200),
        ("entity_depending_config", 80),
        ("entity_depending_content", 110),
        ("entity_related_config", 90),
        ("entity_related_content", 120),
        ("site_config_pushed", 500),
        ("config_entity", 500),
        ("other", 1000),
    ]


def test_default_table_dependencies_run_first():
    seen: set[str] = set()
    for heuristic, _ in default_heuristics():
        assert set(heuristic.dependencies) <= seen, heuristic.heuristic_id
        if heuristic.dependencies:
            assert heuristic.is_dependent
        seen.add(heuristic.heuristic_id)


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"match_kind": "sometimes", "cluster_kind": CLUSTER_SINGLE, "cluster": "X"}, "matching type"),
        ({"match_kind": MATCH_INDEPENDENT, "cluster_kind": "random", "cluster": "X"}, "cluster computing type"),
        ({"match_kind": MATCH_INDEPENDENT, "cluster_kind": CLUSTER_SINGLE}, "single cluster name"),
        ({"match_kind": MATCH_DEPENDENT, "cluster_kind": CLUSTER_COMPUTED}, "cluster callable"),
        (
            {
                "match_kind": MATCH_INDEPENDENT,
                "cluster_kind": CLUSTER_SINGLE,
                "cluster": "X",
                "dependencies": ("lang",),
            },
            "cannot declare dependencies",
        ),
        (
            {
                "match_kind": MATCH_INDEPENDENT,
                "cluster_kind": CLUSTER_DEPENDENT_COMPUTED,
                "compute_cluster": lambda plugin, view: "X",
            },
            "no dependent matches",
        ),
    ],
)
def test_heuristic_rejects_bad_wiring(kwargs, message):
    with pytest.raises(HeuristicConfigurationError, match=message):
        Heuristic("broken", matches=_always, **kwargs)


def test_lifting_heuristic_is_dependent():
    heuristic = Heuristic(
        "lift",
        MATCH_LIFTING,
        CLUSTER_DEPENDENT_COMPUTED,
        _always,
        compute_cluster=lambda plugin, view: "X",
        dependencies=("seed",),
    )
    assert heuristic.is_dependent


def test_source_entity_parameters():
    field_instance = make_plugin(
        "d7_field_instance:node:article",
        source={"plugin": "d7_field_instance", "entity_type": "node", "bundle": "article"},
    )
    assert source_entity_parameters(field_instance) == ("node", "article")

    comment_type = make_plugin(
        "d7_comment_type:comment_node_page",
        source={"plugin": "d7_comment_type", "entity_type": "comment", "bundle": "comment_node_page"},
    )
    assert source_entity_parameters(comment_type) == ("comment", "page")

    alias = make_plugin(
        "d7_url_alias:node:article",
        source={"plugin": "d7_url_alias", "entity_type_id": "node", "bundle": "article"},
    )
    assert source_entity_parameters(alias) == ("node", "article")


def test_content_entity_destination():
    assert is_content_entity_destination(
        make_plugin("d7_node:article", tags=("Content",), destination="entity:node")
    )
    assert not is_content_entity_destination(
        make_plugin("d7_node_type", tags=("Configuration",), destination="entity:node_type")
    )
    alias = make_plugin(
        "d7_url_alias:node:article",
        tags=("Content",),
        source={"plugin": "d7_url_alias", "entity_type_id": "node"},
        destination="entity:path_alias",
    )
    assert not is_content_entity_destination(alias)


def test_plural_label():
    assert plural_label("node") == "content items"
    assert plural_label("webform_submission") == "webform submissions"

"""Entity-related facts derived from a plugin's source and destination configuration."""

from __future__ import annotations

import re

from ..types import DERIVATIVE_SEPARATOR, TAG_CONFIGURATION, TAG_CONTENT, MigrationPluginDefinition

KNOWN_CONFIG_DESTINATIONS = {"component_entity_display", "component_entity_form_display"}
ENTITY_DESTINATION_BASES = {"entity", "entity_revision", "entity_complete", "entity_reference_revisions"}
CONTENT_DESTINATION_BASES = {"entity", "entity_complete", "entity_revision"}
PARAGRAPHS_LEGACY_ENTITY_TYPES = {"paragraphs_item", "field_collection_item"}

_ENTITY_TYPE_ID_SOURCE_BASES = {
    "d7_url_alias",
    "d7_menu_links",
    "d7_menu_links_localized",
    "d7_menu_links_translation",
    "node_translation_menu_links",
    "d7_path_redirect",
    "d7_metatag_field_instance",
    "d7_metatag_field_instance_widget_settings",
}
_MULTIFIELD_SOURCE_BASES = {
    "multifield_type",
    "multifield_translation_settings",
    "pm_multifield_type",
    "pm_multifield_translation_settings",
}
_NODE_COUNTER_BASES = {"statistics_node_counter", "statistics_node_translation_counter"}
_COMMENT_NODE_BUNDLE_RE = re.compile(r"^comment_node_(.+)$")

ENTITY_TYPE_PLURAL_LABELS = {
    "block_content": "custom blocks",
    "comment": "comments",
    "contact_message": "contact messages",
    "file": "files",
    "media": "media items",
    "menu": "menus",
    "menu_link_content": "custom menu links",
    "node": "content items",
    "paragraph": "paragraphs",
    "paragraphs_type": "paragraphs types",
    "taxonomy_term": "taxonomy terms",
    "user": "users",
}


def plural_label(entity_type_id: str) -> str:
    return ENTITY_TYPE_PLURAL_LABELS.get(entity_type_id, entity_type_id.replace("_", " ") + "s")


def is_config_entity_destination(plugin: MigrationPluginDefinition) -> bool:
    destination = plugin.destination_plugin
    return plugin.has_tag(TAG_CONFIGURATION) and (
        destination.startswith("entity:") or destination in KNOWN_CONFIG_DESTINATIONS
    )


def destination_entity_type_id(plugin: MigrationPluginDefinition) -> str | None:
    parts = plugin.destination_plugin.split(DERIVATIVE_SEPARATOR)
    if parts[0] in ENTITY_DESTINATION_BASES and len(parts) > 1:
        return parts[1]
    return None


def source_entity_parameters(plugin: MigrationPluginDefinition) -> tuple[str | None, str | None]:
    """(entity_type, bundle) a plugin's source is scoped to, if any."""

    source = plugin.source
    base = plugin.base_id
    if base in _ENTITY_TYPE_ID_SOURCE_BASES:
        entity_type = source.get("entity_type_id")
        bundle = source.get("bundle")
    elif base in _MULTIFIELD_SOURCE_BASES:
        entity_type, bundle = "multifield", None
    elif base in _NODE_COUNTER_BASES:
        entity_type, bundle = "node", source.get("node_type")
    else:
        constants = source.get("constants") or {}
        entity_type = source.get("entity_type") or constants.get("entity_type")
        bundle = source.get("node_type") or source.get("bundle") or source.get("type")
    # Comment bundles are normalized to their host node type.
    if entity_type == "comment" and bundle and "node_type" not in source:
        bundle = str(bundle)
        if bundle == "comment_forum":
            bundle = "forum"
        else:
            bundle = _COMMENT_NODE_BUNDLE_RE.sub(r"\1", bundle)
    return (
        str(entity_type) if entity_type else None,
        str(bundle) if bundle else None,
    )


def is_content_entity_destination(plugin: MigrationPluginDefinition) -> bool:
    entity_type = destination_entity_type_id(plugin)
    source_entity_type, _ = source_entity_parameters(plugin)
    # Entity-scoped aliases, menu links and redirects belong to their host entity.
    if entity_type in {"path_alias", "menu_link_content", "redirect"} and source_entity_type:
        return False
    if plugin.base_id in {"multifield", "pm_multifield"}:
        return False
    base = plugin.destination_plugin.split(DERIVATIVE_SEPARATOR, 1)[0]
    return plugin.has_tag(TAG_CONTENT) and base in CONTENT_DESTINATION_BASES


def is_translation(plugin: MigrationPluginDefinition) -> bool:
    return plugin.has_tag("translation") or plugin.has_tag("Multilingual")


def is_content_entity_translation_destination(plugin: MigrationPluginDefinition) -> bool:
    return is_content_entity_destination(plugin) and is_translation(plugin)


def is_content_entity_default_translation_destination(plugin: MigrationPluginDefinition) -> bool:
    return is_content_entity_destination(plugin) and not is_translation(plugin)

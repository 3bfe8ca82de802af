from __future__ import annotations

import json
import os
from copy import deepcopy
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validate

from .errors import ConfigError
from .utils import env_int, read_json, resolve_env_placeholders

SCHEMA_DIR = Path(__file__).resolve().parent / "schemas"
CONFIG_SCHEMA_PATH = SCHEMA_DIR / "config.schema.json"

# Hard ceiling for the active batch lock; polls renew it well before it lapses.
LOCK_TTL_CAP = 30
CLI_SESSION_ID = "cli"

DEFAULT_CONFIG: dict[str, Any] = {
    "migrations_dir": "migrations",
    "runtime": {
        "entrypoint": None,
        "settings": {},
    },
    "batch": {
        # 0 means unlimited, as with PHP's max_execution_time.
        "max_execution_time": 30,
    },
    "import": {
        "source_base_path": "",
        "source_private_file_path": None,
    },
    "repository": {
        "alphabetical_threshold": 10,
    },
    "clusterer": {
        "bundleable_entity_types": [
            "block_content",
            "comment",
            "contact_message",
            "media",
            "node",
            "paragraph",
            "taxonomy_term",
        ],
    },
}


def merge_config(config: dict[str, Any] | None) -> dict[str, Any]:
    if config is None:
        return deepcopy(DEFAULT_CONFIG)
    merged = deepcopy(DEFAULT_CONFIG)
    _deep_merge(merged, config)
    return merged


def _deep_merge(target: dict[str, Any], incoming: dict[str, Any]) -> None:
    for key, value in incoming.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = value


def load_settings(path: str | None) -> dict[str, Any]:
    if not path:
        return {}
    content = Path(path).read_text(encoding="utf-8")
    if path.endswith(".json"):
        data = json.loads(content)
    else:
        data = yaml.safe_load(content)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Settings file must contain a mapping: {path}")
    return data


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    migrations_dir = os.environ.get("MIGRATION_ACCELERATOR_MIGRATIONS_DIR", "").strip()
    if migrations_dir:
        overrides["migrations_dir"] = migrations_dir
    runtime = os.environ.get("MIGRATION_ACCELERATOR_RUNTIME", "").strip()
    if runtime:
        overrides["runtime"] = {"entrypoint": runtime}
    max_execution_time = env_int("MIGRATION_ACCELERATOR_MAX_EXECUTION_TIME")
    if max_execution_time is not None:
        overrides["batch"] = {"max_execution_time": max_execution_time}
    return overrides


def validate_config(config: dict[str, Any]) -> None:
    schema = read_json(CONFIG_SCHEMA_PATH)
    try:
        validate(instance=config, schema=schema)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc.message}") from exc


def load_config(path: str | None = None) -> dict[str, Any]:
    """Defaults, then the settings file, then environment overrides."""

    config = merge_config(resolve_env_placeholders(load_settings(path)))
    _deep_merge(config, _env_overrides())
    validate_config(config)
    return config


def lock_ttl(config: dict[str, Any]) -> int:
    max_execution_time = int(config.get("batch", {}).get("max_execution_time") or 0)
    if max_execution_time <= 0:
        return LOCK_TTL_CAP
    return min(LOCK_TTL_CAP, max_execution_time)


def session_id_from_env() -> str:
    return os.environ.get("MIGRATION_ACCELERATOR_SESSION_ID", "").strip() or CLI_SESSION_ID

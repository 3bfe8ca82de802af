from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any

import uvicorn

from migration_accelerator.core.batch.manager import (
    ACTION_IMPORT,
    ACTION_REFRESH,
    ACTION_ROLLBACK,
    ACTION_ROLLBACK_AND_IMPORT,
)
from migration_accelerator.core.clusterer.clusterer import MigrationClusterer
from migration_accelerator.core.config import load_config, session_id_from_env
from migration_accelerator.core.dependency_graph import build_dependency_graph
from migration_accelerator.core.errors import (
    BatchConflictError,
    ConfigError,
    MigrationNotFoundError,
)
from migration_accelerator.core.plugin_manager import PluginManager
from migration_accelerator.core.services import AcceleratorServices, build_runtime, build_services
from migration_accelerator.core.types import BatchStatus, BatchUnknown
from migration_accelerator.core.utils import json_dumps, network_allowed


def _config(path: str | None) -> dict[str, Any]:
    try:
        return load_config(path)
    except (ConfigError, ValueError) as exc:
        raise SystemExit(str(exc)) from exc


def _services(config: dict[str, Any]) -> AcceleratorServices:
    try:
        return build_services(config, session_id_from_env())
    except ConfigError as exc:
        raise SystemExit(str(exc)) from exc


def cmd_plugins_validate(config: dict[str, Any]) -> None:
    manager = PluginManager(Path(config["migrations_dir"]))
    plugins = manager.discover()
    failures = [
        f"{err.plugin_id}: discovery error: {err.message} ({err.path})"
        for err in manager.discovery_errors
    ]
    known = {plugin.plugin_id for plugin in plugins}
    for plugin in plugins:
        for dep in plugin.required:
            if dep not in known:
                failures.append(f"{plugin.plugin_id}: missing required dependency {dep}")
    try:
        build_dependency_graph(plugins)
    except ValueError as exc:
        failures.append(str(exc))

    for line in sorted(failures):
        print(line)
    if failures:
        raise SystemExit(1)
    print(f"OK ({len(plugins)} plugins)")


def cmd_cluster(config: dict[str, Any], as_json: bool) -> None:
    manager = PluginManager(Path(config["migrations_dir"]))
    plugins = manager.discover_available()
    inspector = build_runtime(config) if config["runtime"].get("entrypoint") else None
    clusterer = MigrationClusterer(inspector=inspector, settings=config.get("clusterer", {}))
    result = clusterer.compute_clusters(plugins)
    if as_json:
        print(
            json_dumps(
                [
                    {
                        "plugin_id": plugin.plugin_id,
                        "cluster": result.cluster_of(plugin.plugin_id),
                        "category": result.metadata[plugin.plugin_id].category,
                        "weight": result.metadata[plugin.plugin_id].weight,
                    }
                    for plugin in result.plugins
                ]
            )
        )
        return
    for cluster, plugin_ids in result.clusters().items():
        print(f"{cluster} ({len(plugin_ids)})")
        for plugin_id in plugin_ids:
            print(f"  {plugin_id}")


def cmd_list_migrations(services: AcceleratorServices) -> None:
    repository = services.repository
    for migration in repository.get_migrations():
        flags = []
        if migration.completed:
            flags.append("completed")
        if migration.skipped:
            flags.append("skipped")
        if migration.is_imported():
            flags.append("imported")
        if repository.is_stale(migration):
            flags.append("stale")
        processed = repository.processed_count(migration)
        total = repository.source_count(migration)
        print(
            f"{migration.migration_id}\t{migration.label}\t{processed}/{total}"
            f"\t{','.join(flags) or '-'}"
        )


def _drive(services: AcceleratorServices, status: BatchStatus) -> None:
    batch_id = status.batch_id
    print(f"batch {batch_id} started")
    while True:
        result = services.manager.is_migration_batch_ongoing(batch_id)
        if isinstance(result, BatchUnknown):
            raise SystemExit(f"Batch {batch_id} disappeared")
        print(f"batch {batch_id}: {result.progress * 100:.0f}%")
        if result.is_complete:
            break
    batch = services.storage.fetch_batch(batch_id) or {}
    if batch.get("error"):
        raise SystemExit(f"Batch {batch_id} failed: {batch['error'].get('message')}")
    print(json_dumps(batch.get("state", {}).get("results", {})))


def cmd_batch(services: AcceleratorServices, migration_id: str, action: str) -> None:
    try:
        status = services.manager.create_migration_batch(migration_id, action)
    except MigrationNotFoundError as exc:
        raise SystemExit(str(exc)) from exc
    except BatchConflictError as exc:
        raise SystemExit(str(exc)) from exc
    _drive(services, status)


def cmd_import_initial(services: AcceleratorServices) -> None:
    try:
        status = services.manager.create_initial_migration_batch()
    except BatchConflictError as exc:
        raise SystemExit(str(exc)) from exc
    _drive(services, status)


def cmd_poll(services: AcceleratorServices, batch_id: int) -> None:
    print(json_dumps(services.manager.is_migration_batch_ongoing(batch_id).payload()))


def cmd_stop(services: AcceleratorServices) -> None:
    if services.manager.request_stop():
        print("OK")
    else:
        print("No migration operation is running.")


def cmd_serve(host: str, port: int) -> None:
    if not network_allowed() and host not in {"127.0.0.1", "localhost", "::1"}:
        raise SystemExit(
            "Network disabled: use localhost or set MIGRATION_ACCELERATOR_ALLOW_NETWORK=1"
        )
    from migration_accelerator.ui.server import app

    uvicorn.run(app, host=host, port=port)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="migration-accelerator")
    parser.add_argument("--config", help="yaml or json settings file")
    sub = parser.add_subparsers(dest="command", required=True)

    plugins_parser = sub.add_parser("plugins")
    plugins_sub = plugins_parser.add_subparsers(dest="plugins_command", required=True)
    plugins_sub.add_parser("validate")

    cluster_parser = sub.add_parser("cluster")
    cluster_parser.add_argument("--json", action="store_true")

    sub.add_parser("list-migrations")

    for action in (ACTION_IMPORT, ACTION_ROLLBACK, ACTION_ROLLBACK_AND_IMPORT, ACTION_REFRESH):
        action_parser = sub.add_parser(action)
        action_parser.add_argument("migration_id")

    sub.add_parser("import-initial")

    poll_parser = sub.add_parser("poll")
    poll_parser.add_argument("batch_id", type=int)

    sub.add_parser("stop")

    serve_parser = sub.add_parser("serve")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    args = parser.parse_args(argv)

    if args.command == "serve":
        cmd_serve(args.host, args.port)
        return

    config = _config(args.config)
    if args.command == "plugins":
        if args.plugins_command == "validate":
            cmd_plugins_validate(config)
        else:
            raise SystemExit(2)
    elif args.command == "cluster":
        cmd_cluster(config, bool(args.json))
    elif args.command == "list-migrations":
        cmd_list_migrations(_services(config))
    elif args.command in (ACTION_IMPORT, ACTION_ROLLBACK, ACTION_ROLLBACK_AND_IMPORT, ACTION_REFRESH):
        cmd_batch(_services(config), args.migration_id, args.command)
    elif args.command == "import-initial":
        cmd_import_initial(_services(config))
    elif args.command == "poll":
        cmd_poll(_services(config), args.batch_id)
    elif args.command == "stop":
        cmd_stop(_services(config))
    else:
        raise SystemExit(2)


if __name__ == "__main__":
    main()

from __future__ import annotations

import os

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from migration_accelerator.core.batch.manager import ACTIONS
from migration_accelerator.core.config import load_config
from migration_accelerator.core.errors import (
    BatchConflictError,
    MigrationNotFoundError,
    UnknownBatchActionError,
)
from migration_accelerator.core.runtime import MigrationRuntime
from migration_accelerator.core.services import AcceleratorServices, build_runtime, build_services
from migration_accelerator.core.utils import get_appdata_dir, make_session_id

app = FastAPI()

CONFIG = load_config(os.environ.get("MIGRATION_ACCELERATOR_CONFIG", "").strip() or None)
APPDATA_DIR = get_appdata_dir()
SESSION_COOKIE_NAME = "migration_accelerator_session"
SESSION_HEADER = "x-migration-accelerator-session"

_runtime: MigrationRuntime | None = None


def get_runtime() -> MigrationRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime(CONFIG)
    return _runtime


def _session(request: Request) -> tuple[str, bool]:
    """Session id for this request and whether it was just issued."""

    value = (
        request.headers.get(SESSION_HEADER, "").strip()
        or request.cookies.get(SESSION_COOKIE_NAME, "").strip()
    )
    if value:
        return value, False
    return make_session_id(), True


def _services(session_id: str) -> AcceleratorServices:
    # One coordinator per request: its batch state is derived at construction.
    return build_services(CONFIG, session_id, runtime=get_runtime(), appdata=APPDATA_DIR)


def _respond(payload: dict, session_id: str, issued: bool, status_code: int = 200) -> JSONResponse:
    response = JSONResponse(status_code=status_code, content=payload)
    if issued:
        response.set_cookie(SESSION_COOKIE_NAME, session_id, httponly=True, samesite="strict")
    return response


@app.get("/api/migrations")
async def api_migrations(request: Request) -> JSONResponse:
    session_id, issued = _session(request)
    services = _services(session_id)
    repository = services.repository
    items = []
    for migration in repository.get_migrations():
        item = migration.summary()
        item["processed"] = repository.processed_count(migration)
        item["total"] = repository.source_count(migration)
        item["messages"] = repository.message_count(migration)
        item["stale"] = repository.is_stale(migration)
        items.append(item)
    coordinator = services.coordinator
    return _respond(
        {
            "migrations": items,
            "batch": {
                "state": coordinator.batch_state,
                "controlled_by_cli": coordinator.controlling_session_is_cli(),
            },
        },
        session_id,
        issued,
    )


@app.post("/api/migrations/{migration_id}/{action}")
async def api_migration_action(migration_id: str, action: str, request: Request) -> JSONResponse:
    if action not in ACTIONS:
        raise HTTPException(status_code=400, detail=f"Unknown action: {action}")
    session_id, issued = _session(request)
    services = _services(session_id)
    try:
        status = services.manager.create_migration_batch(migration_id, action)
    except MigrationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except UnknownBatchActionError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown action: {exc}") from exc
    except BatchConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _respond(
        {"status": "queued", "batch_id": status.batch_id, "progress": status.progress},
        session_id,
        issued,
        status_code=202,
    )


@app.get("/api/batches/{batch_id}")
async def api_batch(batch_id: int, request: Request) -> JSONResponse:
    session_id, issued = _session(request)
    services = _services(session_id)
    result = services.manager.is_migration_batch_ongoing(batch_id)
    return _respond(result.payload(), session_id, issued)


@app.post("/api/stop")
async def api_stop(request: Request) -> JSONResponse:
    session_id, issued = _session(request)
    services = _services(session_id)
    if not services.manager.request_stop():
        return _respond({"status": "idle"}, session_id, issued)
    return _respond({"status": "stop-requested"}, session_id, issued, status_code=202)

"""HTTP API of the authoritative task store."""

import json
from datetime import datetime
from pathlib import Path

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from task_tracker.config import get_config
from task_tracker.core import lifecycle
from task_tracker.core.lifecycle import NotFoundError, ValidationError
from task_tracker.db.engine import init_db
from task_tracker.db.models import audit_to_dict, task_to_dict


def _get_db(request: Request):
    return init_db(request.app.state.db_path)


class MalformedBodyError(ValueError):
    """Raised when a request body is not decodable JSON."""


async def _body(request: Request) -> dict:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedBodyError(f"Malformed JSON: {e}") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _parse_dt(value, name: str) -> datetime | None:
    if value is None or value == "":
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an ISO 8601 timestamp, got {value!r}") from None


# ── Handlers ──────────────────────────────────────────────────────────────────


async def health(request: Request):
    return JSONResponse({"ok": True})


async def api_list_tasks(request: Request):
    params = request.query_params
    db = _get_db(request)
    try:
        tasks = lifecycle.list_tasks(
            db,
            status=params.get("status"),
            search=params.get("search"),
            category=params.get("category"),
            priority=params.get("priority"),
            date_from=_parse_dt(params.get("date_from"), "date_from"),
            date_to=_parse_dt(params.get("date_to"), "date_to"),
            include_archived=params.get("include_archived") == "true",
        )
        return JSONResponse([task_to_dict(t) for t in tasks])
    finally:
        db.close()


async def api_create_task(request: Request):
    body = await _body(request)
    db = _get_db(request)
    try:
        task = lifecycle.create_task(
            db,
            title=body.get("title"),
            category=body.get("category"),
            priority=body.get("priority"),
            estimated_days=body.get("estimated_days"),
            start_at=_parse_dt(body.get("start_at"), "start_at"),
            notes=body.get("notes"),
            task_id=body.get("id"),
        )
        return JSONResponse(task_to_dict(task), status_code=201)
    finally:
        db.close()


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db(request)
    try:
        task = lifecycle.get_task(db, task_id)
        td = task_to_dict(task)
        td["audit"] = [audit_to_dict(e) for e in lifecycle.get_history(db, task_id)]
        return JSONResponse(td)
    finally:
        db.close()


async def api_edit_task(request: Request):
    task_id = request.path_params["task_id"]
    body = await _body(request)
    unknown = set(body) - lifecycle.EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Cannot edit fields: {', '.join(sorted(unknown))}")
    db = _get_db(request)
    try:
        task = lifecycle.edit_task(db, task_id, **body)
        return JSONResponse(task_to_dict(task))
    finally:
        db.close()


async def api_complete_task(request: Request):
    task_id = request.path_params["task_id"]
    body = await _body(request)
    db = _get_db(request)
    try:
        task = lifecycle.complete_task(
            db, task_id, completed_at=_parse_dt(body.get("completed_at"), "completed_at")
        )
        return JSONResponse(task_to_dict(task))
    finally:
        db.close()


async def api_reopen_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db(request)
    try:
        task = lifecycle.reopen_task(db, task_id)
        return JSONResponse(task_to_dict(task))
    finally:
        db.close()


async def api_extend_task(request: Request):
    task_id = request.path_params["task_id"]
    body = await _body(request)
    db = _get_db(request)
    try:
        task = lifecycle.extend_task(
            db,
            task_id,
            body.get("add_days"),
            due_at=_parse_dt(body.get("due_at"), "due_at"),
        )
        return JSONResponse(task_to_dict(task))
    finally:
        db.close()


# ── Errors ────────────────────────────────────────────────────────────────────


async def _validation_error(request: Request, exc: ValidationError):
    return JSONResponse({"error": str(exc)}, status_code=422)


async def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse({"error": str(exc)}, status_code=404)


async def _bad_body(request: Request, exc: MalformedBodyError):
    return JSONResponse({"error": str(exc)}, status_code=400)


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(db_path: Path | None = None) -> Starlette:
    routes = [
        Route("/api/health", health),
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/{task_id}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_id}", api_edit_task, methods=["PATCH"]),
        Route("/api/tasks/{task_id}/complete", api_complete_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/reopen", api_reopen_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/extend", api_extend_task, methods=["POST"]),
    ]
    app = Starlette(
        routes=routes,
        exception_handlers={
            ValidationError: _validation_error,
            NotFoundError: _not_found,
            MalformedBodyError: _bad_body,
        },
    )
    app.state.db_path = db_path or get_config().server_db_path
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787, db_path: Path | None = None):
    app = create_app(db_path)
    uvicorn.run(app, host=host, port=port)

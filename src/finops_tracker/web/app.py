"""JSON API for the FinOps task tracker."""

import json
import logging
import sqlite3
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from finops_tracker.config import Config, get_config
from finops_tracker.core import activity as activity_mod
from finops_tracker.core import daily as daily_mod
from finops_tracker.core import lifecycle as lifecycle_mod
from finops_tracker.core import sla as sla_mod
from finops_tracker.core import tasks as tasks_mod
from finops_tracker.core.clock import get_zone, local_today, parse_date, to_iso, utcnow
from finops_tracker.core.notifications import NotificationDispatcher, make_dispatcher
from finops_tracker.core.scheduler import FinOpsScheduler
from finops_tracker.db.engine import init_db
from finops_tracker.db.models import TaskUpdate
from finops_tracker.errors import (
    ConflictError,
    DependencyUnavailable,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def _get_db(request: Request) -> sqlite3.Connection:
    return init_db(request.app.state.config.db_path)


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(f"Invalid JSON body: {e}") from e
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object")
    return body


def _int_param(value: str | None, name: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError as e:
        raise ValidationError(f"{name} must be an integer") from e


# ── Handlers ──────────────────────────────────────────────────────────────────


async def health(request: Request):
    return JSONResponse({"status": "ok"})


async def api_list_tasks(request: Request):
    params = request.query_params
    db = _get_db(request)
    try:
        tasks = tasks_mod.list_tasks(
            db,
            active_only=params.get("active") in ("1", "true"),
            duration=params.get("duration"),
            status=params.get("status"),
        )
        return JSONResponse([_task_dict(t) for t in tasks])
    finally:
        db.close()


async def api_create_task(request: Request):
    body = await _json_body(request)
    db = _get_db(request)
    try:
        task = tasks_mod.create_task(
            db,
            name=body.get("name") or "",
            effective_from=body.get("effective_from") or local_today(utcnow(), _zone(request)),
            assigned_to=body.get("assigned_to") or "",
            description=body.get("description") or "",
            reporting_managers=body.get("reporting_managers") or [],
            escalation_managers=body.get("escalation_managers") or [],
            duration=body.get("duration") or "daily",
            subtasks=body.get("subtasks") or [],
            slack_channel=body.get("slack_channel"),
            created_by=str(body.get("created_by") or body.get("user_name") or "System"),
        )
        return JSONResponse(_task_dict(task), status_code=201)
    finally:
        db.close()


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db(request)
    try:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            return JSONResponse({"error": "Task not found"}, status_code=404)
        return JSONResponse(_task_dict(task))
    finally:
        db.close()


async def api_update_task(request: Request):
    task_id = request.path_params["task_id"]
    body = await _json_body(request)
    update = TaskUpdate(
        name=body.get("name"),
        description=body.get("description"),
        assigned_to=body.get("assigned_to"),
        reporting_managers=body.get("reporting_managers"),
        escalation_managers=body.get("escalation_managers"),
        effective_from=parse_date(body.get("effective_from")),
        duration=body.get("duration"),
        slack_channel=body.get("slack_channel"),
        subtasks=body.get("subtasks"),
    )
    db = _get_db(request)
    try:
        task = tasks_mod.update_task(db, task_id, update, actor=body.get("user_name") or "System")
        if not task:
            return JSONResponse({"error": "Task not found"}, status_code=404)
        if "is_active" in body and bool(body["is_active"]) != task.is_active:
            task = tasks_mod.set_task_active(
                db, task_id, bool(body["is_active"]), actor=body.get("user_name") or "System"
            )
        return JSONResponse(_task_dict(task))
    finally:
        db.close()


async def api_delete_task(request: Request):
    task_id = request.path_params["task_id"]
    actor = request.query_params.get("user_name") or "System"
    db = _get_db(request)
    try:
        if not tasks_mod.delete_task(db, task_id, actor=actor):
            return JSONResponse({"error": "Task not found"}, status_code=404)
        return JSONResponse({"deleted": task_id})
    finally:
        db.close()


async def api_task_summary(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db(request)
    try:
        summary = tasks_mod.task_summary(db, task_id)
        if not summary:
            return JSONResponse({"error": "Task not found"}, status_code=404)
        return JSONResponse(summary)
    finally:
        db.close()


async def api_update_subtask(request: Request):
    task_id = request.path_params["task_id"]
    subtask_id = request.path_params["subtask_id"]
    body = await _json_body(request)
    db = _get_db(request)
    try:
        result = lifecycle_mod.set_subtask_status(
            db,
            task_id,
            subtask_id,
            body.get("status", ""),
            body.get("user_name") or "Unknown",
            delay_reason=body.get("delay_reason"),
            delay_notes=body.get("delay_notes"),
            dispatcher=_dispatcher(request),
            expected_version=body.get("expected_version"),
        )
        return JSONResponse({
            "previous_status": result.previous_status,
            "new_status": result.new_status,
            "subtask": _subtask_dict(result.subtask),
            "task": _task_dict(result.task),
        })
    finally:
        db.close()


async def api_run_task(request: Request):
    task_id = request.path_params["task_id"]
    actor = request.query_params.get("user_name") or "System"
    config = request.app.state.config
    db = _get_db(request)
    try:
        daily_mod.execute_task(db, task_id, tz_name=config.timezone, force=True, actor=actor)
        return JSONResponse({"executed": True, "task": _task_dict(tasks_mod.get_task(db, task_id))})
    finally:
        db.close()


async def api_subtask_alert(request: Request):
    task_id = request.path_params["task_id"]
    subtask_id = request.path_params["subtask_id"]
    body = await _json_body(request)
    db = _get_db(request)
    try:
        sent = sla_mod.send_manual_alert(
            db,
            task_id,
            subtask_id,
            body.get("alert_type", "reminder"),
            body.get("message", ""),
            body.get("user_name") or "System",
            dispatcher=_dispatcher(request),
        )
        return JSONResponse(sent, status_code=201)
    finally:
        db.close()


async def api_check_sla(request: Request):
    config = request.app.state.config
    db = _get_db(request)
    try:
        result = sla_mod.check_sla(
            db,
            tz_name=config.timezone,
            dispatcher=_dispatcher(request),
            cooldown_minutes=config.overdue_cooldown,
        )
        sla_mod.check_long_running(db, dispatcher=_dispatcher(request), result=result)
        return JSONResponse(result.as_dict())
    finally:
        db.close()


async def api_trigger_daily(request: Request):
    config = request.app.state.config
    db = _get_db(request)
    try:
        executed = daily_mod.run_daily_reset(db, tz_name=config.timezone)
        return JSONResponse({"executed": executed, "count": len(executed)})
    finally:
        db.close()


async def api_daily_tasks(request: Request):
    on_date = parse_date(request.query_params.get("date")) or local_today(utcnow(), _zone(request))
    db = _get_db(request)
    try:
        tasks = tasks_mod.daily_tasks(db, on_date)
        return JSONResponse({"date": on_date.isoformat(), "tasks": [_task_dict(t) for t in tasks]})
    finally:
        db.close()


async def api_activity_log(request: Request):
    params = request.query_params
    db = _get_db(request)
    try:
        entries = activity_mod.list_activity(
            db,
            task_id=_int_param(params.get("taskId"), "taskId"),
            user_name=params.get("userId"),
            action=params.get("action"),
            on_date=parse_date(params.get("date")),
            limit=_int_param(params.get("limit"), "limit") or 100,
            tz_name=request.app.state.config.timezone,
        )
        return JSONResponse([_entry_dict(e) for e in entries])
    finally:
        db.close()


async def api_scheduler_status(request: Request):
    scheduler: FinOpsScheduler | None = request.app.state.scheduler
    if scheduler is None:
        return JSONResponse({"running": False, "timezone": request.app.state.config.timezone})
    return JSONResponse(scheduler.status())


# ── Error handlers ────────────────────────────────────────────────────────────


async def _error(request: Request, exc: Exception):
    if isinstance(exc, ValidationError):
        status = 400
    elif isinstance(exc, NotFoundError):
        status = 404
    elif isinstance(exc, ConflictError):
        status = 409
    else:
        logger.error("Dependency failure handling %s %s: %s", request.method, request.url.path, exc)
        status = 503
    return JSONResponse({"error": str(exc)}, status_code=status)


# ── Serialization ─────────────────────────────────────────────────────────────


def _iso(value) -> str | None:
    return to_iso(value) if value else None


def _subtask_dict(s) -> dict:
    return {
        "id": s.id,
        "task_id": s.task_id,
        "name": s.name,
        "description": s.description,
        "start_time": s.start_time,
        "order_position": s.order_position,
        "status": s.status,
        "started_at": _iso(s.started_at),
        "completed_at": _iso(s.completed_at),
        "delay_reason": s.delay_reason,
        "delay_notes": s.delay_notes,
        "version": s.version,
    }


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "human_id": t.human_id,
        "name": t.name,
        "description": t.description,
        "assigned_to": t.assigned_to,
        "reporting_managers": t.reporting_managers,
        "escalation_managers": t.escalation_managers,
        "effective_from": t.effective_from.isoformat() if t.effective_from else None,
        "duration": t.duration,
        "is_active": t.is_active,
        "status": t.status,
        "slack_channel": t.slack_channel,
        "last_run": _iso(t.last_run),
        "next_run": _iso(t.next_run),
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
        "subtasks": [_subtask_dict(s) for s in t.subtasks],
    }


def _entry_dict(e) -> dict:
    return {
        "id": e.id,
        "task_id": e.task_id,
        "subtask_id": e.subtask_id,
        "action": e.action,
        "user_name": e.user_name,
        "details": e.details,
        "created_at": _iso(e.created_at),
    }


def _zone(request: Request):
    return get_zone(request.app.state.config.timezone)


def _dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(
    config: Config | None = None,
    dispatcher: NotificationDispatcher | None = None,
    with_scheduler: bool = False,
) -> Starlette:
    config = config or get_config()
    dispatcher = dispatcher or make_dispatcher(config)
    scheduler = None
    if with_scheduler:
        scheduler = FinOpsScheduler(
            config.db_path,
            dispatcher=dispatcher,
            tz_name=config.timezone,
            sla_interval=config.sla_interval,
            daily_interval=config.daily_interval,
            overdue_cooldown=config.overdue_cooldown,
        )

    @asynccontextmanager
    async def lifespan(app: Starlette):
        if scheduler is not None:
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.stop()
            dispatcher.wait()

    routes = [
        Route("/api/health", health),
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/{task_id:int}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_id:int}", api_update_task, methods=["PUT"]),
        Route("/api/tasks/{task_id:int}", api_delete_task, methods=["DELETE"]),
        Route("/api/tasks/{task_id:int}/summary", api_task_summary),
        Route("/api/tasks/{task_id:int}/run", api_run_task, methods=["POST"]),
        Route(
            "/api/tasks/{task_id:int}/subtasks/{subtask_id:int}",
            api_update_subtask,
            methods=["PATCH"],
        ),
        Route(
            "/api/tasks/{task_id:int}/subtasks/{subtask_id:int}/alert",
            api_subtask_alert,
            methods=["POST"],
        ),
        Route("/api/check-sla", api_check_sla, methods=["POST"]),
        Route("/api/trigger-daily", api_trigger_daily, methods=["POST"]),
        Route("/api/daily-tasks", api_daily_tasks),
        Route("/api/activity-log", api_activity_log),
        Route("/api/scheduler-status", api_scheduler_status),
    ]
    exception_handlers = {
        ValidationError: _error,
        NotFoundError: _error,
        ConflictError: _error,
        DependencyUnavailable: _error,
        sqlite3.OperationalError: _error,
    }
    app = Starlette(routes=routes, exception_handlers=exception_handlers, lifespan=lifespan)
    app.state.config = config
    app.state.dispatcher = dispatcher
    app.state.scheduler = scheduler
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787, with_scheduler: bool = True):
    app = create_app(with_scheduler=with_scheduler)
    uvicorn.run(app, host=host, port=port)

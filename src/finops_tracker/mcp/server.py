"""MCP server exposing the FinOps task tracker tools."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from finops_tracker.config import Config, get_config
from finops_tracker.core import activity as activity_mod
from finops_tracker.core import daily as daily_mod
from finops_tracker.core import lifecycle as lifecycle_mod
from finops_tracker.core import sla as sla_mod
from finops_tracker.core import tasks as tasks_mod
from finops_tracker.core.clock import parse_date
from finops_tracker.core.notifications import NotificationDispatcher, make_dispatcher
from finops_tracker.db.engine import init_db
from finops_tracker.errors import FinOpsError


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    dispatcher: NotificationDispatcher


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection on startup, close on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    dispatcher = make_dispatcher(config)
    try:
        yield AppContext(db=db, config=config, dispatcher=dispatcher)
    finally:
        dispatcher.wait()
        db.close()


mcp = FastMCP("finops-tracker", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def list_tasks(ctx: Context, active_only: bool = True, status: str | None = None) -> list[dict]:
    """List recurring tasks with their subtasks, optionally only active ones or by status."""
    app = _ctx(ctx)
    tasks = tasks_mod.list_tasks(app.db, active_only=active_only, status=status)
    return [_task_to_dict(t) for t in tasks]


@mcp.tool()
def get_task(ctx: Context, task: str) -> dict:
    """Get a task by numeric id or human id, including its subtasks."""
    app = _ctx(ctx)
    found = tasks_mod.resolve_task(app.db, task)
    if not found:
        return {"error": f"Task not found: {task}"}
    return _task_to_dict(found)


@mcp.tool()
def task_summary(ctx: Context, task_id: int) -> dict:
    """Subtask counts by status and progress for a task."""
    app = _ctx(ctx)
    summary = tasks_mod.task_summary(app.db, task_id)
    if not summary:
        return {"error": f"Task not found: {task_id}"}
    return summary


@mcp.tool()
def update_subtask_status(
    ctx: Context,
    task_id: int,
    subtask_id: int,
    status: str,
    user_name: str,
    delay_reason: str | None = None,
    delay_notes: str | None = None,
) -> dict:
    """Change a subtask's status: pending, in_progress, completed, delayed or overdue.

    Marking a subtask delayed requires a delay_reason: technical_issue,
    data_unavailable, external_dependency, resource_constraint,
    process_change or other.
    """
    app = _ctx(ctx)
    try:
        result = lifecycle_mod.set_subtask_status(
            app.db, task_id, subtask_id, status, user_name,
            delay_reason=delay_reason,
            delay_notes=delay_notes,
            dispatcher=app.dispatcher,
        )
    except FinOpsError as e:
        return {"error": str(e)}
    return {
        "previous_status": result.previous_status,
        "new_status": result.new_status,
        "task_status": result.task.status,
    }


@mcp.tool()
def run_task(ctx: Context, task_id: int) -> dict:
    """Reset all of a task's subtasks to pending now, regardless of its schedule."""
    app = _ctx(ctx)
    try:
        daily_mod.execute_task(app.db, task_id, tz_name=app.config.timezone, force=True, actor="mcp")
    except FinOpsError as e:
        return {"error": str(e)}
    return _task_to_dict(tasks_mod.get_task(app.db, task_id))


@mcp.tool()
def check_sla(ctx: Context) -> dict:
    """Run one SLA sweep: mark late pending subtasks overdue and send reminders."""
    app = _ctx(ctx)
    result = sla_mod.check_sla(
        app.db,
        tz_name=app.config.timezone,
        dispatcher=app.dispatcher,
        cooldown_minutes=app.config.overdue_cooldown,
    )
    sla_mod.check_long_running(app.db, dispatcher=app.dispatcher, result=result)
    return result.as_dict()


@mcp.tool()
def activity_log(
    ctx: Context,
    task_id: int | None = None,
    user_name: str | None = None,
    action: str | None = None,
    date: str | None = None,
    limit: int = 50,
) -> list[dict]:
    """Query the audit trail, newest first. ``date`` is a local YYYY-MM-DD day."""
    app = _ctx(ctx)
    try:
        entries = activity_mod.list_activity(
            app.db,
            task_id=task_id,
            user_name=user_name,
            action=action,
            on_date=parse_date(date),
            limit=limit,
            tz_name=app.config.timezone,
        )
    except FinOpsError as e:
        return [{"error": str(e)}]
    return [
        {
            "task_id": e.task_id,
            "subtask_id": e.subtask_id,
            "action": e.action,
            "user_name": e.user_name,
            "details": e.details,
            "created_at": e.created_at.isoformat() if e.created_at else None,
        }
        for e in entries
    ]


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_to_dict(task) -> dict:
    return {
        "id": task.id,
        "human_id": task.human_id,
        "name": task.name,
        "status": task.status,
        "duration": task.duration,
        "is_active": task.is_active,
        "assigned_to": task.assigned_to,
        "reporting_managers": task.reporting_managers,
        "escalation_managers": task.escalation_managers,
        "last_run": task.last_run.isoformat() if task.last_run else None,
        "next_run": task.next_run.isoformat() if task.next_run else None,
        "subtasks": [
            {
                "id": s.id,
                "name": s.name,
                "start_time": s.start_time,
                "status": s.status,
                "delay_reason": s.delay_reason,
            }
            for s in task.subtasks
        ],
    }

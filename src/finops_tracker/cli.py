"""CLI entry point for the FinOps task tracker."""

import json
import logging
import sys

import click

from finops_tracker.config import get_config
from finops_tracker.core import activity as activity_mod
from finops_tracker.core import daily as daily_mod
from finops_tracker.core import lifecycle as lifecycle_mod
from finops_tracker.core import sla as sla_mod
from finops_tracker.core import tasks as tasks_mod
from finops_tracker.core.clock import get_zone, local_today, parse_date, utcnow
from finops_tracker.core.notifications import make_dispatcher
from finops_tracker.db.engine import get_db
from finops_tracker.db.models import (
    DELAY_REASONS,
    DURATIONS,
    SUBTASK_STATUSES,
    TASK_STATUSES,
    SubtaskSpec,
)
from finops_tracker.errors import FinOpsError


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _resolve(db, ref):
    task = tasks_mod.resolve_task(db, ref)
    if not task:
        click.echo(f"Task not found: {ref}", err=True)
        sys.exit(1)
    return task


def _parse_subtask(value: str) -> SubtaskSpec:
    """``Name@HH:MM`` or just ``Name``."""
    name, _, start = value.rpartition("@") if "@" in value else (value, "", "")
    return SubtaskSpec(name=name.strip(), start_time=start.strip() or None)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """ft - FinOps Task Tracker CLI"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage recurring tasks."""
    pass


@task_group.command("add")
@click.argument("name")
@click.option("--assigned-to", "-a", default="", help="Assignee name")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--reporting", multiple=True, help="Reporting manager (repeatable)")
@click.option("--escalation", multiple=True, help="Escalation manager (repeatable)")
@click.option("--duration", type=click.Choice(DURATIONS), default="daily", help="Recurrence")
@click.option("--effective-from", default=None, help="First day in effect (YYYY-MM-DD), default today")
@click.option("--subtask", "-s", "subtasks", multiple=True, help="Subtask as 'Name@HH:MM' (repeatable, in order)")
@click.option("--channel", default=None, help="Slack channel for this task's notifications")
def task_add(name, assigned_to, description, reporting, escalation, duration, effective_from, subtasks, channel):
    """Create a new task."""
    config = get_config()
    with _get_db() as db:
        try:
            task = tasks_mod.create_task(
                db,
                name,
                effective_from or local_today(utcnow(), get_zone(config.timezone)),
                assigned_to=assigned_to,
                description=description,
                reporting_managers=list(reporting),
                escalation_managers=list(escalation),
                duration=duration,
                subtasks=[_parse_subtask(s) for s in subtasks],
                slack_channel=channel,
                created_by="cli",
            )
        except FinOpsError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Created task: {task.id} ({task.human_id})")
        click.echo(f"  Name: {task.name}")
        click.echo(f"  Duration: {task.duration}")
        click.echo(f"  Subtasks: {len(task.subtasks)}")


@task_group.command("list")
@click.option("--active", is_flag=True, help="Only active tasks")
@click.option("--status", type=click.Choice(TASK_STATUSES), default=None, help="Filter by derived status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(active, status, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, active_only=active, status=status)

        if json_output:
            click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        status_icons = {
            "pending": "○",
            "in_progress": "●",
            "completed": "✓",
            "delayed": "…",
            "overdue": "✗",
        }

        for task in tasks:
            flag = "" if task.is_active else " [inactive]"
            click.echo(f"  {task.id} {task.human_id}: {task.name} ({task.status}, {task.duration}){flag}")
            for sub in task.subtasks:
                icon = status_icons.get(sub.status, "?")
                at = f" @ {sub.start_time}" if sub.start_time else ""
                click.echo(f"    {icon} {sub.id}: {sub.name}{at} ({sub.status})")


@task_group.command("show")
@click.argument("task_ref")
def task_show(task_ref):
    """Show task details and recent history."""
    with _get_db() as db:
        task = _resolve(db, task_ref)
        click.echo(f"Task: {task.id} ({task.human_id})")
        click.echo(f"  Name: {task.name}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Active: {'yes' if task.is_active else 'no'}")
        click.echo(f"  Duration: {task.duration}")
        click.echo(f"  Effective from: {task.effective_from}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.assigned_to:
            click.echo(f"  Assigned to: {task.assigned_to}")
        if task.reporting_managers:
            click.echo(f"  Reporting: {', '.join(task.reporting_managers)}")
        if task.escalation_managers:
            click.echo(f"  Escalation: {', '.join(task.escalation_managers)}")
        if task.last_run:
            click.echo(f"  Last run: {task.last_run}")
        if task.next_run:
            click.echo(f"  Next run: {task.next_run}")
        if task.subtasks:
            click.echo("  Subtasks:")
            for sub in task.subtasks:
                extra = f" [{sub.delay_reason}]" if sub.status == "delayed" else ""
                click.echo(f"    - {sub.id}: {sub.name} @ {sub.start_time or '--:--'} ({sub.status}){extra}")

        entries = activity_mod.list_activity(db, task_id=task.id, limit=10)
        if entries:
            click.echo("  History:")
            for e in reversed(entries):
                click.echo(f"    [{e.created_at}] {e.action} by {e.user_name}: {e.details}")


@task_group.command("delete")
@click.argument("task_ref")
def task_delete(task_ref):
    """Delete a task and its subtasks."""
    with _get_db() as db:
        task = _resolve(db, task_ref)
        tasks_mod.delete_task(db, task.id, actor="cli")
        click.echo(f"Deleted task: {task.id} ({task.human_id})")


@task_group.command("activate")
@click.argument("task_ref")
def task_activate(task_ref):
    """Re-activate a task."""
    with _get_db() as db:
        task = _resolve(db, task_ref)
        tasks_mod.set_task_active(db, task.id, True, actor="cli")
        click.echo(f"Activated task: {task.human_id}")


@task_group.command("deactivate")
@click.argument("task_ref")
def task_deactivate(task_ref):
    """Deactivate a task; it is skipped by SLA checks and daily resets."""
    with _get_db() as db:
        task = _resolve(db, task_ref)
        tasks_mod.set_task_active(db, task.id, False, actor="cli")
        click.echo(f"Deactivated task: {task.human_id}")


# ── Subtask Commands ──────────────────────────────────────────────────────────


@main.group("subtask")
def subtask_group():
    """Update subtasks."""
    pass


@subtask_group.command("status")
@click.argument("task_ref")
@click.argument("subtask_id", type=int)
@click.argument("status", type=click.Choice(SUBTASK_STATUSES))
@click.option("--user", "user_name", default="cli", help="Who is making the change")
@click.option("--reason", type=click.Choice(DELAY_REASONS), default=None, help="Delay reason (required for delayed)")
@click.option("--notes", default=None, help="Delay notes")
def subtask_status(task_ref, subtask_id, status, user_name, reason, notes):
    """Change a subtask's status."""
    config = get_config()
    with _get_db() as db:
        task = _resolve(db, task_ref)
        try:
            result = lifecycle_mod.set_subtask_status(
                db, task.id, subtask_id, status, user_name,
                delay_reason=reason,
                delay_notes=notes,
                dispatcher=make_dispatcher(config, background=False),
            )
        except FinOpsError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Subtask {subtask_id}: {result.previous_status} -> {result.new_status}")
        click.echo(f"  Task status: {result.task.status}")


# ── Scheduler Commands ────────────────────────────────────────────────────────


@main.command("run")
@click.argument("task_ref")
def run_task(task_ref):
    """Reset a task's subtasks to pending now, regardless of schedule."""
    config = get_config()
    with _get_db() as db:
        task = _resolve(db, task_ref)
        daily_mod.execute_task(db, task.id, tz_name=config.timezone, force=True, actor="cli")
        click.echo(f"Ran task: {task.human_id}")


@main.command("check-sla")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def check_sla(json_output):
    """Run one SLA sweep."""
    config = get_config()
    with _get_db() as db:
        dispatcher = make_dispatcher(config, background=False)
        result = sla_mod.check_sla(
            db,
            tz_name=config.timezone,
            dispatcher=dispatcher,
            cooldown_minutes=config.overdue_cooldown,
        )
        sla_mod.check_long_running(db, dispatcher=dispatcher, result=result)

    if json_output:
        click.echo(json.dumps(result.as_dict(), indent=2))
        return
    click.echo(f"Overdue: {len(result.overdue)}")
    for item in result.overdue:
        click.echo(f"  ✗ task {item['task_id']} / {item['subtask']}: {item['minutes_overdue']} min late")
    click.echo(f"Suppressed: {len(result.suppressed)}")
    click.echo(f"Warnings: {len(result.warned)}")
    click.echo(f"Reminders: {len(result.reminded)}")
    if result.errors:
        click.echo(f"Errors: {len(result.errors)}", err=True)


@main.command("daily")
def daily_reset():
    """Run the daily reset for every due task."""
    config = get_config()
    with _get_db() as db:
        executed = daily_mod.run_daily_reset(db, tz_name=config.timezone)
    if not executed:
        click.echo("No tasks due for reset.")
        return
    click.echo(f"Reset {len(executed)} task(s): {', '.join(str(i) for i in executed)}")


@main.command("activity")
@click.option("--task", "task_ref", default=None, help="Task id or human id")
@click.option("--user", "user_name", default=None, help="Filter by user")
@click.option("--action", default=None, help="Filter by action")
@click.option("--date", "on_date", default=None, help="Local date YYYY-MM-DD")
@click.option("--limit", default=50, type=int)
def activity(task_ref, user_name, action, on_date, limit):
    """Show the activity log."""
    config = get_config()
    with _get_db() as db:
        task_id = _resolve(db, task_ref).id if task_ref else None
        try:
            entries = activity_mod.list_activity(
                db,
                task_id=task_id,
                user_name=user_name,
                action=action,
                on_date=parse_date(on_date),
                limit=limit,
                tz_name=config.timezone,
            )
        except FinOpsError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        if not entries:
            click.echo("No activity found.")
            return
        for e in entries:
            click.echo(f"  [{e.created_at}] task={e.task_id} {e.action} by {e.user_name}: {e.details}")


# ── Server Commands ──────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
@click.option("--scheduler/--no-scheduler", default=True, help="Run the SLA and daily-reset scheduler")
def serve(host, port, scheduler):
    """Run the JSON API (and the scheduler)."""
    from finops_tracker.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}")
    run_server(host=host, port=port, with_scheduler=scheduler)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from finops_tracker.mcp.server import mcp

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "human_id": task.human_id,
        "name": task.name,
        "status": task.status,
        "duration": task.duration,
        "is_active": task.is_active,
        "assigned_to": task.assigned_to,
        "subtasks": [
            {"id": s.id, "name": s.name, "start_time": s.start_time, "status": s.status}
            for s in task.subtasks
        ],
    }


if __name__ == "__main__":
    main()

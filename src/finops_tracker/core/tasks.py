"""Task management operations."""

import json
import re
import sqlite3
from collections.abc import Iterable
from datetime import date, datetime

from finops_tracker.core.activity import log_activity
from finops_tracker.core.clock import parse_date, parse_dt, parse_start_time, to_iso, utcnow
from finops_tracker.db.engine import write_transaction
from finops_tracker.db.models import (
    DURATIONS,
    SUBTASK_STATUSES,
    TASK_STATUSES,
    Subtask,
    SubtaskSpec,
    Task,
    TaskUpdate,
)
from finops_tracker.errors import ValidationError


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60] or "task"


def _unique_human_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique human id from a slug, appending a number if needed."""
    candidate = base_slug
    i = 2
    while db.execute("SELECT 1 FROM tasks WHERE human_id = ?", (candidate,)).fetchone():
        candidate = f"{base_slug}-{i}"
        i += 1
    return candidate


def derive_task_status(subtask_statuses: Iterable[str]) -> str:
    """Aggregate status of a task from its subtasks' statuses.

    Delayed subtasks count as "not completed"; they never produce a
    ``delayed`` task status on their own.
    """
    statuses = list(subtask_statuses)
    if "overdue" in statuses:
        return "overdue"
    completed = statuses.count("completed")
    if statuses and completed == len(statuses):
        return "completed"
    if completed > 0:
        return "in_progress"
    return "active"


def refresh_task_status(db: sqlite3.Connection, task_id: int) -> str:
    """Recompute and store a task's derived status. The caller commits."""
    rows = db.execute("SELECT status FROM subtasks WHERE task_id = ?", (task_id,)).fetchall()
    status = derive_task_status(r["status"] for r in rows)
    db.execute(
        "UPDATE tasks SET status = ? WHERE id = ? AND status != ?",
        (status, task_id, status),
    )
    return status


def create_task(
    db: sqlite3.Connection,
    name: str,
    effective_from: date | str,
    assigned_to: str = "",
    description: str = "",
    reporting_managers: list[str] | None = None,
    escalation_managers: list[str] | None = None,
    duration: str = "daily",
    subtasks: list[SubtaskSpec | dict] | None = None,
    slack_channel: str | None = None,
    created_by: str = "System",
    now: datetime | None = None,
) -> Task:
    """Create a new task with its ordered subtasks."""
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Task name is required")
    _check_duration(duration)
    _check_text(assigned_to, "assigned_to")
    _check_text(description, "description")
    _check_names(reporting_managers, "reporting_managers")
    _check_names(escalation_managers, "escalation_managers")
    if slack_channel is not None:
        _check_text(slack_channel, "slack_channel")
    start = parse_date(effective_from)
    if start is None:
        raise ValidationError("effective_from is required")
    specs = coerce_subtasks(subtasks or [])
    stamp = to_iso(now or utcnow())

    with write_transaction(db):
        human_id = _unique_human_id(db, slugify(name))
        cur = db.execute(
            """INSERT INTO tasks (human_id, name, description, assigned_to, reporting_managers,
                                  escalation_managers, effective_from, duration, slack_channel,
                                  created_by, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                human_id,
                name.strip(),
                description,
                assigned_to,
                json.dumps(reporting_managers or []),
                json.dumps(escalation_managers or []),
                start.isoformat(),
                duration,
                slack_channel,
                created_by,
                stamp,
                stamp,
            ),
        )
        task_id = cur.lastrowid
        _replace_subtasks(db, task_id, specs, stamp)
        refresh_task_status(db, task_id)
        log_activity(
            db, task_id, None, "task_created", created_by,
            f"Task '{name.strip()}' created with {len(specs)} subtasks", now,
        )
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: int) -> Task | None:
    """Get a task by numeric id with its subtasks in order."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    task = _row_to_task(row)
    task.subtasks = list_subtasks(db, task.id)
    return task


def get_task_by_human_id(db: sqlite3.Connection, human_id: str) -> Task | None:
    row = db.execute("SELECT id FROM tasks WHERE human_id = ?", (human_id,)).fetchone()
    if not row:
        return None
    return get_task(db, row["id"])


def resolve_task(db: sqlite3.Connection, ref: int | str) -> Task | None:
    """Look a task up by numeric id or by human id."""
    if isinstance(ref, int) or str(ref).isdigit():
        return get_task(db, int(ref))
    return get_task_by_human_id(db, str(ref))


def list_subtasks(db: sqlite3.Connection, task_id: int) -> list[Subtask]:
    rows = db.execute(
        "SELECT * FROM subtasks WHERE task_id = ? ORDER BY order_position ASC",
        (task_id,),
    ).fetchall()
    return [_row_to_subtask(r) for r in rows]


def get_subtask(db: sqlite3.Connection, task_id: int, subtask_id: int) -> Subtask | None:
    row = db.execute(
        "SELECT * FROM subtasks WHERE task_id = ? AND id = ?",
        (task_id, subtask_id),
    ).fetchone()
    return _row_to_subtask(row) if row else None


def list_tasks(
    db: sqlite3.Connection,
    active_only: bool = False,
    duration: str | None = None,
    status: str | None = None,
) -> list[Task]:
    """List tasks with optional filters, each with its subtasks."""
    query = "SELECT * FROM tasks WHERE 1=1"
    params: list = []

    if active_only:
        query += " AND is_active = 1"

    if duration:
        query += " AND duration = ?"
        params.append(duration)

    if status:
        if status not in TASK_STATUSES:
            raise ValidationError(
                f"Invalid task status {status!r}, expected one of {', '.join(TASK_STATUSES)}"
            )
        query += " AND status = ?"
        params.append(status)

    query += " ORDER BY id ASC"
    tasks = []
    for row in db.execute(query, params).fetchall():
        task = _row_to_task(row)
        task.subtasks = list_subtasks(db, task.id)
        tasks.append(task)
    return tasks


def daily_tasks(db: sqlite3.Connection, on_date: date) -> list[Task]:
    """Active daily tasks already in effect on ``on_date``."""
    rows = db.execute(
        """SELECT * FROM tasks
           WHERE is_active = 1 AND duration = 'daily' AND effective_from <= ?
           ORDER BY id ASC""",
        (on_date.isoformat(),),
    ).fetchall()
    tasks = []
    for row in rows:
        task = _row_to_task(row)
        task.subtasks = list_subtasks(db, task.id)
        tasks.append(task)
    return tasks


# Column each TaskUpdate field maps to, and how its value is stored.
_UPDATE_COLUMNS = {
    "name": ("name", str.strip),
    "description": ("description", str),
    "assigned_to": ("assigned_to", str),
    "reporting_managers": ("reporting_managers", json.dumps),
    "escalation_managers": ("escalation_managers", json.dumps),
    "effective_from": ("effective_from", lambda v: parse_date(v).isoformat()),
    "duration": ("duration", str),
    "slack_channel": ("slack_channel", str),
}


def update_task(
    db: sqlite3.Connection,
    task_id: int,
    update: TaskUpdate,
    actor: str = "System",
    now: datetime | None = None,
) -> Task | None:
    """Apply an edit. A new subtask list replaces every existing subtask."""
    task = get_task(db, task_id)
    if not task:
        return None
    for field_name in ("name", "description", "assigned_to", "slack_channel"):
        if getattr(update, field_name) is not None:
            _check_text(getattr(update, field_name), field_name)
    _check_names(update.reporting_managers, "reporting_managers")
    _check_names(update.escalation_managers, "escalation_managers")
    if update.name is not None and not update.name.strip():
        raise ValidationError("Task name cannot be empty")
    if update.duration is not None:
        _check_duration(update.duration)
    specs = coerce_subtasks(update.subtasks) if update.subtasks is not None else None
    stamp = to_iso(now or utcnow())

    changed = []
    set_parts = []
    values = []
    for field_name, (column, encode) in _UPDATE_COLUMNS.items():
        value = getattr(update, field_name)
        if value is None:
            continue
        set_parts.append(f"{column} = ?")
        values.append(encode(value))
        changed.append(field_name)

    with write_transaction(db):
        set_parts.append("updated_at = ?")
        db.execute(
            f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
            values + [stamp, task_id],
        )
        if specs is not None:
            _replace_subtasks(db, task_id, specs, stamp)
            changed.append("subtasks")
        refresh_task_status(db, task_id)
        log_activity(
            db, task_id, None, "task_updated", actor,
            f"Updated fields: {', '.join(changed) or 'none'}", now,
        )
    return get_task(db, task_id)


def set_task_active(
    db: sqlite3.Connection,
    task_id: int,
    active: bool,
    actor: str = "System",
    now: datetime | None = None,
) -> Task | None:
    """Activate or deactivate a task."""
    task = get_task(db, task_id)
    if not task:
        return None
    with write_transaction(db):
        db.execute(
            "UPDATE tasks SET is_active = ?, updated_at = ? WHERE id = ?",
            (1 if active else 0, to_iso(now or utcnow()), task_id),
        )
        action = "task_activated" if active else "task_deactivated"
        log_activity(db, task_id, None, action, actor, f"Task '{task.name}' {action[5:]}", now)
    return get_task(db, task_id)


def delete_task(
    db: sqlite3.Connection,
    task_id: int,
    actor: str = "System",
    now: datetime | None = None,
) -> bool:
    """Delete a task and its subtasks. Log and alert history is kept."""
    task = get_task(db, task_id)
    if not task:
        return False
    with write_transaction(db):
        db.execute("DELETE FROM subtasks WHERE task_id = ?", (task_id,))
        db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        log_activity(db, task_id, None, "task_deleted", actor, f"Task '{task.name}' deleted", now)
    return True


def task_summary(db: sqlite3.Connection, task_id: int) -> dict | None:
    """Per-status subtask counts and progress for one task."""
    task = get_task(db, task_id)
    if not task:
        return None
    counts = {s: 0 for s in SUBTASK_STATUSES}
    for sub in task.subtasks:
        counts[sub.status] = counts.get(sub.status, 0) + 1
    total = len(task.subtasks)
    progress = counts["completed"] / total * 100 if total > 0 else 0
    return {
        "task_id": task.id,
        "human_id": task.human_id,
        "status": task.status,
        "counts": counts,
        "total": total,
        "progress_pct": round(progress, 1),
        "last_run": to_iso(task.last_run) if task.last_run else None,
        "next_run": to_iso(task.next_run) if task.next_run else None,
    }


def coerce_subtasks(items: list[SubtaskSpec | dict]) -> list[SubtaskSpec]:
    """Validate subtask definitions coming from code or from JSON."""
    if not isinstance(items, list):
        raise ValidationError("subtasks must be a list")
    specs = []
    for position, item in enumerate(items, start=1):
        if isinstance(item, dict):
            item = SubtaskSpec(
                name=item.get("name") or "",
                start_time=item.get("start_time"),
                description=item.get("description") or "",
            )
        elif not isinstance(item, SubtaskSpec):
            raise ValidationError(f"Subtask {position} must be an object with a name")
        if not isinstance(item.name, str) or not item.name.strip():
            raise ValidationError(f"Subtask {position}: name is required")
        if item.start_time is not None:
            if not isinstance(item.start_time, str):
                raise ValidationError(f"Subtask {position}: start_time must be a string like 05:00")
            if item.start_time:
                parse_start_time(item.start_time)
        if not isinstance(item.description, str):
            raise ValidationError(f"Subtask {position}: description must be a string")
        specs.append(item)
    return specs


def _replace_subtasks(
    db: sqlite3.Connection,
    task_id: int,
    specs: list[SubtaskSpec],
    stamp: str,
):
    db.execute("DELETE FROM subtasks WHERE task_id = ?", (task_id,))
    for position, spec in enumerate(specs, start=1):
        db.execute(
            """INSERT INTO subtasks (task_id, name, description, start_time, order_position,
                                     created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (task_id, spec.name.strip(), spec.description, spec.start_time, position, stamp, stamp),
        )


def _check_text(value, field_name: str):
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string")


def _check_names(value, field_name: str):
    if value is None:
        return
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"{field_name} must be a list of names")


def _check_duration(duration: str):
    if duration not in DURATIONS:
        raise ValidationError(f"Invalid duration {duration!r}, expected one of {', '.join(DURATIONS)}")


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        human_id=row["human_id"],
        name=row["name"],
        description=row["description"] or "",
        assigned_to=row["assigned_to"],
        reporting_managers=json.loads(row["reporting_managers"] or "[]"),
        escalation_managers=json.loads(row["escalation_managers"] or "[]"),
        effective_from=parse_date(row["effective_from"]),
        duration=row["duration"],
        is_active=bool(row["is_active"]),
        status=row["status"],
        slack_channel=row["slack_channel"],
        last_run=parse_dt(row["last_run"]),
        next_run=parse_dt(row["next_run"]),
        created_by=row["created_by"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )


def _row_to_subtask(row: sqlite3.Row) -> Subtask:
    return Subtask(
        id=row["id"],
        task_id=row["task_id"],
        name=row["name"],
        description=row["description"] or "",
        start_time=row["start_time"],
        order_position=row["order_position"],
        status=row["status"],
        started_at=parse_dt(row["started_at"]),
        completed_at=parse_dt(row["completed_at"]),
        delay_reason=row["delay_reason"],
        delay_notes=row["delay_notes"],
        version=row["version"],
        updated_at=parse_dt(row["updated_at"]),
    )

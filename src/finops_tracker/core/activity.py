"""Append-only activity log."""

import sqlite3
from datetime import date, datetime, time, timedelta

from finops_tracker.core.clock import get_zone, parse_dt, to_iso, utcnow
from finops_tracker.db.models import ActivityLogEntry


def log_activity(
    db: sqlite3.Connection,
    task_id: int | None,
    subtask_id: int | None,
    action: str,
    user_name: str,
    details: str = "",
    now: datetime | None = None,
) -> int:
    """Append one entry. The caller owns the transaction."""
    cur = db.execute(
        """INSERT INTO activity_log (task_id, subtask_id, action, user_name, details, created_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (task_id, subtask_id, action, user_name, details, to_iso(now or utcnow())),
    )
    return cur.lastrowid


def list_activity(
    db: sqlite3.Connection,
    task_id: int | None = None,
    user_name: str | None = None,
    action: str | None = None,
    on_date: date | None = None,
    limit: int = 100,
    tz_name: str | None = None,
) -> list[ActivityLogEntry]:
    """Query the log, newest first. ``on_date`` is a local calendar day."""
    query = "SELECT * FROM activity_log WHERE 1=1"
    params: list = []

    if task_id is not None:
        query += " AND task_id = ?"
        params.append(task_id)

    if user_name:
        query += " AND user_name = ?"
        params.append(user_name)

    if action:
        query += " AND action = ?"
        params.append(action)

    if on_date is not None:
        day_start = datetime.combine(on_date, time(0, 0), tzinfo=get_zone(tz_name))
        query += " AND created_at >= ? AND created_at < ?"
        params.extend([to_iso(day_start), to_iso(day_start + timedelta(days=1))])

    query += " ORDER BY created_at DESC, id DESC LIMIT ?"
    params.append(max(1, min(limit, 1000)))

    rows = db.execute(query, params).fetchall()
    return [_row_to_entry(r) for r in rows]


def _row_to_entry(row: sqlite3.Row) -> ActivityLogEntry:
    return ActivityLogEntry(
        id=row["id"],
        task_id=row["task_id"],
        subtask_id=row["subtask_id"],
        action=row["action"],
        user_name=row["user_name"],
        details=row["details"],
        created_at=parse_dt(row["created_at"]),
    )

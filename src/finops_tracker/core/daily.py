"""Daily reset of recurring tasks."""

import logging
import sqlite3
from datetime import datetime

from finops_tracker.core.activity import log_activity
from finops_tracker.core.clock import (
    get_zone,
    local_today,
    next_run_after,
    start_of_local_day,
    to_iso,
    utcnow,
)
from finops_tracker.core.lifecycle import SYSTEM_ACTOR
from finops_tracker.core.tasks import get_task, refresh_task_status
from finops_tracker.db.engine import write_transaction
from finops_tracker.errors import NotFoundError

logger = logging.getLogger(__name__)


def tasks_due_for_reset(
    db: sqlite3.Connection,
    now: datetime | None = None,
    tz_name: str | None = None,
) -> list[int]:
    """Ids of active daily tasks in effect today that have not run today."""
    now = now or utcnow()
    tz = get_zone(tz_name)
    rows = db.execute(
        """SELECT id FROM tasks
           WHERE is_active = 1 AND duration = 'daily' AND effective_from <= ?
             AND (last_run IS NULL OR last_run < ?)
           ORDER BY id ASC""",
        (local_today(now, tz).isoformat(), to_iso(start_of_local_day(now, tz))),
    ).fetchall()
    return [r["id"] for r in rows]


def execute_task(
    db: sqlite3.Connection,
    task_id: int,
    *,
    now: datetime | None = None,
    tz_name: str | None = None,
    force: bool = False,
    actor: str = SYSTEM_ACTOR,
) -> bool:
    """Reset a task's subtasks to pending and advance its run times.

    Without ``force`` the reset only happens if the task has not already run
    today; the check and the ``last_run`` write are one conditional UPDATE,
    so concurrent callers reset a task at most once per day. Returns whether
    this call performed the reset.
    """
    task = get_task(db, task_id)
    if not task:
        raise NotFoundError(f"Task not found: {task_id}")

    now = now or utcnow()
    tz = get_zone(tz_name)
    stamp = to_iso(now)
    next_run = to_iso(next_run_after(task.duration, now))

    with write_transaction(db):
        if force:
            cur = db.execute(
                "UPDATE tasks SET last_run = ?, next_run = ?, updated_at = ? WHERE id = ?",
                (stamp, next_run, stamp, task_id),
            )
        else:
            cur = db.execute(
                """UPDATE tasks SET last_run = ?, next_run = ?, updated_at = ?
                   WHERE id = ? AND is_active = 1 AND (last_run IS NULL OR last_run < ?)""",
                (stamp, next_run, stamp, task_id, to_iso(start_of_local_day(now, tz))),
            )
        if cur.rowcount == 0:
            return False

        db.execute(
            """UPDATE subtasks
               SET status = 'pending', started_at = NULL, completed_at = NULL,
                   version = version + 1, updated_at = ?
               WHERE task_id = ?""",
            (stamp, task_id),
        )
        refresh_task_status(db, task_id)
        if force:
            log_activity(db, task_id, None, "manual_run", actor, "Task run triggered manually", now)
        else:
            log_activity(db, task_id, None, "daily_execution", actor, "Daily task execution started", now)

    logger.info("Reset subtasks of task %s (%s)", task.human_id, "manual" if force else "daily")
    return True


def run_daily_reset(
    db: sqlite3.Connection,
    *,
    now: datetime | None = None,
    tz_name: str | None = None,
) -> list[int]:
    """Reset every daily task that is due. Returns the ids that were reset."""
    now = now or utcnow()
    executed = []
    due = tasks_due_for_reset(db, now, tz_name)
    for task_id in due:
        try:
            if execute_task(db, task_id, now=now, tz_name=tz_name):
                executed.append(task_id)
        except (sqlite3.Error, NotFoundError):
            logger.exception("Error executing daily task %s", task_id)
    logger.info("Daily task execution completed. Processed %d of %d due tasks", len(executed), len(due))
    return executed

"""Subtask status transitions.

A transition is validated before anything is written. The row update is a
compare-and-swap on the subtask's version and shares one transaction with
its activity entry and the parent task's re-derived status. Notifications
go out after the commit and never affect the outcome.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime

from finops_tracker.core.activity import log_activity
from finops_tracker.core.clock import to_iso, utcnow
from finops_tracker.core.notifications import NotificationDispatcher, status_notification
from finops_tracker.core.tasks import get_subtask, get_task, refresh_task_status
from finops_tracker.db.engine import write_transaction
from finops_tracker.db.models import DELAY_REASONS, SUBTASK_STATUSES, Subtask, Task
from finops_tracker.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "System"


@dataclass
class TransitionResult:
    task: Task
    subtask: Subtask
    previous_status: str
    new_status: str


def validate_transition(new_status: str, delay_reason: str | None):
    if new_status not in SUBTASK_STATUSES:
        raise ValidationError(
            f"Invalid status {new_status!r}, expected one of {', '.join(SUBTASK_STATUSES)}"
        )
    if new_status == "delayed":
        if not delay_reason:
            raise ValidationError("delay_reason is required when marking a subtask delayed")
        if delay_reason not in DELAY_REASONS:
            raise ValidationError(
                f"Invalid delay_reason {delay_reason!r}, expected one of {', '.join(DELAY_REASONS)}"
            )


def set_subtask_status(
    db: sqlite3.Connection,
    task_id: int,
    subtask_id: int,
    new_status: str,
    actor: str = SYSTEM_ACTOR,
    delay_reason: str | None = None,
    delay_notes: str | None = None,
    *,
    dispatcher: NotificationDispatcher | None = None,
    now: datetime | None = None,
    expected_status: str | None = None,
    expected_version: int | None = None,
    note: str | None = None,
) -> TransitionResult:
    """Move a subtask to ``new_status``.

    Raises ValidationError for a bad status or a missing delay reason,
    NotFoundError for unknown ids, and ConflictError when the row no longer
    matches ``expected_status``/``expected_version`` or was changed
    concurrently. Nothing is written in any of those cases.
    """
    validate_transition(new_status, delay_reason)
    actor = actor or SYSTEM_ACTOR

    task = get_task(db, task_id)
    if not task:
        raise NotFoundError(f"Task not found: {task_id}")
    subtask = get_subtask(db, task_id, subtask_id)
    if not subtask:
        raise NotFoundError(f"Subtask not found: {subtask_id} (task {task_id})")

    if expected_status is not None and subtask.status != expected_status:
        raise ConflictError(
            f"Subtask {subtask_id} is {subtask.status}, expected {expected_status}"
        )
    if expected_version is not None and subtask.version != expected_version:
        raise ConflictError(
            f"Subtask {subtask_id} is at version {subtask.version}, expected {expected_version}"
        )

    now = now or utcnow()
    stamp = to_iso(now)
    old_status = subtask.status

    set_parts = ["status = ?", "version = version + 1", "updated_at = ?"]
    values: list = [new_status, stamp]
    if new_status == "in_progress" and subtask.started_at is None:
        set_parts.append("started_at = ?")
        values.append(stamp)
    elif new_status == "completed" and subtask.completed_at is None:
        set_parts.append("completed_at = ?")
        values.append(stamp)
    elif new_status == "delayed":
        set_parts.extend(["delay_reason = ?", "delay_notes = ?"])
        values.extend([delay_reason, delay_notes])

    details = f"{subtask.name}: {old_status} -> {new_status}"
    if new_status == "delayed":
        details += f" (reason: {delay_reason})"
    if note:
        details += f". {note}"

    with write_transaction(db):
        cur = db.execute(
            f"UPDATE subtasks SET {', '.join(set_parts)} WHERE id = ? AND task_id = ? AND version = ?",
            values + [subtask_id, task_id, subtask.version],
        )
        if cur.rowcount == 0:
            raise ConflictError(f"Subtask {subtask_id} was modified concurrently")
        log_activity(db, task_id, subtask_id, "status_changed", actor, details, now)
        refresh_task_status(db, task_id)

    task = get_task(db, task_id)
    subtask = next(s for s in task.subtasks if s.id == subtask_id)
    logger.info(
        "Subtask %s of task %s: %s -> %s by %s",
        subtask_id, task.human_id, old_status, new_status, actor,
    )

    if dispatcher is not None:
        dispatcher.dispatch(status_notification(task, subtask, old_status, new_status, actor, note))

    return TransitionResult(task=task, subtask=subtask, previous_status=old_status, new_status=new_status)

"""SLA checks: overdue detection, pre-start warnings and long-running reminders."""

import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from finops_tracker.core import alerts as alerts_mod
from finops_tracker.core.activity import log_activity
from finops_tracker.core.clock import (
    due_time_for,
    get_zone,
    local_today,
    minutes_between,
    utcnow,
)
from finops_tracker.core.lifecycle import SYSTEM_ACTOR, set_subtask_status
from finops_tracker.core.notifications import (
    NotificationDispatcher,
    manual_notification,
    reminder_notification,
    sla_warning_notification,
    status_notification,
)
from finops_tracker.core.tasks import get_subtask, get_task, list_tasks
from finops_tracker.db.engine import write_transaction
from finops_tracker.db.models import Subtask, Task
from finops_tracker.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

SLA_WARNING_MINUTES = 15
LONG_RUNNING_MINUTES = 120


@dataclass
class SweepResult:
    overdue: list[dict] = field(default_factory=list)
    suppressed: list[dict] = field(default_factory=list)
    warned: list[dict] = field(default_factory=list)
    reminded: list[dict] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)


def _ref(task: Task, subtask: Subtask, **extra) -> dict:
    return {"task_id": task.id, "subtask_id": subtask.id, "subtask": subtask.name, **extra}


def check_sla(
    db: sqlite3.Connection,
    *,
    now: datetime | None = None,
    tz_name: str | None = None,
    dispatcher: NotificationDispatcher | None = None,
    cooldown_minutes: int | None = None,
    warn_minutes: int = SLA_WARNING_MINUTES,
    result: SweepResult | None = None,
) -> SweepResult:
    """One pass over every pending subtask of every active task.

    A pending subtask whose scheduled start has passed today moves to
    ``overdue`` unless an overdue alert for it was recorded within the
    cooldown. Failures on one subtask are logged and the pass continues.
    """
    now = now or utcnow()
    tz = get_zone(tz_name)
    result = result or SweepResult()
    today = local_today(now, tz)

    for task in list_tasks(db, active_only=True):
        if task.effective_from and task.effective_from > today:
            continue
        for subtask in task.subtasks:
            if subtask.status != "pending":
                continue
            try:
                _check_pending_subtask(
                    db, task, subtask, now, tz, dispatcher, cooldown_minutes, warn_minutes, result
                )
            except (sqlite3.Error, ConflictError, NotFoundError, ValidationError) as e:
                logger.exception("SLA check failed for subtask %s of task %s", subtask.id, task.human_id)
                result.errors.append(_ref(task, subtask, error=str(e)))

    logger.info(
        "SLA check completed: %d overdue, %d suppressed, %d warned, %d errors",
        len(result.overdue), len(result.suppressed), len(result.warned), len(result.errors),
    )
    return result


def _check_pending_subtask(
    db: sqlite3.Connection,
    task: Task,
    subtask: Subtask,
    now: datetime,
    tz: ZoneInfo,
    dispatcher: NotificationDispatcher | None,
    cooldown_minutes: int | None,
    warn_minutes: int,
    result: SweepResult,
):
    if not subtask.start_time:
        logger.debug("Subtask %s has no start_time, cannot check for overdue status", subtask.id)
        result.skipped.append(_ref(task, subtask, reason="no start_time"))
        return

    due = due_time_for(subtask.start_time, now, tz)
    day = local_today(now, tz).isoformat()

    if now > due:
        minutes_overdue = minutes_between(due, now)
        if cooldown_minutes is None:
            cooldown_minutes = alerts_mod.ALERT_COOLDOWNS["sla_overdue"]
        note = f"Overdue by {minutes_overdue} minutes (scheduled {subtask.start_time})"
        # The alert claim and the transition commit or roll back together.
        with write_transaction(db):
            claimed = alerts_mod.claim_alert(
                db, task.id, subtask.id, "sla_overdue",
                alerts_mod.window_bucket(now, cooldown_minutes),
                recipients="escalation_managers",
                minutes_data=minutes_overdue,
                now=now,
                cooldown_minutes=cooldown_minutes,
            )
            if claimed is None:
                result.suppressed.append(_ref(task, subtask, minutes_overdue=minutes_overdue))
                return
            transition = set_subtask_status(
                db, task.id, subtask.id, "overdue", SYSTEM_ACTOR,
                now=now,
                expected_status="pending",
                note=note,
            )
        if dispatcher is not None:
            dispatcher.dispatch(
                status_notification(
                    transition.task, transition.subtask, "pending", "overdue", SYSTEM_ACTOR, note
                )
            )
        logger.warning(
            "Pending subtask overdue - task: %s, subtask: %s, overdue by %d minutes",
            task.name, subtask.name, minutes_overdue,
        )
        result.overdue.append(_ref(task, subtask, minutes_overdue=minutes_overdue))
        return

    minutes_remaining = minutes_between(now, due)
    if warn_minutes and due - now <= timedelta(minutes=warn_minutes):
        claimed = alerts_mod.claim_alert(
            db, task.id, subtask.id, "sla_warning", day,
            recipients="assigned_user,reporting_managers",
            minutes_data=minutes_remaining,
            now=now,
        )
        if claimed is None:
            return
        if dispatcher is not None:
            dispatcher.dispatch(sla_warning_notification(task, subtask, minutes_remaining))
        result.warned.append(_ref(task, subtask, minutes_remaining=minutes_remaining))


def check_long_running(
    db: sqlite3.Connection,
    *,
    now: datetime | None = None,
    dispatcher: NotificationDispatcher | None = None,
    threshold_minutes: int = LONG_RUNNING_MINUTES,
    result: SweepResult | None = None,
) -> SweepResult:
    """Remind about subtasks in progress for longer than the threshold.

    Status is left unchanged; reminders repeat at most once per cooldown.
    """
    now = now or utcnow()
    result = result or SweepResult()
    cooldown = alerts_mod.ALERT_COOLDOWNS["subtask_incomplete"]

    for task in list_tasks(db, active_only=True):
        for subtask in task.subtasks:
            if subtask.status != "in_progress" or subtask.started_at is None:
                continue
            running = minutes_between(subtask.started_at, now)
            if running <= threshold_minutes:
                continue
            try:
                bucket = alerts_mod.window_bucket(now, cooldown)
                claimed = alerts_mod.claim_alert(
                    db, task.id, subtask.id, "subtask_incomplete", bucket,
                    recipients="assigned_user,reporting_managers",
                    minutes_data=running,
                    now=now,
                )
            except sqlite3.Error as e:
                logger.exception("Long-running check failed for subtask %s", subtask.id)
                result.errors.append(_ref(task, subtask, error=str(e)))
                continue
            if claimed is None:
                continue
            if dispatcher is not None:
                dispatcher.dispatch(reminder_notification(task, subtask, running))
            result.reminded.append(_ref(task, subtask, minutes_running=running))

    return result


def send_manual_alert(
    db: sqlite3.Connection,
    task_id: int,
    subtask_id: int,
    alert_type: str,
    message: str,
    actor: str = SYSTEM_ACTOR,
    *,
    dispatcher: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> dict:
    """Send an ad-hoc alert about a subtask. Never suppressed."""
    if not message or not message.strip():
        raise ValidationError("Alert message is required")
    task = get_task(db, task_id)
    if not task:
        raise NotFoundError(f"Task not found: {task_id}")
    subtask = get_subtask(db, task_id, subtask_id)
    if not subtask:
        raise NotFoundError(f"Subtask not found: {subtask_id} (task {task_id})")

    now = now or utcnow()
    notification = manual_notification(task, subtask, alert_type, message.strip(), actor)
    with write_transaction(db):
        record = alerts_mod.record_alert(
            db, task_id, subtask_id, "manual",
            alerts_mod.manual_alert_key(task_id, subtask_id),
            recipients=",".join(notification.recipients),
            now=now,
        )
        log_activity(
            db, task_id, subtask_id, "manual_alert", actor,
            f"{alert_type} alert for {subtask.name}: {message.strip()}", now,
        )
    if dispatcher is not None:
        dispatcher.dispatch(notification)
    return {"alert_id": record.id, "recipients": notification.recipients}

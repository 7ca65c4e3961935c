"""Outbound notifications for task and subtask events.

Delivery is fire-and-forget: the dispatcher hands each message to a daemon
thread and returns immediately. Failures are logged and dropped; callers
never see them and state changes are never rolled back because of them.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Protocol

from finops_tracker.config import Config
from finops_tracker.db.models import Subtask, Task
from finops_tracker.integrations import slack as slack_mod

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    recipients: list[str]
    subject: str
    body: str
    kind: str = "status"
    status: str | None = None
    task_id: int | None = None
    subtask_id: int | None = None
    channel: str | None = None


class Notifier(Protocol):
    def send(self, notification: Notification) -> None: ...


class LogNotifier:
    """Writes notifications to the log. Used when Slack is not configured."""

    def send(self, notification: Notification) -> None:
        logger.info(
            "Notification [%s] to %s: %s",
            notification.kind,
            ", ".join(notification.recipients) or "(nobody)",
            notification.subject,
        )


class SlackNotifier:
    def __init__(self, token: str, default_channel: str | None = None, timeout: float = 10.0):
        self.token = token
        self.default_channel = default_channel
        self.timeout = timeout

    def send(self, notification: Notification) -> None:
        channel = notification.channel or self.default_channel
        if not channel:
            raise slack_mod.SlackError("No Slack channel configured for notification")
        blocks = slack_mod.format_alert(
            notification.subject,
            notification.body,
            notification.recipients,
            kind=notification.kind,
            status=notification.status,
        )
        slack_mod.send_message(self.token, channel, notification.subject, blocks, timeout=self.timeout)


class NotificationDispatcher:
    """Sends notifications without blocking the caller."""

    def __init__(self, notifier: Notifier, background: bool = True, timeout: float = 10.0):
        self.notifier = notifier
        self.background = background
        self.timeout = timeout
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def dispatch(self, notification: Notification | None):
        if notification is None:
            return
        if not notification.recipients:
            logger.info("No recipients for notification %r, skipping", notification.subject)
            return
        if not self.background:
            self._deliver(notification)
            return
        thread = threading.Thread(
            target=self._deliver, args=(notification,), name="notify", daemon=True
        )
        with self._lock:
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
        thread.start()

    def wait(self, timeout: float | None = None):
        """Block until in-flight notifications finish or ``timeout`` passes."""
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout if timeout is not None else self.timeout)

    def _deliver(self, notification: Notification):
        try:
            self.notifier.send(notification)
        except Exception:
            logger.exception(
                "Failed to deliver notification %r to %s",
                notification.subject, ", ".join(notification.recipients),
            )


def build_notifier(config: Config) -> Notifier:
    if config.slack_bot_token:
        return SlackNotifier(config.slack_bot_token, config.slack_channel, config.notify_timeout)
    return LogNotifier()


def make_dispatcher(config: Config, background: bool = True) -> NotificationDispatcher:
    return NotificationDispatcher(build_notifier(config), background, config.notify_timeout)


# ── Message builders ─────────────────────────────────────────────────────────


def recipients_for_status(task: Task, status: str) -> list[str]:
    """Who hears about a subtask entering ``status``."""
    if status == "overdue":
        return list(task.escalation_managers)
    if status in ("delayed", "completed"):
        return list(task.reporting_managers)
    return []


def _assignee_and_reporting(task: Task) -> list[str]:
    names = [task.assigned_to] if task.assigned_to else []
    return names + [m for m in task.reporting_managers if m not in names]


def status_notification(
    task: Task,
    subtask: Subtask,
    old_status: str,
    new_status: str,
    actor: str,
    note: str | None = None,
) -> Notification | None:
    recipients = recipients_for_status(task, new_status)
    if not recipients:
        return None

    if new_status == "overdue":
        subject = f"SLA OVERDUE: {task.name} - {subtask.name}"
    elif new_status == "delayed":
        subject = f"Subtask delayed: {task.name} - {subtask.name}"
    else:
        subject = f"Subtask completed: {task.name} - {subtask.name}"

    lines = [
        f"*Task:* {task.name}",
        f"*Subtask:* {subtask.name}",
        f"*Status:* {old_status} -> {new_status}",
        f"*Assigned to:* {task.assigned_to or 'unassigned'}",
        f"*Changed by:* {actor}",
    ]
    if new_status == "delayed":
        lines.append(f"*Reason:* {subtask.delay_reason}")
        if subtask.delay_notes:
            lines.append(f"*Notes:* {subtask.delay_notes}")
    if note:
        lines.append(note)
    if new_status == "overdue":
        lines.append("Immediate action required: escalation managers have been notified.")

    return Notification(
        recipients=recipients,
        subject=subject,
        body="\n".join(lines),
        kind="sla_overdue" if new_status == "overdue" else "status",
        status=new_status,
        task_id=task.id,
        subtask_id=subtask.id,
        channel=task.slack_channel,
    )


def sla_warning_notification(task: Task, subtask: Subtask, minutes_remaining: int) -> Notification:
    return Notification(
        recipients=_assignee_and_reporting(task),
        subject=f"SLA Warning: {task.name} - {subtask.name}",
        body=(
            f"*Task:* {task.name}\n*Subtask:* {subtask.name}\n"
            f"*Starts in:* {minutes_remaining} minutes (scheduled {subtask.start_time})\n"
            f"*Current status:* {subtask.status}\n"
            "This subtask is approaching its SLA deadline."
        ),
        kind="sla_warning",
        status=subtask.status,
        task_id=task.id,
        subtask_id=subtask.id,
        channel=task.slack_channel,
    )


def reminder_notification(task: Task, subtask: Subtask, minutes_running: int) -> Notification:
    return Notification(
        recipients=_assignee_and_reporting(task),
        subject=f"Incomplete subtask: {task.name} - {subtask.name}",
        body=(
            f"*Task:* {task.name}\n*Subtask:* {subtask.name}\n"
            f"*In progress for:* {minutes_running // 60}h {minutes_running % 60}m\n"
            "Please review and update the status."
        ),
        kind="subtask_incomplete",
        status=subtask.status,
        task_id=task.id,
        subtask_id=subtask.id,
        channel=task.slack_channel,
    )


def manual_notification(task: Task, subtask: Subtask, alert_type: str, message: str, actor: str) -> Notification:
    if alert_type == "escalation":
        recipients = list(task.escalation_managers)
    else:
        recipients = _assignee_and_reporting(task)
    return Notification(
        recipients=recipients,
        subject=f"Alert from {actor}: {task.name} - {subtask.name}",
        body=message,
        kind="manual",
        status=subtask.status,
        task_id=task.id,
        subtask_id=subtask.id,
        channel=task.slack_channel,
    )

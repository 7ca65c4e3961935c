"""Data models for the FinOps task tracker."""

from dataclasses import dataclass, field
from datetime import date, datetime

SUBTASK_STATUSES = ("pending", "in_progress", "completed", "delayed", "overdue")
TASK_STATUSES = ("active", "in_progress", "completed", "overdue", "delayed")
DURATIONS = ("daily", "weekly", "monthly")
DELAY_REASONS = (
    "technical_issue",
    "data_unavailable",
    "external_dependency",
    "resource_constraint",
    "process_change",
    "other",
)
ALERT_TYPES = ("sla_warning", "sla_overdue", "subtask_incomplete", "manual")


@dataclass
class Subtask:
    id: int
    task_id: int
    name: str
    description: str = ""
    start_time: str | None = None
    order_position: int = 0
    status: str = "pending"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    delay_reason: str | None = None
    delay_notes: str | None = None
    version: int = 0
    updated_at: datetime | None = None


@dataclass
class Task:
    id: int
    human_id: str
    name: str
    description: str = ""
    assigned_to: str = ""
    reporting_managers: list[str] = field(default_factory=list)
    escalation_managers: list[str] = field(default_factory=list)
    effective_from: date | None = None
    duration: str = "daily"
    is_active: bool = True
    status: str = "active"
    slack_channel: str | None = None
    last_run: datetime | None = None
    next_run: datetime | None = None
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    subtasks: list[Subtask] = field(default_factory=list)


@dataclass
class SubtaskSpec:
    """Definition of one checklist step, used when creating or editing a task."""

    name: str
    start_time: str | None = None
    description: str = ""


@dataclass
class TaskUpdate:
    """Fields an edit may change. ``None`` leaves a field untouched."""

    name: str | None = None
    description: str | None = None
    assigned_to: str | None = None
    reporting_managers: list[str] | None = None
    escalation_managers: list[str] | None = None
    effective_from: date | None = None
    duration: str | None = None
    slack_channel: str | None = None
    subtasks: list[SubtaskSpec] | None = None


@dataclass
class ActivityLogEntry:
    id: int | None = None
    task_id: int | None = None
    subtask_id: int | None = None
    action: str = ""
    user_name: str = ""
    details: str = ""
    created_at: datetime | None = None


@dataclass
class AlertRecord:
    id: int | None = None
    task_id: int = 0
    subtask_id: int | None = None
    alert_type: str = ""
    recipients: str = ""
    minutes_data: int = 0
    dedup_key: str = ""
    created_at: datetime | None = None

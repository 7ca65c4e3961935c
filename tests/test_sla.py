"""Tests for the SLA sweep, long-running reminders and manual alerts."""

import tempfile
from datetime import date, datetime, timedelta
from pathlib import Path
from unittest.mock import patch
from zoneinfo import ZoneInfo

import pytest

from finops_tracker.core import activity as activity_mod
from finops_tracker.core import alerts as alerts_mod
from finops_tracker.core import daily as daily_mod
from finops_tracker.core import lifecycle as lifecycle_mod
from finops_tracker.core import sla as sla_mod
from finops_tracker.core import tasks as tasks_mod
from finops_tracker.core.clock import due_time_for, minutes_between
from finops_tracker.core.notifications import NotificationDispatcher
from finops_tracker.db.engine import init_db
from finops_tracker.db.models import SubtaskSpec
from finops_tracker.errors import NotFoundError, ValidationError

IST = ZoneInfo("Asia/Kolkata")
TZ = "Asia/Kolkata"


def at(hour, minute, day=19):
    return datetime(2026, 10, day, hour, minute, tzinfo=IST)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def send(self, notification):
        self.sent.append(notification)

    def of_kind(self, kind):
        return [n for n in self.sent if n.kind == kind]


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield conn
        conn.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier):
    return NotificationDispatcher(notifier, background=False)


@pytest.fixture
def task(db):
    return tasks_mod.create_task(
        db,
        "GL close",
        date(2026, 10, 19),
        assigned_to="Asha",
        reporting_managers=["Vikram"],
        escalation_managers=["CFO", "Controller"],
        subtasks=[SubtaskSpec("Extract ledger", "05:00")],
    )


def _sweep(db, now, dispatcher=None, **kwargs):
    return sla_mod.check_sla(db, now=now, tz_name=TZ, dispatcher=dispatcher, **kwargs)


def _status(db, task):
    return tasks_mod.get_subtask(db, task.id, task.subtasks[0].id).status


class TestClockHelpers:
    def test_due_time_is_local(self):
        due = due_time_for("05:00", at(12, 0), IST)
        assert due == at(5, 0)

    def test_minutes_between_floors(self):
        assert minutes_between(at(5, 0), at(5, 5) + timedelta(seconds=59)) == 5


class TestOverdueDetection:
    def test_not_overdue_before_start(self, db, task, dispatcher, notifier):
        result = _sweep(db, at(4, 59), dispatcher)
        assert result.overdue == []
        assert _status(db, task) == "pending"
        assert notifier.of_kind("sla_overdue") == []

    def test_overdue_after_start(self, db, task, dispatcher, notifier):
        _sweep(db, at(4, 59), dispatcher)
        result = _sweep(db, at(5, 1), dispatcher)
        assert len(result.overdue) == 1
        assert result.overdue[0]["minutes_overdue"] == 1
        assert _status(db, task) == "overdue"
        assert tasks_mod.get_task(db, task.id).status == "overdue"

        overdue = notifier.of_kind("sla_overdue")
        assert len(overdue) == 1
        assert overdue[0].recipients == ["CFO", "Controller"]

        entries = activity_mod.list_activity(db, task_id=task.id, action="status_changed")
        assert entries[0].user_name == "System"
        assert "pending -> overdue" in entries[0].details

    def test_repeat_sweep_does_not_realert(self, db, task, dispatcher, notifier):
        _sweep(db, at(5, 1), dispatcher)
        result = _sweep(db, at(5, 5), dispatcher)
        assert result.overdue == []
        assert len(notifier.of_kind("sla_overdue")) == 1
        assert len(alerts_mod.list_alerts(db, task.id, "sla_overdue")) == 1

    def test_reset_within_cooldown_is_suppressed(self, db, task, dispatcher, notifier):
        _sweep(db, at(5, 1), dispatcher)
        daily_mod.execute_task(db, task.id, now=at(5, 10), tz_name=TZ, force=True)
        assert _status(db, task) == "pending"

        result = _sweep(db, at(5, 15), dispatcher)
        assert len(result.suppressed) == 1
        assert _status(db, task) == "pending"
        assert len(notifier.of_kind("sla_overdue")) == 1

        result = _sweep(db, at(5, 40), dispatcher)
        assert len(result.overdue) == 1
        assert _status(db, task) == "overdue"
        assert len(notifier.of_kind("sla_overdue")) == 2

    def test_non_pending_subtasks_exempt(self, db, task):
        lifecycle_mod.set_subtask_status(
            db, task.id, task.subtasks[0].id, "in_progress", "Asha", now=at(4, 50)
        )
        result = _sweep(db, at(6, 0))
        assert result.overdue == []
        assert _status(db, task) == "in_progress"

    def test_no_start_time_is_skipped(self, db):
        t = tasks_mod.create_task(
            db, "Unscheduled", date(2026, 10, 19), subtasks=[SubtaskSpec("Anytime")]
        )
        result = _sweep(db, at(23, 0))
        assert result.overdue == []
        assert result.skipped[0]["task_id"] == t.id

    def test_inactive_task_ignored(self, db, task):
        tasks_mod.set_task_active(db, task.id, False)
        result = _sweep(db, at(6, 0))
        assert result.overdue == []
        assert _status(db, task) == "pending"

    def test_task_not_yet_effective_ignored(self, db):
        t = tasks_mod.create_task(
            db, "Future", date(2026, 10, 20), subtasks=[SubtaskSpec("Step", "05:00")]
        )
        _sweep(db, at(6, 0))
        assert tasks_mod.get_subtask(db, t.id, t.subtasks[0].id).status == "pending"

    def test_custom_cooldown(self, db, task, dispatcher, notifier):
        _sweep(db, at(5, 1), dispatcher)
        daily_mod.execute_task(db, task.id, now=at(5, 2), tz_name=TZ, force=True)
        result = _sweep(db, at(5, 7), dispatcher, cooldown_minutes=5)
        assert len(result.overdue) == 1

    def test_second_overdue_cycle_same_day(self, db, task, dispatcher, notifier):
        _sweep(db, at(5, 1), dispatcher)
        daily_mod.execute_task(db, task.id, now=at(5, 35), tz_name=TZ, force=True)
        assert _status(db, task) == "pending"

        result = _sweep(db, at(5, 40), dispatcher)
        assert len(result.overdue) == 1
        assert _status(db, task) == "overdue"

        daily_mod.execute_task(db, task.id, now=at(5, 45), tz_name=TZ, force=True)
        result = _sweep(db, at(5, 50), dispatcher)
        assert result.overdue == []
        assert len(result.suppressed) == 1
        assert _status(db, task) == "pending"

        assert len(alerts_mod.list_alerts(db, task.id, "sla_overdue")) == 2
        assert len(notifier.of_kind("sla_overdue")) == 2

    def test_failed_transition_keeps_no_alert(self, db, task, dispatcher, notifier):
        other = tasks_mod.create_task(
            db, "AP aging", date(2026, 10, 19), subtasks=[SubtaskSpec("Pull aging", "05:00")]
        )
        real = lifecycle_mod.set_subtask_status
        calls = []

        def flaky(db_, task_id, *args, **kwargs):
            calls.append(task_id)
            if len(calls) == 1:
                raise NotFoundError(f"Task not found: {task_id}")
            return real(db_, task_id, *args, **kwargs)

        with patch("finops_tracker.core.sla.set_subtask_status", side_effect=flaky):
            result = _sweep(db, at(5, 1), dispatcher)

        assert [e["task_id"] for e in result.errors] == [task.id]
        assert [o["task_id"] for o in result.overdue] == [other.id]
        assert _status(db, task) == "pending"
        assert tasks_mod.get_subtask(db, other.id, other.subtasks[0].id).status == "overdue"
        assert alerts_mod.list_alerts(db, task.id, "sla_overdue") == []

        result = _sweep(db, at(5, 2), dispatcher)
        assert len(result.overdue) == 1
        assert _status(db, task) == "overdue"

    def test_unknown_alert_type_rejected(self):
        with pytest.raises(ValidationError):
            alerts_mod.dedup_key(1, 1, "bogus", "2026-10-19")


class TestWarnings:
    def test_warning_before_start(self, db, task, dispatcher, notifier):
        result = _sweep(db, at(4, 50), dispatcher)
        assert len(result.warned) == 1
        assert result.warned[0]["minutes_remaining"] == 10
        warnings = notifier.of_kind("sla_warning")
        assert len(warnings) == 1
        assert warnings[0].recipients == ["Asha", "Vikram"]

    def test_warning_sent_once(self, db, task, dispatcher, notifier):
        _sweep(db, at(4, 50), dispatcher)
        _sweep(db, at(4, 55), dispatcher)
        assert len(notifier.of_kind("sla_warning")) == 1

    def test_no_warning_far_from_start(self, db, task, dispatcher, notifier):
        result = _sweep(db, at(3, 0), dispatcher)
        assert result.warned == []
        assert notifier.sent == []


class TestLongRunning:
    def _start(self, db, task, when):
        lifecycle_mod.set_subtask_status(
            db, task.id, task.subtasks[0].id, "in_progress", "Asha", now=when
        )

    def test_reminder_after_threshold(self, db, task, dispatcher, notifier):
        self._start(db, task, at(5, 0))
        result = sla_mod.check_long_running(db, now=at(7, 1), dispatcher=dispatcher)
        assert len(result.reminded) == 1
        assert result.reminded[0]["minutes_running"] == 121
        reminders = notifier.of_kind("subtask_incomplete")
        assert reminders[0].recipients == ["Asha", "Vikram"]
        assert _status(db, task) == "in_progress"

    def test_no_reminder_under_threshold(self, db, task, dispatcher, notifier):
        self._start(db, task, at(5, 0))
        result = sla_mod.check_long_running(db, now=at(6, 59), dispatcher=dispatcher)
        assert result.reminded == []

    def test_reminder_respects_cooldown(self, db, task, dispatcher, notifier):
        self._start(db, task, at(5, 0))
        sla_mod.check_long_running(db, now=at(7, 5), dispatcher=dispatcher)
        sla_mod.check_long_running(db, now=at(7, 30), dispatcher=dispatcher)
        assert len(notifier.of_kind("subtask_incomplete")) == 1
        sla_mod.check_long_running(db, now=at(8, 10), dispatcher=dispatcher)
        assert len(notifier.of_kind("subtask_incomplete")) == 2


class TestManualAlert:
    def test_manual_alert_to_team(self, db, task, dispatcher, notifier):
        out = sla_mod.send_manual_alert(
            db, task.id, task.subtasks[0].id, "reminder", "Please pick this up", "Vikram",
            dispatcher=dispatcher,
        )
        assert out["recipients"] == ["Asha", "Vikram"]
        assert notifier.of_kind("manual")[0].body == "Please pick this up"
        assert activity_mod.list_activity(db, task_id=task.id, action="manual_alert")

    def test_escalation_alert(self, db, task, dispatcher, notifier):
        out = sla_mod.send_manual_alert(
            db, task.id, task.subtasks[0].id, "escalation", "Blocked on bank", "Asha",
            dispatcher=dispatcher,
        )
        assert out["recipients"] == ["CFO", "Controller"]

    def test_manual_alerts_never_suppressed(self, db, task):
        for _ in range(3):
            sla_mod.send_manual_alert(db, task.id, task.subtasks[0].id, "reminder", "ping", "Asha")
        assert len(alerts_mod.list_alerts(db, task.id, "manual")) == 3

    def test_empty_message_rejected(self, db, task):
        with pytest.raises(ValidationError):
            sla_mod.send_manual_alert(db, task.id, task.subtasks[0].id, "reminder", " ", "Asha")

    def test_unknown_subtask(self, db, task):
        with pytest.raises(NotFoundError):
            sla_mod.send_manual_alert(db, task.id, 999, "reminder", "hi", "Asha")

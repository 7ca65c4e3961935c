"""Tests for the JSON API."""

import os
import tempfile
from datetime import date
from pathlib import Path

import pytest
from starlette.testclient import TestClient

from finops_tracker.core import tasks as tasks_mod
from finops_tracker.core.notifications import NotificationDispatcher
from finops_tracker.db.engine import init_db
from finops_tracker.db.models import SubtaskSpec
from finops_tracker.web.app import create_app


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def send(self, notification):
        self.sent.append(notification)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def web_env(notifier):
    """Set up a temp environment for web API testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        env = {"FT_DB_PATH": str(db_path), "FT_TIMEZONE": "Asia/Kolkata"}
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v

        # Seed data
        db = init_db(db_path)
        tasks_mod.create_task(
            db,
            "Bank reconciliation",
            date(2026, 1, 1),
            assigned_to="Asha",
            reporting_managers=["Vikram"],
            escalation_managers=["CFO"],
            subtasks=[
                SubtaskSpec("Download statements", "00:00"),
                SubtaskSpec("Match entries", "23:59:59"),
            ],
        )
        tasks_mod.create_task(db, "Vendor payments", date(2026, 1, 1), duration="weekly")
        db.close()

        app = create_app(dispatcher=NotificationDispatcher(notifier, background=False))
        client = TestClient(app)
        yield client

        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


def _first_subtask(client, task_id=1):
    return client.get(f"/api/tasks/{task_id}").json()["subtasks"][0]


class TestHealth:
    def test_health(self, web_env):
        resp = web_env.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestTasksAPI:
    def test_list_tasks(self, web_env):
        resp = web_env.get("/api/tasks")
        assert resp.status_code == 200
        names = [t["name"] for t in resp.json()]
        assert names == ["Bank reconciliation", "Vendor payments"]

    def test_list_filter_by_duration(self, web_env):
        data = web_env.get("/api/tasks?duration=weekly").json()
        assert [t["name"] for t in data] == ["Vendor payments"]

    def test_get_task(self, web_env):
        data = web_env.get("/api/tasks/1").json()
        assert data["human_id"] == "bank-reconciliation"
        assert data["status"] == "active"
        assert [s["order_position"] for s in data["subtasks"]] == [1, 2]

    def test_get_task_not_found(self, web_env):
        resp = web_env.get("/api/tasks/999")
        assert resp.status_code == 404

    def test_create_task(self, web_env):
        resp = web_env.post("/api/tasks", json={
            "name": "Payroll accrual",
            "effective_from": "2026-10-01",
            "assigned_to": "Ravi",
            "subtasks": [{"name": "Compute", "start_time": "10:00"}],
            "user_name": "Ravi",
        })
        assert resp.status_code == 201
        data = resp.json()
        assert data["human_id"] == "payroll-accrual"
        assert data["subtasks"][0]["start_time"] == "10:00"

    def test_create_task_invalid_start_time(self, web_env):
        resp = web_env.post("/api/tasks", json={
            "name": "Broken",
            "subtasks": [{"name": "Step", "start_time": "noon"}],
        })
        assert resp.status_code == 400
        assert "start_time" in resp.json()["error"]

    def test_create_task_null_assignee(self, web_env):
        resp = web_env.post("/api/tasks", json={
            "name": "Cash forecast",
            "assigned_to": None,
            "description": None,
            "subtasks": [{"name": "Collect", "start_time": "09:00"}],
        })
        assert resp.status_code == 201
        data = resp.json()
        assert data["assigned_to"] == ""
        assert data["description"] == ""

    def test_create_task_numeric_start_time(self, web_env):
        resp = web_env.post("/api/tasks", json={
            "name": "Broken",
            "subtasks": [{"name": "Step", "start_time": 500}],
        })
        assert resp.status_code == 400
        assert "start_time" in resp.json()["error"]

    def test_create_task_subtask_as_string(self, web_env):
        resp = web_env.post("/api/tasks", json={
            "name": "Broken",
            "subtasks": ["Extract"],
        })
        assert resp.status_code == 400
        assert "Subtask 1" in resp.json()["error"]
        assert [t["name"] for t in web_env.get("/api/tasks").json()] == [
            "Bank reconciliation", "Vendor payments",
        ]

    def test_list_filter_by_unknown_status(self, web_env):
        resp = web_env.get("/api/tasks?status=bogus")
        assert resp.status_code == 400

    def test_create_task_bad_json(self, web_env):
        resp = web_env.post(
            "/api/tasks", content=b"{not json", headers={"content-type": "application/json"}
        )
        assert resp.status_code == 400

    def test_update_task_replaces_subtasks(self, web_env):
        resp = web_env.put("/api/tasks/1", json={
            "assigned_to": "Meera",
            "subtasks": [{"name": "Single step", "start_time": "09:00"}],
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["assigned_to"] == "Meera"
        assert [s["name"] for s in data["subtasks"]] == ["Single step"]

    def test_deactivate_via_update(self, web_env):
        data = web_env.put("/api/tasks/1", json={"is_active": False}).json()
        assert data["is_active"] is False

    def test_delete_task(self, web_env):
        resp = web_env.delete("/api/tasks/2")
        assert resp.status_code == 200
        assert web_env.get("/api/tasks/2").status_code == 404
        assert web_env.delete("/api/tasks/2").status_code == 404

    def test_summary(self, web_env):
        data = web_env.get("/api/tasks/1/summary").json()
        assert data["total"] == 2
        assert data["counts"]["pending"] == 2
        assert data["progress_pct"] == 0


class TestSubtaskStatusAPI:
    def test_start_subtask(self, web_env):
        sub = _first_subtask(web_env)
        resp = web_env.patch(
            f"/api/tasks/1/subtasks/{sub['id']}",
            json={"status": "in_progress", "user_name": "Asha"},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["previous_status"] == "pending"
        assert data["new_status"] == "in_progress"
        assert data["subtask"]["started_at"] is not None
        assert data["task"]["status"] == "active"

    def test_complete_notifies(self, web_env, notifier):
        sub = _first_subtask(web_env)
        resp = web_env.patch(
            f"/api/tasks/1/subtasks/{sub['id']}",
            json={"status": "completed", "user_name": "Asha"},
        )
        assert resp.json()["task"]["status"] == "in_progress"
        assert notifier.sent[0].recipients == ["Vikram"]

    def test_delayed_requires_reason(self, web_env):
        sub = _first_subtask(web_env)
        resp = web_env.patch(
            f"/api/tasks/1/subtasks/{sub['id']}",
            json={"status": "delayed", "user_name": "Asha"},
        )
        assert resp.status_code == 400
        assert _first_subtask(web_env)["status"] == "pending"

    def test_delayed_with_reason(self, web_env):
        sub = _first_subtask(web_env)
        data = web_env.patch(
            f"/api/tasks/1/subtasks/{sub['id']}",
            json={"status": "delayed", "user_name": "Asha", "delay_reason": "technical_issue"},
        ).json()
        assert data["subtask"]["delay_reason"] == "technical_issue"

    def test_invalid_status(self, web_env):
        sub = _first_subtask(web_env)
        resp = web_env.patch(f"/api/tasks/1/subtasks/{sub['id']}", json={"status": "finished"})
        assert resp.status_code == 400

    def test_unknown_subtask(self, web_env):
        resp = web_env.patch("/api/tasks/1/subtasks/999", json={"status": "completed"})
        assert resp.status_code == 404

    def test_stale_version_conflicts(self, web_env):
        sub = _first_subtask(web_env)
        web_env.patch(f"/api/tasks/1/subtasks/{sub['id']}", json={"status": "in_progress"})
        resp = web_env.patch(
            f"/api/tasks/1/subtasks/{sub['id']}",
            json={"status": "completed", "expected_version": sub["version"]},
        )
        assert resp.status_code == 409

    def test_manual_alert(self, web_env, notifier):
        sub = _first_subtask(web_env)
        resp = web_env.post(
            f"/api/tasks/1/subtasks/{sub['id']}/alert",
            json={"alert_type": "escalation", "message": "Bank portal down", "user_name": "Asha"},
        )
        assert resp.status_code == 201
        assert resp.json()["recipients"] == ["CFO"]
        assert notifier.sent[-1].body == "Bank portal down"


class TestOperationsAPI:
    def test_check_sla_marks_overdue(self, web_env, notifier):
        resp = web_env.post("/api/check-sla")
        assert resp.status_code == 200
        data = resp.json()
        assert len(data["overdue"]) == 1
        assert data["overdue"][0]["subtask"] == "Download statements"
        assert web_env.get("/api/tasks/1").json()["status"] == "overdue"
        assert notifier.sent[0].recipients == ["CFO"]

        again = web_env.post("/api/check-sla").json()
        assert again["overdue"] == []

    def test_run_task(self, web_env):
        sub = _first_subtask(web_env)
        web_env.patch(f"/api/tasks/1/subtasks/{sub['id']}", json={"status": "completed"})
        resp = web_env.post("/api/tasks/1/run?user_name=Asha")
        assert resp.status_code == 200
        data = resp.json()
        assert data["executed"] is True
        assert all(s["status"] == "pending" for s in data["task"]["subtasks"])
        assert data["task"]["last_run"] is not None

    def test_run_unknown_task(self, web_env):
        assert web_env.post("/api/tasks/999/run").status_code == 404

    def test_trigger_daily_once_per_day(self, web_env):
        first = web_env.post("/api/trigger-daily").json()
        assert first["executed"] == [1]
        second = web_env.post("/api/trigger-daily").json()
        assert second == {"executed": [], "count": 0}

    def test_daily_tasks(self, web_env):
        data = web_env.get("/api/daily-tasks?date=2026-10-19").json()
        assert data["date"] == "2026-10-19"
        assert [t["name"] for t in data["tasks"]] == ["Bank reconciliation"]

    def test_scheduler_status_without_scheduler(self, web_env):
        data = web_env.get("/api/scheduler-status").json()
        assert data["running"] is False
        assert data["timezone"] == "Asia/Kolkata"


class TestActivityLogAPI:
    def test_activity_log(self, web_env):
        sub = _first_subtask(web_env)
        web_env.patch(
            f"/api/tasks/1/subtasks/{sub['id']}",
            json={"status": "in_progress", "user_name": "Asha"},
        )
        data = web_env.get("/api/activity-log?taskId=1").json()
        assert data[0]["action"] == "status_changed"
        assert data[0]["user_name"] == "Asha"
        assert data[-1]["action"] == "task_created"

    def test_filter_by_user_and_action(self, web_env):
        sub = _first_subtask(web_env)
        web_env.patch(
            f"/api/tasks/1/subtasks/{sub['id']}",
            json={"status": "in_progress", "user_name": "Asha"},
        )
        data = web_env.get("/api/activity-log?userId=Asha&action=status_changed").json()
        assert len(data) == 1

    def test_limit(self, web_env):
        data = web_env.get("/api/activity-log?limit=1").json()
        assert len(data) == 1

    def test_bad_task_id(self, web_env):
        assert web_env.get("/api/activity-log?taskId=abc").status_code == 400

    def test_bad_date(self, web_env):
        assert web_env.get("/api/activity-log?date=yesterday").status_code == 400

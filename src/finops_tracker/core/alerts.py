"""Alert records used to suppress duplicate notifications."""

import sqlite3
import uuid
from datetime import datetime, timedelta

from finops_tracker.core.clock import parse_dt, to_iso, utcnow
from finops_tracker.db.engine import write_transaction
from finops_tracker.db.models import ALERT_TYPES, AlertRecord
from finops_tracker.errors import ValidationError

# Minutes during which a repeat alert of the same type is suppressed.
ALERT_COOLDOWNS = {
    "sla_overdue": 30,
    "sla_warning": 60,
    "subtask_incomplete": 60,
}


def dedup_key(task_id: int, subtask_id: int | None, alert_type: str, bucket: str) -> str:
    if alert_type not in ALERT_TYPES:
        raise ValidationError(f"Unknown alert type: {alert_type}")
    return f"{task_id}:{subtask_id or '-'}:{alert_type}:{bucket}"


def window_bucket(now: datetime, minutes: int) -> str:
    """Index of the ``minutes``-long window containing ``now``."""
    if minutes <= 0:
        return to_iso(now)
    return str(int(now.timestamp() // (minutes * 60)))


def recent_alert(
    db: sqlite3.Connection,
    task_id: int,
    subtask_id: int | None,
    alert_type: str,
    since: datetime,
) -> AlertRecord | None:
    """Most recent alert of a type for a task/subtask newer than ``since``."""
    row = db.execute(
        """SELECT * FROM alerts
           WHERE task_id = ? AND subtask_id IS ? AND alert_type = ? AND created_at > ?
           ORDER BY created_at DESC LIMIT 1""",
        (task_id, subtask_id, alert_type, to_iso(since)),
    ).fetchone()
    return _row_to_alert(row) if row else None


def in_cooldown(
    db: sqlite3.Connection,
    task_id: int,
    subtask_id: int | None,
    alert_type: str,
    now: datetime,
    cooldown_minutes: int | None = None,
) -> bool:
    if cooldown_minutes is None:
        cooldown_minutes = ALERT_COOLDOWNS.get(alert_type, 0)
    if cooldown_minutes <= 0:
        return False
    since = now - timedelta(minutes=cooldown_minutes)
    return recent_alert(db, task_id, subtask_id, alert_type, since) is not None


def record_alert(
    db: sqlite3.Connection,
    task_id: int,
    subtask_id: int | None,
    alert_type: str,
    key: str,
    recipients: str = "",
    minutes_data: int = 0,
    now: datetime | None = None,
) -> AlertRecord | None:
    """Insert an alert row. Returns None if ``key`` was already recorded."""
    with write_transaction(db):
        cur = db.execute(
            """INSERT OR IGNORE INTO alerts
                   (task_id, subtask_id, alert_type, recipients, minutes_data, dedup_key, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (task_id, subtask_id, alert_type, recipients, minutes_data, key, to_iso(now or utcnow())),
        )
    if cur.rowcount == 0:
        return None
    return get_alert(db, cur.lastrowid)


def claim_alert(
    db: sqlite3.Connection,
    task_id: int,
    subtask_id: int | None,
    alert_type: str,
    bucket: str,
    recipients: str = "",
    minutes_data: int = 0,
    now: datetime | None = None,
    cooldown_minutes: int | None = None,
) -> AlertRecord | None:
    """Atomically check the cooldown and record an alert.

    Returns the new record, or None when the alert is a duplicate and must
    not be sent.
    """
    now = now or utcnow()
    with write_transaction(db):
        if in_cooldown(db, task_id, subtask_id, alert_type, now, cooldown_minutes):
            return None
        return record_alert(
            db, task_id, subtask_id, alert_type,
            dedup_key(task_id, subtask_id, alert_type, bucket),
            recipients, minutes_data, now,
        )


def manual_alert_key(task_id: int, subtask_id: int | None) -> str:
    return dedup_key(task_id, subtask_id, "manual", uuid.uuid4().hex)


def get_alert(db: sqlite3.Connection, alert_id: int) -> AlertRecord | None:
    row = db.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone()
    return _row_to_alert(row) if row else None


def list_alerts(
    db: sqlite3.Connection,
    task_id: int | None = None,
    alert_type: str | None = None,
) -> list[AlertRecord]:
    query = "SELECT * FROM alerts WHERE 1=1"
    params: list = []
    if task_id is not None:
        query += " AND task_id = ?"
        params.append(task_id)
    if alert_type:
        query += " AND alert_type = ?"
        params.append(alert_type)
    query += " ORDER BY created_at ASC, id ASC"
    return [_row_to_alert(r) for r in db.execute(query, params).fetchall()]


def _row_to_alert(row: sqlite3.Row) -> AlertRecord:
    return AlertRecord(
        id=row["id"],
        task_id=row["task_id"],
        subtask_id=row["subtask_id"],
        alert_type=row["alert_type"],
        recipients=row["recipients"],
        minutes_data=row["minutes_data"],
        dedup_key=row["dedup_key"],
        created_at=parse_dt(row["created_at"]),
    )

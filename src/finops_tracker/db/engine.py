"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

from finops_tracker.errors import DependencyUnavailable

_NOW = "(strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now'))"

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    human_id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    description TEXT DEFAULT '',
    assigned_to TEXT NOT NULL DEFAULT '',
    reporting_managers TEXT NOT NULL DEFAULT '[]',
    escalation_managers TEXT NOT NULL DEFAULT '[]',
    effective_from TEXT NOT NULL,
    duration TEXT NOT NULL DEFAULT 'daily' CHECK (duration IN ('daily', 'weekly', 'monthly')),
    is_active INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL DEFAULT 'active'
        CHECK (status IN ('active', 'in_progress', 'completed', 'overdue', 'delayed')),
    slack_channel TEXT,
    last_run TEXT,
    next_run TEXT,
    created_by TEXT,
    created_at TEXT DEFAULT {_NOW},
    updated_at TEXT DEFAULT {_NOW}
);

CREATE TABLE IF NOT EXISTS subtasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    description TEXT DEFAULT '',
    start_time TEXT,
    order_position INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'in_progress', 'completed', 'delayed', 'overdue')),
    started_at TEXT,
    completed_at TEXT,
    delay_reason TEXT,
    delay_notes TEXT,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT {_NOW},
    updated_at TEXT DEFAULT {_NOW},
    UNIQUE (task_id, order_position)
);

CREATE TABLE IF NOT EXISTS activity_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id INTEGER,
    subtask_id INTEGER,
    action TEXT NOT NULL,
    user_name TEXT NOT NULL,
    details TEXT DEFAULT '',
    created_at TEXT NOT NULL DEFAULT {_NOW}
);

CREATE TABLE IF NOT EXISTS alerts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id INTEGER NOT NULL,
    subtask_id INTEGER,
    alert_type TEXT NOT NULL,
    recipients TEXT DEFAULT '',
    minutes_data INTEGER DEFAULT 0,
    dedup_key TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL DEFAULT {_NOW}
);

CREATE INDEX IF NOT EXISTS idx_subtasks_task ON subtasks(task_id, order_position);
CREATE INDEX IF NOT EXISTS idx_activity_task ON activity_log(task_id, created_at);
CREATE INDEX IF NOT EXISTS idx_alerts_lookup ON alerts(task_id, subtask_id, alert_type, created_at);
"""


def _run_migrations(conn: sqlite3.Connection):
    """Run schema migrations idempotently."""
    migrations = [
        "ALTER TABLE tasks ADD COLUMN slack_channel TEXT",
        "ALTER TABLE subtasks ADD COLUMN version INTEGER NOT NULL DEFAULT 0",
    ]
    for sql in migrations:
        try:
            conn.execute(sql)
        except sqlite3.OperationalError:
            pass  # Column already exists
    conn.commit()


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(db_path), timeout=5.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.executescript(SCHEMA)
        _run_migrations(conn)
        conn.commit()
    except (OSError, sqlite3.Error) as e:
        raise DependencyUnavailable(f"Database unavailable at {db_path}: {e}") from e
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def write_transaction(conn: sqlite3.Connection):
    """Hold the database write lock for the enclosed statements.

    Commits on success and rolls back on any exception. Nested use joins the
    outer transaction.
    """
    if conn.in_transaction:
        yield conn
        return
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()

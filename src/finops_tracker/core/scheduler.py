"""Background driver for the SLA sweep and the daily reset."""

import logging
import threading
import time
from pathlib import Path

from finops_tracker.core.clock import to_iso, utcnow
from finops_tracker.core.daily import run_daily_reset
from finops_tracker.core.notifications import NotificationDispatcher
from finops_tracker.core.sla import SweepResult, check_long_running, check_sla
from finops_tracker.db.engine import init_db

logger = logging.getLogger(__name__)


class FinOpsScheduler:
    """Background thread that polls for SLA breaches and due daily resets.

    A single instance per database is assumed.
    """

    def __init__(
        self,
        db_path: Path,
        dispatcher: NotificationDispatcher | None = None,
        tz_name: str | None = None,
        sla_interval: float = 300.0,
        daily_interval: float = 3600.0,
        overdue_cooldown: int | None = None,
    ):
        self.db_path = db_path
        self.dispatcher = dispatcher
        self.tz_name = tz_name
        self.sla_interval = sla_interval
        self.daily_interval = daily_interval
        self.overdue_cooldown = overdue_cooldown
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self.last_sla_check: str | None = None
        self.last_daily_run: str | None = None
        self.last_sla_result: dict | None = None
        self.last_daily_reset_ids: list[int] = []

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self):
        """Start the scheduler thread."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="finops-scheduler", daemon=True
        )
        self._thread.start()
        logger.info(
            "FinOps scheduler started (sla every %ss, daily every %ss)",
            self.sla_interval, self.daily_interval,
        )

    def stop(self):
        """Signal the scheduler thread to stop."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("FinOps scheduler stopped")

    def _run(self):
        """Main scheduler loop. The daily pass runs first so resets precede checks."""
        next_daily = next_sla = time.monotonic()
        while not self._stop_event.is_set():
            now = time.monotonic()
            if now >= next_daily:
                try:
                    self.run_daily_pass()
                except Exception:
                    logger.exception("Error in daily reset pass")
                next_daily = now + self.daily_interval
            if now >= next_sla:
                try:
                    self.run_sla_pass()
                except Exception:
                    logger.exception("Error in SLA check pass")
                next_sla = now + self.sla_interval
            wait = max(0.0, min(next_daily, next_sla) - time.monotonic())
            self._stop_event.wait(wait)

    def run_sla_pass(self) -> SweepResult:
        """Run the overdue sweep and the long-running check once."""
        db = init_db(self.db_path)
        try:
            result = check_sla(
                db,
                tz_name=self.tz_name,
                dispatcher=self.dispatcher,
                cooldown_minutes=self.overdue_cooldown,
            )
            check_long_running(db, dispatcher=self.dispatcher, result=result)
        finally:
            db.close()
        with self._lock:
            self.last_sla_check = to_iso(utcnow())
            self.last_sla_result = {k: len(v) for k, v in result.as_dict().items()}
        return result

    def run_daily_pass(self) -> list[int]:
        """Reset every daily task that has not run today."""
        db = init_db(self.db_path)
        try:
            executed = run_daily_reset(db, tz_name=self.tz_name)
        finally:
            db.close()
        with self._lock:
            self.last_daily_run = to_iso(utcnow())
            self.last_daily_reset_ids = executed
        return executed

    def status(self) -> dict:
        with self._lock:
            return {
                "running": self.running,
                "timezone": self.tz_name,
                "sla_interval_seconds": self.sla_interval,
                "daily_interval_seconds": self.daily_interval,
                "last_sla_check": self.last_sla_check,
                "last_sla_result": self.last_sla_result,
                "last_daily_run": self.last_daily_run,
                "last_daily_reset_ids": list(self.last_daily_reset_ids),
            }

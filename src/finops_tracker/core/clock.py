"""Time helpers.

Timestamps are stored as UTC ISO-8601 strings with microsecond precision so
that string comparison in SQL matches chronological order. Schedules
(subtask start times, "today") are evaluated in the configured timezone.
"""

import re
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from finops_tracker.config import DEFAULT_TIMEZONE
from finops_tracker.errors import ValidationError

_START_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)(?::([0-5]\d))?$")


def get_zone(name: str | None = None) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except ZoneInfoNotFoundError as e:
        raise ValidationError(f"Unknown timezone: {name}") from e


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def to_iso(dt: datetime) -> str:
    return ensure_aware(dt).astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return ensure_aware(datetime.fromisoformat(val))


def parse_date(val: str | date | None) -> date | None:
    if val is None or isinstance(val, date):
        return val
    if not isinstance(val, str):
        raise ValidationError(f"Invalid date: {val!r}")
    try:
        return date.fromisoformat(val[:10])
    except ValueError as e:
        raise ValidationError(f"Invalid date: {val!r}") from e


def parse_start_time(value: str) -> time:
    """Parse a daily wall-clock time such as ``05:00`` or ``05:00:30``."""
    match = _START_TIME_RE.match(value.strip())
    if not match:
        raise ValidationError(f"Invalid start_time {value!r}, expected HH:MM or HH:MM:SS")
    hours, minutes, seconds = match.groups()
    return time(int(hours), int(minutes), int(seconds or 0))


def local_today(now: datetime, tz: ZoneInfo) -> date:
    return ensure_aware(now).astimezone(tz).date()


def start_of_local_day(now: datetime, tz: ZoneInfo) -> datetime:
    return datetime.combine(local_today(now, tz), time(0, 0), tzinfo=tz)


def due_time_for(start_time: str, now: datetime, tz: ZoneInfo) -> datetime:
    """Today's occurrence of a subtask's scheduled start, in ``tz``."""
    return datetime.combine(local_today(now, tz), parse_start_time(start_time), tzinfo=tz)


def minutes_between(earlier: datetime, later: datetime) -> int:
    return int((ensure_aware(later) - ensure_aware(earlier)).total_seconds() // 60)


def add_months(dt: datetime, months: int) -> datetime:
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    # Clamp to the last day of the target month
    next_month = date(year + month // 12, month % 12 + 1, 1)
    last_day = (next_month - timedelta(days=1)).day
    return dt.replace(year=year, month=month, day=min(dt.day, last_day))


def next_run_after(duration: str, now: datetime) -> datetime:
    if duration == "weekly":
        return now + timedelta(days=7)
    if duration == "monthly":
        return add_months(now, 1)
    return now + timedelta(days=1)

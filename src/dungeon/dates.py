"""Day-boundary utilities.

A "day" is always a calendar date in the user's IANA timezone. Callers pass
``now`` and the timezone string explicitly; nothing here reads the clock
unless ``now`` is omitted.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dungeon.config import get_settings


def is_valid_timezone(name: str | None) -> bool:
    """True if ``name`` is a loadable IANA zone."""
    if not name:
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def resolve_timezone(name: str | None, default: str | None = None) -> ZoneInfo:
    """The user's zone; missing or unknown names fall back to ``default`` or the configured zone."""
    if is_valid_timezone(name):
        return ZoneInfo(name)
    return ZoneInfo(default or get_settings().default_timezone)


def as_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC (SQLite drops tzinfo on the way back)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def local_day(instant: datetime, tz: str | None, default: str | None = None) -> date:
    """Calendar date of ``instant`` in the user's timezone."""
    return as_utc(instant).astimezone(resolve_timezone(tz, default)).date()


def day_bounds_utc(day: date, tz: str | None, default: str | None = None) -> tuple[datetime, datetime]:
    """[start, end) of a local calendar day, expressed in UTC."""
    zone = resolve_timezone(tz, default)
    start = datetime.combine(day, time.min, tzinfo=zone)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def today(tz: str | None, now: datetime | None = None, default: str | None = None) -> date:
    """Today's local date for the user."""
    if now is None:
        now = datetime.now(timezone.utc)
    return local_day(now, tz, default)


def parse_date_only(value: str) -> date:
    """Parse a strict ``YYYY-MM-DD`` string."""
    if len(value) != 10:
        msg = f"Invalid date format: {value}. Expected YYYY-MM-DD"
        raise ValueError(msg)
    return date.fromisoformat(value)


def elapsed_minutes(start: datetime, end: datetime) -> int:
    """Whole minutes between two instants, never negative."""
    seconds = (as_utc(end) - as_utc(start)).total_seconds()
    if seconds <= 0:
        return 0
    return int(seconds // 60)

"""Shared datetime normalization and day bucketing helpers."""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Any

# Chat session timestamps below this are seconds, above it milliseconds.
_EPOCH_MS_THRESHOLD = 1e12


def ensure_utc(value: datetime) -> datetime:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def from_epoch(value: Any) -> datetime | None:
    """Convert a numeric epoch (seconds or milliseconds) into an aware UTC datetime."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    seconds = value / 1000.0 if value >= _EPOCH_MS_THRESHOLD else float(value)
    try:
        return datetime.fromtimestamp(seconds, timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def to_epoch_ms(value: datetime) -> float:
    return ensure_utc(value).timestamp() * 1000.0


def format_iso(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a trailing Z."""
    dt = ensure_utc(value)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def day_key(value: datetime) -> str:
    return ensure_utc(value).date().isoformat()


def start_of_day(value: datetime) -> datetime:
    dt = ensure_utc(value)
    return datetime.combine(dt.date(), time.min, tzinfo=timezone.utc)


def enumerate_days(start: datetime, end: datetime) -> list[str]:
    """Return every UTC day key from start's day through end's day, inclusive."""
    first: date = ensure_utc(start).date()
    last: date = ensure_utc(end).date()
    days: list[str] = []
    current = first
    while current <= last:
        days.append(current.isoformat())
        current += timedelta(days=1)
    return days


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

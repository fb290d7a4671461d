"""Billing-cycle arithmetic on naive UTC datetimes."""

import calendar
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (matches the DB columns)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix(ts: int | float | None) -> datetime | None:
    """Convert a Razorpay Unix timestamp to naive UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def to_unix(dt: datetime) -> int:
    return int(dt.replace(tzinfo=timezone.utc).timestamp())


def add_cycles(start: datetime, cycles: int = 1) -> datetime:
    """Advance ``start`` by whole monthly billing cycles.

    The day of month is clamped to the end of the target month, so
    Jan 31 + 1 cycle is Feb 28 (or 29).
    """
    month_index = start.month - 1 + cycles
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def later_of(*candidates: datetime | None) -> datetime | None:
    """Latest non-null datetime, or None when all are null."""
    present = [c for c in candidates if c is not None]
    return max(present) if present else None

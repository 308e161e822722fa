"""Datetime parsing and the clock collaborator.

Ledger timestamps are stored as naive UTC datetimes, matching the ``DATETIME``
column of the persisted schema.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol

import pendulum


class Clock(Protocol):
    """Source of backup timestamps."""

    def now(self) -> datetime: ...


class SystemClock:
    """Clock backed by the system's UTC time."""

    def now(self) -> datetime:
        return now_utc()


def parse_datetime(value: str | datetime, default_tz: str = "UTC") -> datetime:
    """Parse a lax datetime string into a strict timezone-aware datetime.

    Accepts various formats:
    - 2026-02-02 22:21:29.975359+00
    - 2026-02-02 22:21:29+00
    - 2026-02-02 22:21
    - 2026-02-02
    - ISO 8601 variants with T separator

    Missing timezone defaults to default_tz.
    Missing time components default to zeros.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            tz = pendulum.timezone(default_tz)
            value = value.replace(tzinfo=tz)  # type: ignore[arg-type]
        return value

    value_str = value.strip()
    if not value_str:
        raise ValueError("Empty datetime value")

    parsed = pendulum.parse(value_str, tz=default_tz, strict=False)
    if not isinstance(parsed, pendulum.DateTime):
        if not isinstance(parsed, pendulum.Date):
            raise ValueError(f"Not a datetime: {value!r}")
        # pendulum.parse returns Date for date-only strings
        parsed = pendulum.datetime(parsed.year, parsed.month, parsed.day, tz=default_tz)
    return parsed


def to_storage(dt: datetime) -> datetime:
    """Normalize a datetime to naive UTC for storage and comparison.

    Naive input is taken to already be UTC.
    """
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)

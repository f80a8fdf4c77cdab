# tasks/dates.py

"""
Calendar-date <-> epoch-millisecond conversions.

A due date is a calendar date stored as the instant of its midnight in the
session's timezone. `tz=None` means the process-local timezone.
"""

from __future__ import annotations

import re
import time
from datetime import date, datetime, timedelta, tzinfo

DATE_FORMAT_HINT = "YYYY-MM-DD"

_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_due_date(text: str, tz: tzinfo | None = None) -> int:
    """Parse `YYYY-MM-DD` into epoch ms at midnight. Raises ValueError on bad input."""
    raw = (text or "").strip()
    if not _DATE_RE.fullmatch(raw):
        raise ValueError(f"Invalid date: {text!r}")
    day = date.fromisoformat(raw)
    try:
        midnight = datetime(day.year, day.month, day.day, tzinfo=tz)
        if tz is None:
            midnight = midnight.astimezone()
        ms = int(midnight.timestamp() * 1000)
        # Near year 1 or 9999 the instant may not map back to a date.
        if format_due_date(ms, tz) != raw:
            raise ValueError(f"Date out of range: {text!r}")
    except (OverflowError, OSError) as e:
        raise ValueError(f"Date out of range: {text!r}") from e
    return ms


def format_due_date(ms: int, tz: tzinfo | None = None) -> str:
    return datetime.fromtimestamp(ms / 1000, tz).date().isoformat()


def default_due_date(tz: tzinfo | None = None) -> str:
    """Tomorrow, as the draft default for new tasks."""
    today = datetime.now(tz).date()
    return (today + timedelta(days=1)).isoformat()

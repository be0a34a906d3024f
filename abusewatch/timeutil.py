"""Timestamp helpers for report payloads and the rate-limit reset schedule."""
from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Optional


def parse_timestamp(value: object) -> Optional[datetime]:
    """Parse an ISO-8601 string or unix number into an aware UTC datetime.

    Returns None when the value can't be understood. Naive values are taken
    to be UTC, as the honeypots log in UTC.
    """
    if value is None or value == "":
        return None
    try:
        if isinstance(value, (int, float)):
            dt = datetime.fromtimestamp(float(value), tz=timezone.utc)
        else:
            text = str(value).strip().replace(" ", "T")
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            dt = datetime.fromisoformat(text)
    except (ValueError, OverflowError, OSError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso_utc(dt: datetime) -> str:
    """Whole-second ISO-8601 with a trailing ``Z``."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_timestamp(value: object, now: Optional[float] = None) -> str:
    """Normalise an event timestamp for the report API, falling back to now."""
    dt = parse_timestamp(value)
    if dt is None:
        dt = datetime.fromtimestamp(time.time() if now is None else now, tz=timezone.utc)
    return iso_utc(dt)


def next_utc_midnight(now: float) -> float:
    """Unix time of the first UTC midnight strictly after ``now``."""
    current = datetime.fromtimestamp(now, tz=timezone.utc)
    midnight = current.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
    return midnight.timestamp()

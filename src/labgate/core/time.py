"""
Time helpers.

Protocol timestamps are timezone-aware UTC datetimes. Browsers report `Date.now()`
style epoch milliseconds, so the wire layer accepts both ISO-8601 strings and epoch
numbers and normalizes them here.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def from_epoch(value: float) -> datetime:
    """Convert an epoch timestamp to an aware UTC datetime.

    Values above 1e11 are treated as milliseconds (browser clocks), others as seconds.
    """
    seconds = float(value) / 1000.0 if abs(float(value)) > 1e11 else float(value)
    return datetime.fromtimestamp(seconds, tz=timezone.utc)

"""Utilities for dealing with timestamps.

The market API expresses expirations as epoch milliseconds and validity
windows as ISO-8601 strings; the helpers below keep those conversions in one
place.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone


def now_utc() -> datetime:
    """Return the current UTC datetime with tzinfo."""

    return datetime.now(timezone.utc)


def to_epoch_millis(dt: datetime) -> int:
    """Convert an aware datetime to integer epoch milliseconds."""

    if dt.tzinfo is None:
        raise ValueError("Datetime must be timezone-aware before conversion")
    return int(dt.timestamp() * 1000)


def to_api_timestamp(dt: datetime) -> str:
    """Format ``dt`` the way the market API expects (``...Z`` suffix)."""

    if dt.tzinfo is None:
        raise ValueError("Datetime must be timezone-aware before conversion")
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_api_timestamp(value: str | None) -> datetime | None:
    """Parse an API timestamp, tolerating the ``Z`` suffix and missing values."""

    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def expires_in(seconds: float, *, now: datetime | None = None) -> datetime:
    """Return an aware datetime ``seconds`` after ``now``."""

    return (now or now_utc()) + timedelta(seconds=seconds)

"""
UTC helpers.

Audit steps, analyses and usage rows all carry timezone-aware UTC timestamps.
"""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as an aware datetime in UTC."""
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """
    Render a datetime as ISO 8601 with a Z suffix.

    Naive values are assumed to already be UTC (SQLite drops tzinfo on read).
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")

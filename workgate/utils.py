"""
Small shared helpers.
"""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how job timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def after_ms(milliseconds: float, start: datetime | None = None) -> datetime:
    """Timestamp `milliseconds` after `start` (default: now)."""
    return (start or utcnow()) + timedelta(milliseconds=milliseconds)

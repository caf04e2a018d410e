"""Timestamp helpers.

Timestamps are stored as naive UTC datetimes so that SQLite and PostgreSQL
``TIMESTAMP WITHOUT TIME ZONE`` columns compare consistently.
"""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def is_expired(last_accessed_at: datetime, max_inactive_seconds: int, now: datetime) -> bool:
    """True once ``max_inactive_seconds`` have strictly elapsed since ``last_accessed_at``."""
    return last_accessed_at + timedelta(seconds=max_inactive_seconds) < now

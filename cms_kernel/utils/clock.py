"""
Clock helpers.

Timestamps are stored as naive UTC so that SQLite and PostgreSQL compare
them the same way.
"""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_in(seconds: float) -> datetime:
    return utcnow() + timedelta(seconds=seconds)


def iso_now() -> str:
    """ISO-8601 timestamp with a trailing Z, as carried on event envelopes."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def to_naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)

"""Datetime helpers.

Timestamps are stored as naive UTC datetimes.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return current UTC time as a naive datetime."""
    return datetime.now(UTC).replace(tzinfo=None)


def epoch_millis(moment: datetime | None = None) -> int:
    """Milliseconds since the epoch for a naive UTC datetime (default: now)."""
    moment = moment or utcnow()
    return int(moment.replace(tzinfo=UTC).timestamp() * 1000)


def from_timestamp(timestamp: float) -> datetime:
    """Naive UTC datetime from a POSIX timestamp."""
    return datetime.fromtimestamp(timestamp, UTC).replace(tzinfo=None)

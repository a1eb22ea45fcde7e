"""Time helpers.

All persisted timestamps are naive UTC so they compare cleanly on every
backend (SQLite drops tzinfo on the way back).
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(UTC).replace(tzinfo=None)


def seconds_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds()

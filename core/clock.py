"""
core/clock.py -- Injectable UTC clock.

Every auth component takes a `clock` callable instead of reading the system
time directly, so tests can move time forward without sleeping.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Timezone-aware UTC now. The default clock for every component."""
    return datetime.now(timezone.utc)


def to_epoch(moment: datetime) -> float:
    return moment.timestamp()


def from_epoch(seconds: float | None) -> datetime | None:
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)

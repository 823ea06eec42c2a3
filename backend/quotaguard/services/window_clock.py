"""
Fixed-window clock helpers.

Every counter is bucketed by the UTC wall-clock boundary of its
granularity, not by a window sliding with the request. A burst straddling
a boundary can therefore exceed the nominal rate for a moment; that is
the accepted behaviour of fixed-window counting and the limits observed
by clients depend on it.

All functions are pure. Naive datetimes are interpreted as UTC.
"""

from __future__ import annotations

import datetime
import enum


class Granularity(str, enum.Enum):
    """Counting horizon of one tier, checked in declaration order."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"

    @property
    def seconds(self) -> int:
        return _WINDOW_SECONDS[self]


_WINDOW_SECONDS = {
    Granularity.MINUTE: 60,
    Granularity.HOUR: 3_600,
    Granularity.DAY: 86_400,
}

GRANULARITIES: tuple[Granularity, ...] = (
    Granularity.MINUTE,
    Granularity.HOUR,
    Granularity.DAY,
)


def utcnow() -> datetime.datetime:
    """Current time as an aware UTC datetime."""
    return datetime.datetime.now(datetime.timezone.utc)


def as_utc(now: datetime.datetime) -> datetime.datetime:
    """Normalize to aware UTC. SQLite hands back naive values, all stored as UTC."""
    if now.tzinfo is None:
        return now.replace(tzinfo=datetime.timezone.utc)
    return now.astimezone(datetime.timezone.utc)


def window_start(now: datetime.datetime, granularity: Granularity) -> datetime.datetime:
    """Floor a timestamp to the start of its minute, hour or day (UTC)."""
    now = as_utc(now)
    if granularity == Granularity.MINUTE:
        return now.replace(second=0, microsecond=0)
    if granularity == Granularity.HOUR:
        return now.replace(minute=0, second=0, microsecond=0)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def window_reset(now: datetime.datetime, granularity: Granularity) -> datetime.datetime:
    """Boundary at which the current window rolls over."""
    return window_start(now, granularity) + datetime.timedelta(seconds=granularity.seconds)


def retry_after(now: datetime.datetime, granularity: Granularity) -> int:
    """
    Whole seconds until the next boundary, in 1..window length.

    Second 58 of a minute yields 2; exactly on a boundary yields the
    full window.
    """
    epoch = int(as_utc(now).timestamp())
    return granularity.seconds - (epoch % granularity.seconds)


def reset_epoch(now: datetime.datetime, granularity: Granularity) -> int:
    """Unix timestamp of window_reset(), as sent in response headers."""
    return int(window_reset(now, granularity).timestamp())

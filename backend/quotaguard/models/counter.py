"""
Fixed-window request counter model.

Each row is the request count for one caller on one endpoint in one
time window. Composite PK: (identifier, endpoint, granularity,
window_start), so there is at most one row per bucket.

Time buckets (UTC):
  • 'minute' — floor to current minute
  • 'hour'   — floor to current hour
  • 'day'    — floor to midnight

Rows are only ever written through INSERT … ON CONFLICT DO UPDATE
(request_count + 1), which keeps concurrent increments exact without
external locks. The retention sweeper deletes stale windows.
"""

import datetime

from sqlalchemy import DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from quotaguard.core.database import Base

# Width of the identifier and endpoint key columns
COUNTER_KEY_LENGTH = 255


class RateLimitCounter(Base):
    """Per-caller, per-endpoint, per-window request counter."""

    __tablename__ = "rate_limit_counters"

    identifier: Mapped[str] = mapped_column(
        String(COUNTER_KEY_LENGTH),
        primary_key=True,
    )
    endpoint: Mapped[str] = mapped_column(
        String(COUNTER_KEY_LENGTH),
        primary_key=True,
    )
    granularity: Mapped[str] = mapped_column(
        String(10),
        primary_key=True,
    )
    window_start: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        primary_key=True,
    )
    request_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    __table_args__ = (
        # Sweeper deletes by (granularity, window_start < cutoff)
        Index("ix_rate_limit_counters_sweep", "granularity", "window_start"),
    )

    def __repr__(self) -> str:
        return (
            f"<RateLimitCounter id={self.identifier!r} "
            f"{self.granularity}@{self.window_start:%Y-%m-%dT%H:%M} "
            f"count={self.request_count}>"
        )

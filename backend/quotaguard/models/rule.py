"""
Rate rule model — administrator-defined limits.

A rule applies to callers of one identifier type (user / ip / api_key),
or to every caller holding a given role (identifier_type = 'role'), on
endpoints matching endpoint_pattern ("*" wildcard, anchored).

NULL in a requests_per_* column means "no limit for that tier" once the
rule is selected; it does NOT fall back to the built-in default.
"""

import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String
from sqlalchemy.sql import func
from sqlalchemy.orm import Mapped, mapped_column

from quotaguard.core.database import Base


class RateLimitRule(Base):
    """One prioritized rate rule."""

    __tablename__ = "rate_rules"

    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True,
    )
    name: Mapped[str] = mapped_column(
        String(200), nullable=False,
    )
    endpoint_pattern: Mapped[str] = mapped_column(
        String(255), nullable=False, default="*", server_default="*",
    )
    identifier_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default="ip", server_default="ip",
    )
    role: Mapped[str | None] = mapped_column(
        String(100), nullable=True,
    )
    requests_per_minute: Mapped[int | None] = mapped_column(Integer, nullable=True)
    requests_per_hour: Mapped[int | None] = mapped_column(Integer, nullable=True)
    requests_per_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0",
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default="true",
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_rate_rules_active_priority", "is_active", "priority"),
    )

    def __repr__(self) -> str:
        return (
            f"<RateLimitRule id={self.id} name={self.name!r} "
            f"pattern={self.endpoint_pattern!r} priority={self.priority}>"
        )

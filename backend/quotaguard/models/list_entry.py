"""
Allow/deny list model.

Unique per (identifier, identifier_type, list_kind). The identifier is
stored without its class prefix: "1.2.3.4", not "ip:1.2.3.4".

An entry whose expires_at is in the past is treated as absent by every
read and is eventually purged by the retention sweeper.
"""

import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import Mapped, mapped_column

from quotaguard.core.database import Base


class RateListEntry(Base):
    """Allow- or deny-list override for one caller."""

    __tablename__ = "rate_list_entries"

    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True,
    )
    identifier: Mapped[str] = mapped_column(
        String(255), nullable=False,
    )
    identifier_type: Mapped[str] = mapped_column(
        String(20), nullable=False,
    )
    list_kind: Mapped[str] = mapped_column(
        String(10), nullable=False,
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint(
            "identifier", "identifier_type", "list_kind",
            name="uq_rate_list_entries_identifier_type_kind",
        ),
        Index("ix_rate_list_entries_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<RateListEntry id={self.id} {self.list_kind} "
            f"{self.identifier_type}:{self.identifier}>"
        )

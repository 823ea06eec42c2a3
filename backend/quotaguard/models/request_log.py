"""
API request log model.

One row per request that passed the limiter (admitted or allow-listed).
Analytics read from here; the limiter itself only appends.

Security notes:
  • Raw API keys are NEVER stored — only the first 12 characters, for
    identification in the analytics UI.
"""

import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from quotaguard.core.database import Base


class ApiRequestLog(Base):
    """One logged API call."""

    __tablename__ = "api_request_logs"

    # BIGINT on Postgres; SQLite only autoincrements INTEGER PRIMARY KEY
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False)
    api_key_prefix: Mapped[str | None] = mapped_column(String(12), nullable=True)
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_api_request_logs_created_at", "created_at"),
        Index("ix_api_request_logs_user_id", "user_id"),
        Index("ix_api_request_logs_endpoint", "endpoint"),
    )

    def __repr__(self) -> str:
        return f"<ApiRequestLog id={self.id} {self.method} {self.endpoint}>"

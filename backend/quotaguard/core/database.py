"""
Async database engine, session factory, and ORM base for the limiter tables.

  • PostgreSQL (asyncpg) in production: counters rely on its
    INSERT … ON CONFLICT DO UPDATE.
  • SQLite (aiosqlite) is accepted for local runs and tests; the same
    upsert syntax exists there.
  • The limiter is process-wide, so stores open one short-lived session
    per operation from async_session_factory. There is no request-scoped
    session dependency.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from quotaguard.core.config import settings


def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Engine for DATABASE_URL; SQLite connections may be used from any thread."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_async_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)

# expire_on_commit=False: stores map rows to records after commit
async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Declarative base shared by counters, rules, list entries and the request log."""

"""
SQLAlchemy-backed stores (PostgreSQL in production, SQLite in tests).

Counter correctness rests on one statement per row:

    INSERT … VALUES (…, request_count = 1)
    ON CONFLICT (identifier, endpoint, granularity, window_start)
    DO UPDATE SET request_count = request_count + 1

The database serializes conflicting upserts on the same key, so N
concurrent increments always leave exactly N — no read-then-write, no
application-level lock. The three tiers are written in one transaction.

Each operation opens its own short-lived session; the limiter is
process-wide and must not share a request-scoped session.
Driver and connection errors are re-raised as StoreUnavailable.
"""

from __future__ import annotations

import datetime
import hashlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import delete, func, literal_column, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotaguard.models.counter import COUNTER_KEY_LENGTH, RateLimitCounter
from quotaguard.models.list_entry import RateListEntry
from quotaguard.models.request_log import ApiRequestLog
from quotaguard.models.rule import RateLimitRule
from quotaguard.services.errors import DuplicateListEntry, StoreUnavailable
from quotaguard.services.records import (
    IdentityClass,
    ListEntry,
    ListKind,
    RateRule,
    RequestLogEntry,
    RuleTarget,
    UsageSummary,
)
from quotaguard.services.window_clock import (
    GRANULARITIES,
    Granularity,
    as_utc,
    utcnow,
    window_start,
)
from quotaguard.stores.base import (
    CounterStore,
    ListStore,
    PolicyStore,
    RequestLogSink,
    StoreSet,
)

logger = logging.getLogger(__name__)


class _SqlStore:
    """Shared session handling for every SQL store."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dialect: str = "postgresql",
    ) -> None:
        self._session_factory = session_factory
        self._dialect = dialect

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("%s store error: %s", type(self).__name__, exc)
            raise StoreUnavailable(str(exc)) from exc

    def _insert(self, model):  # type: ignore[no-untyped-def]
        """Dialect-specific INSERT supporting on_conflict_do_update."""
        if self._dialect == "sqlite":
            return sqlite_insert(model)
        return pg_insert(model)


# ── Counters ────────────────────────────────────────────────
def counter_key(value: str) -> str:
    """
    Fit an identifier or endpoint into a counter key column.

    Values within the column width are stored as-is. Longer ones keep a
    readable prefix followed by "#" and the SHA-256 of the full value, so
    distinct long values never share a counter and never overflow the column.
    """
    if len(value) <= COUNTER_KEY_LENGTH:
        return value
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return value[: COUNTER_KEY_LENGTH - len(digest) - 1] + "#" + digest


class SqlCounterStore(_SqlStore, CounterStore):
    async def get(
        self,
        identifier: str,
        endpoint: str,
        granularity: Granularity,
        now: datetime.datetime,
    ) -> int:
        """Read current request count for a caller/endpoint/window. 0 if no row."""
        stmt = select(RateLimitCounter.request_count).where(
            RateLimitCounter.identifier == counter_key(identifier),
            RateLimitCounter.endpoint == counter_key(endpoint),
            RateLimitCounter.granularity == granularity.value,
            RateLimitCounter.window_start == window_start(now, granularity),
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            count = result.scalar_one_or_none()
        return count if count is not None else 0

    async def increment_all(
        self,
        identifier: str,
        endpoint: str,
        now: datetime.datetime,
    ) -> None:
        """Atomically increment the minute, hour and day counters."""
        identifier, endpoint = counter_key(identifier), counter_key(endpoint)
        async with self._session() as session:
            for granularity in GRANULARITIES:
                stmt = self._insert(RateLimitCounter).values(
                    identifier=identifier,
                    endpoint=endpoint,
                    granularity=granularity.value,
                    window_start=window_start(now, granularity),
                    request_count=1,
                ).on_conflict_do_update(
                    index_elements=["identifier", "endpoint", "granularity", "window_start"],
                    set_={"request_count": RateLimitCounter.request_count + 1},
                )
                await session.execute(stmt)
            await session.commit()

    async def purge_before(
        self,
        granularity: Granularity,
        cutoff: datetime.datetime,
    ) -> int:
        stmt = delete(RateLimitCounter).where(
            RateLimitCounter.granularity == granularity.value,
            RateLimitCounter.window_start < cutoff,
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount or 0

    async def reset(self, identifier: str | None = None) -> int:
        stmt = delete(RateLimitCounter)
        if identifier is not None:
            stmt = stmt.where(RateLimitCounter.identifier == counter_key(identifier))
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount or 0


# ── Rules ───────────────────────────────────────────────────
_RULE_FIELDS = (
    "name",
    "endpoint_pattern",
    "identifier_type",
    "role",
    "requests_per_minute",
    "requests_per_hour",
    "requests_per_day",
    "priority",
    "is_active",
)


def _to_rule(row: RateLimitRule) -> RateRule:
    return RateRule(
        id=row.id,
        name=row.name,
        endpoint_pattern=row.endpoint_pattern,
        identifier_type=RuleTarget(row.identifier_type),
        role=row.role,
        requests_per_minute=row.requests_per_minute,
        requests_per_hour=row.requests_per_hour,
        requests_per_day=row.requests_per_day,
        priority=row.priority,
        is_active=row.is_active,
    )


def _rule_columns(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - set(_RULE_FIELDS)
    if unknown:
        raise TypeError(f"Unknown rule fields: {sorted(unknown)}")
    values = dict(fields)
    if isinstance(values.get("identifier_type"), RuleTarget):
        values["identifier_type"] = values["identifier_type"].value
    return values


class SqlPolicyStore(_SqlStore, PolicyStore):
    async def active_rules_for(self, identity_class: IdentityClass) -> list[RateRule]:
        stmt = (
            select(RateLimitRule)
            .where(
                RateLimitRule.is_active.is_(True),
                RateLimitRule.identifier_type.in_(
                    [identity_class.value, RuleTarget.ROLE.value]
                ),
            )
            .order_by(RateLimitRule.priority.desc(), RateLimitRule.id.asc())
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_rule(row) for row in rows]

    async def list_rules(self) -> list[RateRule]:
        stmt = select(RateLimitRule).order_by(
            RateLimitRule.priority.desc(), RateLimitRule.name.asc(),
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_rule(row) for row in rows]

    async def get_rule(self, rule_id: int) -> RateRule | None:
        async with self._session() as session:
            row = await session.get(RateLimitRule, rule_id)
            return _to_rule(row) if row is not None else None

    async def create_rule(self, **fields: Any) -> RateRule:
        row = RateLimitRule(**_rule_columns(fields))
        async with self._session() as session:
            session.add(row)
            await session.commit()
            return _to_rule(row)

    async def update_rule(self, rule_id: int, **changes: Any) -> RateRule | None:
        values = _rule_columns(changes)
        async with self._session() as session:
            row = await session.get(RateLimitRule, rule_id)
            if row is None:
                return None
            for field, value in values.items():
                setattr(row, field, value)
            await session.commit()
            return _to_rule(row)

    async def delete_rule(self, rule_id: int) -> bool:
        async with self._session() as session:
            row = await session.get(RateLimitRule, rule_id)
            if row is None:
                return False
            await session.delete(row)
            await session.commit()
        return True


# ── Allow / deny list ───────────────────────────────────────
def _to_entry(row: RateListEntry) -> ListEntry:
    return ListEntry(
        id=row.id,
        identifier=row.identifier,
        identifier_type=IdentityClass(row.identifier_type),
        list_kind=ListKind(row.list_kind),
        reason=row.reason,
        expires_at=as_utc(row.expires_at) if row.expires_at else None,
        created_by=row.created_by,
        created_at=as_utc(row.created_at) if row.created_at else None,
    )


class SqlListStore(_SqlStore, ListStore):
    async def find_active(
        self,
        identifier: str,
        identifier_type: IdentityClass,
        list_kind: ListKind,
        now: datetime.datetime,
    ) -> ListEntry | None:
        stmt = (
            select(RateListEntry)
            .where(
                RateListEntry.identifier == identifier,
                RateListEntry.identifier_type == identifier_type.value,
                RateListEntry.list_kind == list_kind.value,
                or_(
                    RateListEntry.expires_at.is_(None),
                    RateListEntry.expires_at > now,
                ),
            )
            .limit(1)
        )
        async with self._session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_entry(row) if row is not None else None

    async def add_entry(
        self,
        identifier: str,
        identifier_type: IdentityClass,
        list_kind: ListKind,
        *,
        reason: str | None = None,
        expires_at: datetime.datetime | None = None,
        created_by: str | None = None,
    ) -> ListEntry:
        row = RateListEntry(
            identifier=identifier,
            identifier_type=identifier_type.value,
            list_kind=list_kind.value,
            reason=reason,
            expires_at=as_utc(expires_at) if expires_at else None,
            created_by=created_by,
            created_at=utcnow(),
        )
        async with self._session() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateListEntry(
                    f"{list_kind.value} entry for {identifier_type.value} "
                    f"{identifier!r} already exists"
                ) from exc
            return _to_entry(row)

    async def remove_entry(self, entry_id: int) -> bool:
        stmt = delete(RateListEntry).where(RateListEntry.id == entry_id)
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return bool(result.rowcount)

    async def list_entries(self, list_kind: ListKind | None = None) -> list[ListEntry]:
        stmt = select(RateListEntry).order_by(
            RateListEntry.created_at.desc(), RateListEntry.id.desc(),
        )
        if list_kind is not None:
            stmt = stmt.where(RateListEntry.list_kind == list_kind.value)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_entry(row) for row in rows]

    async def purge_expired(self, now: datetime.datetime) -> int:
        stmt = delete(RateListEntry).where(
            RateListEntry.expires_at.is_not(None),
            RateListEntry.expires_at <= now,
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount or 0


# ── Request log ─────────────────────────────────────────────
class SqlRequestLog(_SqlStore, RequestLogSink):
    async def append(self, entry: RequestLogEntry) -> None:
        row = ApiRequestLog(
            user_id=entry.user_id,
            ip_address=entry.ip_address,
            api_key_prefix=entry.api_key_prefix,
            endpoint=entry.endpoint[:255],
            method=entry.method,
            user_agent=entry.user_agent[:500] if entry.user_agent else None,
            created_at=entry.created_at,
        )
        async with self._session() as session:
            session.add(row)
            await session.commit()

    async def purge_before(self, cutoff: datetime.datetime) -> int:
        stmt = delete(ApiRequestLog).where(ApiRequestLog.created_at < cutoff)
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount or 0

    def _hour_bucket(self):  # type: ignore[no-untyped-def]
        if self._dialect == "sqlite":
            return func.strftime("%Y-%m-%d %H:00:00", ApiRequestLog.created_at)
        # Literal unit: a bound parameter would differ between SELECT and GROUP BY
        return func.date_trunc(literal_column("'hour'"), ApiRequestLog.created_at)

    async def summarize(self, since: datetime.datetime, top_n: int = 10) -> UsageSummary:
        """
        Aggregate the request log in SQL — no Python-side loops over rows.

        SQL (per part):
          SELECT COUNT(*), COUNT(DISTINCT user_id), COUNT(DISTINCT ip_address)
          SELECT endpoint, COUNT(*) … GROUP BY endpoint ORDER BY 2 DESC LIMIT n
          SELECT user_id,  COUNT(*) … GROUP BY user_id  ORDER BY 2 DESC LIMIT n
          SELECT date_trunc('hour', created_at), COUNT(*) … GROUP BY 1 ORDER BY 1
        """
        in_range = ApiRequestLog.created_at >= since
        request_count = func.count().label("request_count")
        hour = self._hour_bucket().label("hour")

        totals_stmt = select(
            func.count(),
            func.count(ApiRequestLog.user_id.distinct()),
            func.count(ApiRequestLog.ip_address.distinct()),
        ).where(in_range)
        endpoints_stmt = (
            select(ApiRequestLog.endpoint, request_count)
            .where(in_range)
            .group_by(ApiRequestLog.endpoint)
            .order_by(request_count.desc())
            .limit(top_n)
        )
        users_stmt = (
            select(ApiRequestLog.user_id, request_count)
            .where(in_range, ApiRequestLog.user_id.is_not(None))
            .group_by(ApiRequestLog.user_id)
            .order_by(request_count.desc())
            .limit(top_n)
        )
        hours_stmt = (
            select(hour, request_count)
            .where(in_range)
            .group_by(hour)
            .order_by(hour)
        )

        async with self._session() as session:
            total, unique_users, unique_ips = (await session.execute(totals_stmt)).one()
            endpoints = (await session.execute(endpoints_stmt)).all()
            users = (await session.execute(users_stmt)).all()
            hours = (await session.execute(hours_stmt)).all()

        return UsageSummary(
            total_requests=total,
            unique_users=unique_users,
            unique_ips=unique_ips,
            top_endpoints=[(row.endpoint, row.request_count) for row in endpoints],
            top_users=[(row.user_id, row.request_count) for row in users],
            by_hour=[(_parse_hour(row.hour), row.request_count) for row in hours],
        )


def _parse_hour(value: datetime.datetime | str) -> datetime.datetime:
    # SQLite's strftime returns text; Postgres returns a timestamp.
    if isinstance(value, str):
        value = datetime.datetime.fromisoformat(value)
    return as_utc(value)


def build_sql_stores(
    session_factory: async_sessionmaker[AsyncSession],
    dialect: str = "postgresql",
) -> StoreSet:
    return StoreSet(
        counters=SqlCounterStore(session_factory, dialect),
        policies=SqlPolicyStore(session_factory, dialect),
        lists=SqlListStore(session_factory, dialect),
        request_log=SqlRequestLog(session_factory, dialect),
    )

"""
Store interfaces the rate limiter depends on.

The limiter only ever talks to these abstractions, so the PostgreSQL
implementation (stores/sql.py) and the in-process one (stores/memory.py)
are interchangeable.

Contract shared by every implementation:
  • Counter increments MUST be atomic per row. Concurrent increment_all
    calls for the same key never lose an update.
  • Infrastructure faults surface as StoreUnavailable. Nothing else
    escapes, so the limiter can apply its fail-open/closed policy.
  • Deletes (purge_*, reset) are idempotent.
"""

from __future__ import annotations

import datetime
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from quotaguard.services.records import (
    IdentityClass,
    ListEntry,
    ListKind,
    RateRule,
    RequestLogEntry,
    UsageSummary,
)
from quotaguard.services.window_clock import Granularity


class CounterStore(ABC):
    """Fixed-window request counters keyed by (identifier, endpoint, tier, window)."""

    @abstractmethod
    async def get(
        self,
        identifier: str,
        endpoint: str,
        granularity: Granularity,
        now: datetime.datetime,
    ) -> int:
        """Count for the window containing `now`; 0 if no row exists."""

    @abstractmethod
    async def increment_all(
        self,
        identifier: str,
        endpoint: str,
        now: datetime.datetime,
    ) -> None:
        """Atomically add one to the minute, hour and day counters."""

    @abstractmethod
    async def purge_before(
        self,
        granularity: Granularity,
        cutoff: datetime.datetime,
    ) -> int:
        """Delete counters of one tier whose window started before cutoff."""

    @abstractmethod
    async def reset(self, identifier: str | None = None) -> int:
        """Delete every counter for one identifier, or all counters."""


class PolicyStore(ABC):
    """Administrator-defined rate rules."""

    @abstractmethod
    async def active_rules_for(self, identity_class: IdentityClass) -> list[RateRule]:
        """Active rules targeting the class or any role, by (priority desc, id asc)."""

    @abstractmethod
    async def list_rules(self) -> list[RateRule]: ...

    @abstractmethod
    async def get_rule(self, rule_id: int) -> RateRule | None: ...

    @abstractmethod
    async def create_rule(self, **fields: Any) -> RateRule: ...

    @abstractmethod
    async def update_rule(self, rule_id: int, **changes: Any) -> RateRule | None:
        """Apply changes; None if the rule does not exist."""

    @abstractmethod
    async def delete_rule(self, rule_id: int) -> bool: ...


class ListStore(ABC):
    """Allow/deny overrides keyed by (identifier, identifier_type, list_kind)."""

    @abstractmethod
    async def find_active(
        self,
        identifier: str,
        identifier_type: IdentityClass,
        list_kind: ListKind,
        now: datetime.datetime,
    ) -> ListEntry | None:
        """Unexpired entry, or None. Expired entries behave as absent."""

    @abstractmethod
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
        """Insert; raises DuplicateListEntry if the key is taken."""

    @abstractmethod
    async def remove_entry(self, entry_id: int) -> bool: ...

    @abstractmethod
    async def list_entries(self, list_kind: ListKind | None = None) -> list[ListEntry]: ...

    @abstractmethod
    async def purge_expired(self, now: datetime.datetime) -> int: ...


class RequestLogSink(ABC):
    """Append-only request log. Summaries are read by the analytics endpoint."""

    @abstractmethod
    async def append(self, entry: RequestLogEntry) -> None: ...

    @abstractmethod
    async def purge_before(self, cutoff: datetime.datetime) -> int: ...

    @abstractmethod
    async def summarize(self, since: datetime.datetime, top_n: int = 10) -> UsageSummary: ...


@dataclass(frozen=True, slots=True)
class StoreSet:
    """The four collaborators a RateLimiter is built from."""

    counters: CounterStore
    policies: PolicyStore
    lists: ListStore
    request_log: RequestLogSink

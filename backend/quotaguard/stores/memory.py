"""
In-process store implementations.

Used when STORE_BACKEND=memory (single-process deployments, local dev)
and throughout the test suite. State lives in plain dicts guarded by a
threading.Lock; the lock is never held across an await, so it is safe
both on the event loop and from worker threads.
"""

from __future__ import annotations

import collections
import dataclasses
import datetime
import itertools
import threading
from typing import Any

from quotaguard.services.errors import DuplicateListEntry
from quotaguard.services.policy import rule_sort_key
from quotaguard.services.records import (
    IdentityClass,
    ListEntry,
    ListKind,
    RateRule,
    RequestLogEntry,
    RuleTarget,
    UsageSummary,
)
from quotaguard.services.window_clock import GRANULARITIES, Granularity, as_utc, window_start
from quotaguard.stores.base import (
    CounterStore,
    ListStore,
    PolicyStore,
    RequestLogSink,
    StoreSet,
)

CounterKey = tuple[str, str, Granularity, datetime.datetime]


class InMemoryCounterStore(CounterStore):
    def __init__(self) -> None:
        self._counts: dict[CounterKey, int] = {}
        self._lock = threading.Lock()

    async def get(self, identifier, endpoint, granularity, now) -> int:
        key = (identifier, endpoint, granularity, window_start(now, granularity))
        with self._lock:
            return self._counts.get(key, 0)

    async def increment_all(self, identifier, endpoint, now) -> None:
        with self._lock:
            for granularity in GRANULARITIES:
                key = (identifier, endpoint, granularity, window_start(now, granularity))
                self._counts[key] = self._counts.get(key, 0) + 1

    async def purge_before(self, granularity, cutoff) -> int:
        cutoff = as_utc(cutoff)
        with self._lock:
            stale = [
                key for key in self._counts
                if key[2] == granularity and key[3] < cutoff
            ]
            for key in stale:
                del self._counts[key]
        return len(stale)

    async def reset(self, identifier: str | None = None) -> int:
        with self._lock:
            if identifier is None:
                removed = len(self._counts)
                self._counts.clear()
                return removed
            stale = [key for key in self._counts if key[0] == identifier]
            for key in stale:
                del self._counts[key]
        return len(stale)


class InMemoryPolicyStore(PolicyStore):
    def __init__(self, rules: list[RateRule] | None = None) -> None:
        self._rules: dict[int, RateRule] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        for rule in rules or []:
            self._rules[rule.id] = rule
        if self._rules:
            self._ids = itertools.count(max(self._rules) + 1)

    async def active_rules_for(self, identity_class: IdentityClass) -> list[RateRule]:
        wanted = {identity_class.value, RuleTarget.ROLE.value}
        with self._lock:
            rules = [
                rule for rule in self._rules.values()
                if rule.is_active and rule.identifier_type.value in wanted
            ]
        return sorted(rules, key=rule_sort_key)

    async def list_rules(self) -> list[RateRule]:
        with self._lock:
            rules = list(self._rules.values())
        return sorted(rules, key=lambda rule: (-rule.priority, rule.name))

    async def get_rule(self, rule_id: int) -> RateRule | None:
        with self._lock:
            return self._rules.get(rule_id)

    async def create_rule(self, **fields: Any) -> RateRule:
        with self._lock:
            rule = RateRule(id=next(self._ids), **fields)
            self._rules[rule.id] = rule
        return rule

    async def update_rule(self, rule_id: int, **changes: Any) -> RateRule | None:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                return None
            rule = dataclasses.replace(rule, **changes)
            self._rules[rule_id] = rule
        return rule

    async def delete_rule(self, rule_id: int) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None


class InMemoryListStore(ListStore):
    def __init__(self) -> None:
        self._entries: dict[int, ListEntry] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    async def find_active(self, identifier, identifier_type, list_kind, now) -> ListEntry | None:
        with self._lock:
            for entry in self._entries.values():
                if (
                    entry.identifier == identifier
                    and entry.identifier_type == identifier_type
                    and entry.list_kind == list_kind
                    and entry.is_active(now)
                ):
                    return entry
        return None

    async def add_entry(
        self,
        identifier,
        identifier_type,
        list_kind,
        *,
        reason=None,
        expires_at=None,
        created_by=None,
    ) -> ListEntry:
        with self._lock:
            for entry in self._entries.values():
                if (entry.identifier, entry.identifier_type, entry.list_kind) == (
                    identifier, identifier_type, list_kind,
                ):
                    raise DuplicateListEntry(
                        f"{list_kind.value} entry for {identifier_type.value} "
                        f"{identifier!r} already exists"
                    )
            entry = ListEntry(
                id=next(self._ids),
                identifier=identifier,
                identifier_type=identifier_type,
                list_kind=list_kind,
                reason=reason,
                expires_at=as_utc(expires_at) if expires_at else None,
                created_by=created_by,
                created_at=datetime.datetime.now(datetime.timezone.utc),
            )
            self._entries[entry.id] = entry
        return entry

    async def remove_entry(self, entry_id: int) -> bool:
        with self._lock:
            return self._entries.pop(entry_id, None) is not None

    async def list_entries(self, list_kind: ListKind | None = None) -> list[ListEntry]:
        with self._lock:
            entries = [
                entry for entry in self._entries.values()
                if list_kind is None or entry.list_kind == list_kind
            ]
        return sorted(entries, key=lambda entry: entry.id, reverse=True)

    async def purge_expired(self, now) -> int:
        with self._lock:
            expired = [
                entry_id for entry_id, entry in self._entries.items()
                if not entry.is_active(now)
            ]
            for entry_id in expired:
                del self._entries[entry_id]
        return len(expired)


class InMemoryRequestLog(RequestLogSink):
    def __init__(self) -> None:
        self.entries: list[RequestLogEntry] = []
        self._lock = threading.Lock()

    async def append(self, entry: RequestLogEntry) -> None:
        with self._lock:
            self.entries.append(entry)

    async def purge_before(self, cutoff) -> int:
        cutoff = as_utc(cutoff)
        with self._lock:
            kept = [entry for entry in self.entries if as_utc(entry.created_at) >= cutoff]
            removed = len(self.entries) - len(kept)
            self.entries = kept
        return removed

    async def summarize(self, since, top_n: int = 10) -> UsageSummary:
        since = as_utc(since)
        with self._lock:
            window = [entry for entry in self.entries if as_utc(entry.created_at) >= since]

        endpoints = collections.Counter(entry.endpoint for entry in window)
        users = collections.Counter(entry.user_id for entry in window if entry.user_id)
        hours = collections.Counter(
            window_start(entry.created_at, Granularity.HOUR) for entry in window
        )
        return UsageSummary(
            total_requests=len(window),
            unique_users=len(users),
            unique_ips=len({entry.ip_address for entry in window}),
            top_endpoints=endpoints.most_common(top_n),
            top_users=users.most_common(top_n),
            by_hour=sorted(hours.items()),
        )


def build_memory_stores(rules: list[RateRule] | None = None) -> StoreSet:
    return StoreSet(
        counters=InMemoryCounterStore(),
        policies=InMemoryPolicyStore(rules),
        lists=InMemoryListStore(),
        request_log=InMemoryRequestLog(),
    )

"""
Typed records passed between the limiter and its stores.

These are plain frozen dataclasses, independent of SQLAlchemy, so that the
in-memory stores and the pure policy resolver never touch ORM state.
"""

from __future__ import annotations

import datetime
import enum
from dataclasses import dataclass, field

from quotaguard.services.window_clock import Granularity, as_utc


class IdentityClass(str, enum.Enum):
    """How a caller was identified, in priority order."""

    API_KEY = "api_key"
    USER = "user"
    IP = "ip"


class RuleTarget(str, enum.Enum):
    """Which callers a rule applies to."""

    USER = "user"
    IP = "ip"
    API_KEY = "api_key"
    ROLE = "role"


class ListKind(str, enum.Enum):
    ALLOW = "allow"
    DENY = "deny"


_VALUE_PREFIX = {
    IdentityClass.API_KEY: "key:",
    IdentityClass.USER: "user:",
    IdentityClass.IP: "ip:",
}


@dataclass(frozen=True, slots=True)
class Identity:
    """Resolved caller key, e.g. ``ip:1.2.3.4`` with class IP."""

    value: str
    id_class: IdentityClass

    @classmethod
    def build(cls, id_class: IdentityClass, raw: str) -> Identity:
        return cls(value=f"{_VALUE_PREFIX[id_class]}{raw}", id_class=id_class)

    @property
    def bare(self) -> str:
        """Value without its class prefix, as stored in list entries."""
        return self.value.removeprefix(_VALUE_PREFIX[self.id_class])

    @property
    def is_anonymous(self) -> bool:
        return self.id_class is IdentityClass.IP


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated session state supplied by the host's auth layer."""

    user_id: str
    role: str | None = None


@dataclass(frozen=True, slots=True)
class RateRule:
    """Administrator-defined limits for a set of endpoints and callers."""

    id: int
    name: str
    endpoint_pattern: str = "*"
    identifier_type: RuleTarget = RuleTarget.IP
    role: str | None = None
    requests_per_minute: int | None = None
    requests_per_hour: int | None = None
    requests_per_day: int | None = None
    priority: int = 0
    is_active: bool = True


@dataclass(frozen=True, slots=True)
class Limits:
    """Effective per-tier limits; None means unlimited for that tier."""

    per_minute: int | None
    per_hour: int | None
    per_day: int | None

    def for_granularity(self, granularity: Granularity) -> int | None:
        if granularity == Granularity.MINUTE:
            return self.per_minute
        if granularity == Granularity.HOUR:
            return self.per_hour
        return self.per_day


@dataclass(frozen=True, slots=True)
class DefaultLimits:
    """Fallback limits when no rule matches, split by caller kind."""

    anonymous: Limits = Limits(30, 500, 5_000)
    authenticated: Limits = Limits(60, 1_000, 10_000)


@dataclass(frozen=True, slots=True)
class ListEntry:
    id: int
    identifier: str
    identifier_type: IdentityClass
    list_kind: ListKind
    reason: str | None = None
    expires_at: datetime.datetime | None = None
    created_by: str | None = None
    created_at: datetime.datetime | None = None

    def is_active(self, now: datetime.datetime) -> bool:
        return self.expires_at is None or as_utc(self.expires_at) > as_utc(now)


@dataclass(frozen=True, slots=True)
class RequestLogEntry:
    endpoint: str
    method: str
    ip_address: str
    created_at: datetime.datetime
    user_id: str | None = None
    api_key_prefix: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True, slots=True)
class UsageSummary:
    """Request-log aggregates for the analytics endpoint."""

    total_requests: int
    unique_users: int
    unique_ips: int
    top_endpoints: list[tuple[str, int]] = field(default_factory=list)
    top_users: list[tuple[str, int]] = field(default_factory=list)
    by_hour: list[tuple[datetime.datetime, int]] = field(default_factory=list)

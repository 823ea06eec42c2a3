"""
Rate limiter service — enforcement engine and header/status reporter.

Per request:

    ListCheck ── deny ──────────────→ AccessDenied (403), nothing counted
        │
        ├── allow ─────────────────→ BYPASSED: log, no limit check, no increment
        │
        └─ PolicyCheck: minute → hour → day
               count >= limit ─────→ RateLimitExceeded (429) for the FIRST
               │                     exhausted tier, not the tightest one
               └─ none exhausted ──→ ADMITTED: increment all tiers, log

Design decisions:
  • Check BEFORE increment — blocked requests don't inflate counters.
  • Atomic upsert per tier — correctness under concurrency lives in the
    counter store, never in a read-modify-write here.
  • Reads (lists, rules, counts) are plain point reads; slightly stale
    values only affect the precision of the next decision.
  • Every store call is bounded by a timeout. A store fault either admits
    the request (fail-open, default) or blocks it with the same
    RateLimitExceeded a real limit produces (fail-closed).
  • Request-log failures are logged and never change the decision.

One instance is built at startup with injected stores and shared by all
requests; it holds no per-request mutable state.
"""

from __future__ import annotations

import asyncio
import datetime
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from quotaguard.services.errors import AccessDenied, RateLimitExceeded, StoreUnavailable
from quotaguard.services.policy import find_applicable_rule, resolve_limits
from quotaguard.services.records import (
    DefaultLimits,
    Identity,
    Limits,
    ListKind,
    RateRule,
    RequestLogEntry,
)
from quotaguard.services.window_clock import (
    GRANULARITIES,
    Granularity,
    reset_epoch,
    retry_after,
    utcnow,
)
from quotaguard.stores.base import StoreSet

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Tiers reported in response headers, with their header suffix.
HEADER_TIERS: tuple[tuple[Granularity, str], ...] = (
    (Granularity.MINUTE, ""),
    (Granularity.HOUR, "-Hour"),
)

_API_KEY_PREFIX_LEN = 12


class Outcome(str, enum.Enum):
    ADMITTED = "admitted"
    BYPASSED = "bypassed"
    FAILED_OPEN = "failed_open"


@dataclass(frozen=True, slots=True)
class RequestContext:
    """Everything the limiter needs to know about one inbound request."""

    identity: Identity
    endpoint: str
    method: str = "GET"
    ip_address: str = "0.0.0.0"
    role: str | None = None
    user_id: str | None = None
    api_key: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True, slots=True)
class Decision:
    outcome: Outcome
    rule: RateRule | None = None
    limits: Limits | None = None


@dataclass(frozen=True, slots=True)
class TierStatus:
    granularity: Granularity
    limit: int | None
    used: int
    remaining: int | None
    reset: int


class RateLimiter:
    """Enforcement engine plus header/status reporter over injected stores."""

    def __init__(
        self,
        stores: StoreSet,
        *,
        defaults: DefaultLimits | None = None,
        fail_open: bool = True,
        store_timeout: float = 2.0,
        log_requests: bool = True,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self.stores = stores
        self.counters = stores.counters
        self.policies = stores.policies
        self.lists = stores.lists
        self.request_log = stores.request_log
        self.defaults = defaults or DefaultLimits()
        self.fail_open = fail_open
        self.store_timeout = store_timeout
        self.log_requests = log_requests
        self.clock = clock

    # ── Enforcement ─────────────────────────────────────────
    async def check(self, ctx: RequestContext) -> Decision:
        """
        Run the full pre-dispatch decision for one request.

        Returns a Decision when the request may proceed.
        Raises AccessDenied (403) or RateLimitExceeded (429) otherwise.
        """
        now = self.clock()
        identity = ctx.identity

        try:
            # ── 1. Deny list wins over everything ───────────
            if await self._is_listed(identity, ListKind.DENY, now):
                logger.warning("Denied %s on %s (deny list)", identity.value, ctx.endpoint)
                raise AccessDenied()

            # ── 2. Allow list bypasses limits, not logging ──
            if await self._is_listed(identity, ListKind.ALLOW, now):
                await self._log_request(ctx, now)
                return Decision(outcome=Outcome.BYPASSED)

            # ── 3. Check limits (read-only) ─────────────────
            rule, limits = await self._resolve(ctx)
            for granularity in GRANULARITIES:
                limit = limits.for_granularity(granularity)
                if limit is None:
                    continue
                count = await self._guard(
                    self.counters.get(identity.value, ctx.endpoint, granularity, now)
                )
                if count >= limit:
                    wait = retry_after(now, granularity)
                    logger.info(
                        "Rate limited %s on %s: %s limit %d reached, retry in %ds",
                        identity.value, ctx.endpoint, granularity.value, limit, wait,
                    )
                    raise RateLimitExceeded(wait, granularity=granularity, limit=limit)

            # ── 4. Increment (only after all checks pass) ───
            await self._guard(self.counters.increment_all(identity.value, ctx.endpoint, now))

        except StoreUnavailable as exc:
            return self._on_store_fault(exc, ctx, now)

        await self._log_request(ctx, now)
        return Decision(outcome=Outcome.ADMITTED, rule=rule, limits=limits)

    # ── Reporting ───────────────────────────────────────────
    async def status(
        self,
        identity: Identity,
        endpoint: str,
        role: str | None = None,
        tiers: tuple[Granularity, ...] = GRANULARITIES,
    ) -> list[TierStatus]:
        """
        Current limit / used / remaining / reset per tier.

        Re-reads counts, so it reflects an increment just performed.
        Never increments anything — safe to poll.
        Raises StoreUnavailable if a store cannot be read.
        """
        now = self.clock()
        ctx = RequestContext(identity=identity, endpoint=endpoint, role=role)
        _, limits = await self._resolve(ctx)

        report = []
        for granularity in tiers:
            limit = limits.for_granularity(granularity)
            used = await self._guard(
                self.counters.get(identity.value, endpoint, granularity, now)
            )
            report.append(
                TierStatus(
                    granularity=granularity,
                    limit=limit,
                    used=used,
                    remaining=max(0, limit - used) if limit is not None else None,
                    reset=reset_epoch(now, granularity),
                )
            )
        return report

    async def headers(self, ctx: RequestContext) -> dict[str, str]:
        """X-RateLimit-* headers for the minute and hour tiers. Unlimited tiers are omitted."""
        try:
            report = await self.status(
                ctx.identity,
                ctx.endpoint,
                ctx.role,
                tiers=tuple(granularity for granularity, _ in HEADER_TIERS),
            )
        except StoreUnavailable:
            logger.warning("Skipping rate limit headers for %s: store unavailable", ctx.endpoint)
            return {}

        suffixes = dict(HEADER_TIERS)
        headers: dict[str, str] = {}
        for tier in report:
            if tier.limit is None:
                continue
            suffix = suffixes[tier.granularity]
            headers[f"X-RateLimit-Limit{suffix}"] = str(tier.limit)
            headers[f"X-RateLimit-Remaining{suffix}"] = str(tier.remaining)
            headers[f"X-RateLimit-Reset{suffix}"] = str(tier.reset)
        return headers

    # ── Internals ───────────────────────────────────────────
    async def _guard(self, call: Awaitable[T]) -> T:
        """Bound a store call by the configured timeout."""
        try:
            return await asyncio.wait_for(call, timeout=self.store_timeout)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable(f"store call exceeded {self.store_timeout}s") from exc

    async def _is_listed(self, identity: Identity, kind: ListKind, now: datetime.datetime) -> bool:
        entry = await self._guard(
            self.lists.find_active(identity.bare, identity.id_class, kind, now)
        )
        return entry is not None

    async def _resolve(self, ctx: RequestContext) -> tuple[RateRule | None, Limits]:
        rules = await self._guard(self.policies.active_rules_for(ctx.identity.id_class))
        rule = find_applicable_rule(rules, ctx.endpoint, ctx.identity.id_class, ctx.role)
        return rule, resolve_limits(rule, ctx.identity.id_class, self.defaults)

    def _on_store_fault(
        self,
        exc: StoreUnavailable,
        ctx: RequestContext,
        now: datetime.datetime,
    ) -> Decision:
        if self.fail_open:
            logger.warning(
                "Rate limit store unavailable (%s); admitting %s on %s (fail-open)",
                exc, ctx.identity.value, ctx.endpoint,
            )
            return Decision(outcome=Outcome.FAILED_OPEN)

        logger.error(
            "Rate limit store unavailable (%s); blocking %s on %s (fail-closed)",
            exc, ctx.identity.value, ctx.endpoint,
        )
        raise RateLimitExceeded(retry_after(now, Granularity.MINUTE)) from exc

    async def _log_request(self, ctx: RequestContext, now: datetime.datetime) -> None:
        if not self.log_requests:
            return
        entry = RequestLogEntry(
            endpoint=ctx.endpoint,
            method=ctx.method,
            ip_address=ctx.ip_address,
            created_at=now,
            user_id=ctx.user_id,
            api_key_prefix=ctx.api_key[:_API_KEY_PREFIX_LEN] if ctx.api_key else None,
            user_agent=ctx.user_agent,
        )
        try:
            await self._guard(self.request_log.append(entry))
        except StoreUnavailable as exc:
            logger.warning("Request log append failed for %s: %s", ctx.endpoint, exc)

"""Unit tests for the RateLimiter enforcement engine and header reporter.

All tests run against the in-memory stores with a frozen clock; store
faults are simulated by swapping a collaborator for an AsyncMock.
"""

import asyncio
import datetime
from unittest.mock import AsyncMock

import pytest

from quotaguard.services.errors import AccessDenied, RateLimitExceeded, StoreUnavailable
from quotaguard.services.rate_limiter import Outcome, RateLimiter, RequestContext
from quotaguard.services.records import (
    DefaultLimits,
    Identity,
    IdentityClass,
    Limits,
    ListKind,
    RuleTarget,
)
from quotaguard.services.window_clock import Granularity

ANON = Identity.build(IdentityClass.IP, "1.2.3.4")
USER = Identity.build(IdentityClass.USER, "42")


def ctx(identity=ANON, endpoint="/v1/projects", **extra):
    return RequestContext(identity=identity, endpoint=endpoint, **extra)


async def admit(limiter, context, times):
    for _ in range(times):
        await limiter.check(context)


class TestEnforcement:
    """Check-before-increment decisions."""

    @pytest.mark.asyncio
    async def test_admitted_request_increments_every_tier(self, limiter, stores, clock):
        decision = await limiter.check(ctx())

        assert decision.outcome == Outcome.ADMITTED
        assert decision.rule is None
        assert decision.limits == Limits(30, 500, 5000)
        for granularity in Granularity:
            assert await stores.counters.get(ANON.value, "/v1/projects", granularity, clock()) == 1

    @pytest.mark.asyncio
    async def test_boundary_blocking_at_second_58(self, limiter, stores, clock):
        await stores.policies.create_rule(
            name="tight", identifier_type=RuleTarget.IP, requests_per_minute=3,
        )
        clock.advance(58)

        await admit(limiter, ctx(), 3)
        with pytest.raises(RateLimitExceeded) as exc_info:
            await limiter.check(ctx())

        assert exc_info.value.retry_after == 2
        assert exc_info.value.granularity == Granularity.MINUTE
        assert exc_info.value.limit == 3

    @pytest.mark.asyncio
    async def test_blocked_request_is_not_counted(self, limiter, stores, clock):
        await stores.policies.create_rule(
            name="tight", identifier_type=RuleTarget.IP, requests_per_minute=1,
        )
        await limiter.check(ctx())
        for _ in range(3):
            with pytest.raises(RateLimitExceeded):
                await limiter.check(ctx())

        assert await stores.counters.get(ANON.value, "/v1/projects", Granularity.MINUTE, clock()) == 1

    @pytest.mark.asyncio
    async def test_next_window_admits_again(self, limiter, stores, clock):
        await stores.policies.create_rule(
            name="tight", identifier_type=RuleTarget.IP, requests_per_minute=1,
        )
        await limiter.check(ctx())
        with pytest.raises(RateLimitExceeded):
            await limiter.check(ctx())

        clock.advance(60)
        assert (await limiter.check(ctx())).outcome == Outcome.ADMITTED

    @pytest.mark.asyncio
    async def test_first_exhausted_tier_reported(self, limiter, stores, clock):
        await stores.policies.create_rule(
            name="hourly", identifier_type=RuleTarget.IP,
            requests_per_minute=10, requests_per_hour=2,
        )
        await admit(limiter, ctx(), 2)

        with pytest.raises(RateLimitExceeded) as exc_info:
            await limiter.check(ctx())
        assert exc_info.value.granularity == Granularity.HOUR
        assert exc_info.value.retry_after == 3600

    @pytest.mark.asyncio
    async def test_unlimited_tier_never_blocks(self, limiter, stores):
        await stores.policies.create_rule(
            name="open", identifier_type=RuleTarget.IP,
            requests_per_minute=None, requests_per_hour=None, requests_per_day=None,
        )
        await admit(limiter, ctx(), 100)

    @pytest.mark.asyncio
    async def test_zero_limit_is_unlimited(self, limiter, stores):
        await stores.policies.create_rule(
            name="zero", identifier_type=RuleTarget.IP,
            requests_per_minute=0, requests_per_hour=None, requests_per_day=None,
        )
        await admit(limiter, ctx(), 40)

    @pytest.mark.asyncio
    async def test_priority_rule_selected_per_endpoint(self, limiter, stores):
        await stores.policies.create_rule(
            name="all", endpoint_pattern="*", identifier_type=RuleTarget.IP,
            requests_per_minute=50, priority=10,
        )
        search = await stores.policies.create_rule(
            name="search", endpoint_pattern="/v1/search", identifier_type=RuleTarget.IP,
            requests_per_minute=2, priority=100,
        )

        decision = await limiter.check(ctx(endpoint="/v1/search"))
        assert decision.rule == search
        assert (await limiter.check(ctx(endpoint="/v1/other"))).rule.name == "all"

    @pytest.mark.asyncio
    async def test_custom_defaults(self, stores, clock):
        limiter = RateLimiter(
            stores,
            defaults=DefaultLimits(anonymous=Limits(1, None, None)),
            clock=clock,
        )
        await limiter.check(ctx())
        with pytest.raises(RateLimitExceeded):
            await limiter.check(ctx())


class TestLists:
    @pytest.mark.asyncio
    async def test_deny_is_terminal_and_not_counted(self, limiter, stores, clock):
        await stores.lists.add_entry("1.2.3.4", IdentityClass.IP, ListKind.DENY)

        with pytest.raises(AccessDenied) as exc_info:
            await limiter.check(ctx())
        assert exc_info.value.status_code == 403
        assert exc_info.value.to_dict()["code"] == "rate_limit_blocked"
        assert await stores.counters.get(ANON.value, "/v1/projects", Granularity.MINUTE, clock()) == 0
        assert stores.request_log.entries == []

    @pytest.mark.asyncio
    async def test_deny_overrides_allow(self, limiter, stores):
        await stores.lists.add_entry("1.2.3.4", IdentityClass.IP, ListKind.ALLOW)
        await stores.lists.add_entry("1.2.3.4", IdentityClass.IP, ListKind.DENY)

        with pytest.raises(AccessDenied):
            await limiter.check(ctx())

    @pytest.mark.asyncio
    async def test_expired_entries_behave_as_absent(self, limiter, stores, clock):
        past = clock() - datetime.timedelta(seconds=1)
        await stores.lists.add_entry("1.2.3.4", IdentityClass.IP, ListKind.DENY, expires_at=past)
        assert (await limiter.check(ctx())).outcome == Outcome.ADMITTED

        await stores.lists.add_entry("42", IdentityClass.USER, ListKind.ALLOW, expires_at=past)
        assert (await limiter.check(ctx(identity=USER))).outcome == Outcome.ADMITTED

    @pytest.mark.asyncio
    async def test_deny_expires_while_running(self, limiter, stores, clock):
        until = clock() + datetime.timedelta(minutes=10)
        await stores.lists.add_entry("1.2.3.4", IdentityClass.IP, ListKind.DENY, expires_at=until)
        with pytest.raises(AccessDenied):
            await limiter.check(ctx())

        clock.advance(600)
        assert (await limiter.check(ctx())).outcome == Outcome.ADMITTED

    @pytest.mark.asyncio
    async def test_list_entry_matches_identity_class(self, limiter, stores):
        # A user id that happens to look like the caller's IP is a different identity
        await stores.lists.add_entry("1.2.3.4", IdentityClass.USER, ListKind.DENY)
        assert (await limiter.check(ctx())).outcome == Outcome.ADMITTED


class TestScenarios:
    @pytest.mark.asyncio
    async def test_anonymous_default_limit(self, limiter, clock):
        """Scenario A: 30 admitted, the 31st blocked within the same minute."""
        for _ in range(30):
            assert (await limiter.check(ctx())).outcome == Outcome.ADMITTED
            clock.advance(1)

        with pytest.raises(RateLimitExceeded) as exc_info:
            await limiter.check(ctx())
        assert exc_info.value.status_code == 429
        assert 1 <= exc_info.value.retry_after <= 60
        assert exc_info.value.to_dict()["retry_after"] == exc_info.value.retry_after

    @pytest.mark.asyncio
    async def test_allow_listed_ip_bypasses_limits_but_is_logged(self, limiter, stores, clock):
        """Scenario B: 1000 rapid requests, no 429, 1000 log entries."""
        await stores.lists.add_entry("1.2.3.4", IdentityClass.IP, ListKind.ALLOW, reason="partner")

        for _ in range(1000):
            assert (await limiter.check(ctx())).outcome == Outcome.BYPASSED

        assert len(stores.request_log.entries) == 1000
        assert await stores.counters.get(ANON.value, "/v1/projects", Granularity.MINUTE, clock()) == 0

    @pytest.mark.asyncio
    async def test_export_rule_beats_catch_all_for_user(self, limiter, stores):
        """Scenario C: /v1/*/export → 5/min, everything else → 60/min."""
        await stores.policies.create_rule(
            name="export", endpoint_pattern="/v1/*/export",
            identifier_type=RuleTarget.USER, requests_per_minute=5, priority=50,
        )
        await stores.policies.create_rule(
            name="users", endpoint_pattern="*",
            identifier_type=RuleTarget.USER, requests_per_minute=60, priority=10,
        )

        export = ctx(identity=USER, endpoint="/v1/projects/export", user_id="42")
        await admit(limiter, export, 5)
        with pytest.raises(RateLimitExceeded):
            await limiter.check(export)

        listing = ctx(identity=USER, endpoint="/v1/projects", user_id="42")
        await admit(limiter, listing, 60)
        with pytest.raises(RateLimitExceeded):
            await limiter.check(listing)


class TestStoreFaults:
    @pytest.mark.asyncio
    async def test_fail_open_admits_on_counter_fault(self, limiter, stores):
        limiter.counters = AsyncMock()
        limiter.counters.get.side_effect = StoreUnavailable("connection refused")

        decision = await limiter.check(ctx())
        assert decision.outcome == Outcome.FAILED_OPEN
        limiter.counters.increment_all.assert_not_called()

    @pytest.mark.asyncio
    async def test_fail_closed_blocks_with_ordinary_429(self, stores, clock):
        limiter = RateLimiter(stores, fail_open=False, clock=clock)
        limiter.policies = AsyncMock()
        limiter.policies.active_rules_for.side_effect = StoreUnavailable("timeout")
        clock.advance(45)

        with pytest.raises(RateLimitExceeded) as exc_info:
            await limiter.check(ctx())
        assert exc_info.value.retry_after == 15
        assert exc_info.value.to_dict()["code"] == "rate_limit_exceeded"

    @pytest.mark.asyncio
    async def test_slow_store_times_out(self, stores, clock):
        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        limiter = RateLimiter(stores, store_timeout=0.01, clock=clock)
        limiter.lists = AsyncMock()
        limiter.lists.find_active.side_effect = hang

        assert (await limiter.check(ctx())).outcome == Outcome.FAILED_OPEN

    @pytest.mark.asyncio
    async def test_request_log_fault_does_not_change_decision(self, limiter):
        limiter.request_log = AsyncMock()
        limiter.request_log.append.side_effect = StoreUnavailable("disk full")

        assert (await limiter.check(ctx())).outcome == Outcome.ADMITTED

    @pytest.mark.asyncio
    async def test_request_log_disabled(self, stores, clock):
        limiter = RateLimiter(stores, log_requests=False, clock=clock)
        await limiter.check(ctx())
        assert stores.request_log.entries == []


class TestRequestLog:
    @pytest.mark.asyncio
    async def test_only_api_key_prefix_is_logged(self, limiter, stores, clock):
        raw_key = "sk_live_0123456789abcdef"
        identity = Identity.build(IdentityClass.API_KEY, raw_key)

        await limiter.check(ctx(identity=identity, api_key=raw_key, method="POST", user_agent="curl/8"))

        (entry,) = stores.request_log.entries
        assert entry.api_key_prefix == raw_key[:12]
        assert entry.method == "POST"
        assert entry.user_agent == "curl/8"
        assert entry.created_at == clock()


class TestReporter:
    @pytest.mark.asyncio
    async def test_status_reflects_increment(self, limiter, clock):
        await admit(limiter, ctx(), 3)

        minute, hour, day = await limiter.status(ANON, "/v1/projects")
        assert (minute.limit, minute.used, minute.remaining) == (30, 3, 27)
        assert (hour.limit, hour.used, hour.remaining) == (500, 3, 497)
        assert day.granularity == Granularity.DAY
        assert minute.reset == int(clock().timestamp()) + 60

    @pytest.mark.asyncio
    async def test_status_never_increments(self, limiter, stores, clock):
        for _ in range(5):
            await limiter.status(ANON, "/v1/projects")
        assert await stores.counters.get(ANON.value, "/v1/projects", Granularity.MINUTE, clock()) == 0

    @pytest.mark.asyncio
    async def test_remaining_never_negative(self, limiter, stores):
        await admit(limiter, ctx(), 2)
        await stores.policies.create_rule(
            name="lowered", identifier_type=RuleTarget.IP, requests_per_minute=1,
        )
        minute, *_ = await limiter.status(ANON, "/v1/projects")
        assert minute.remaining == 0

    @pytest.mark.asyncio
    async def test_headers_for_minute_and_hour(self, limiter, clock):
        await limiter.check(ctx())
        headers = await limiter.headers(ctx())

        assert headers == {
            "X-RateLimit-Limit": "30",
            "X-RateLimit-Remaining": "29",
            "X-RateLimit-Reset": str(int(clock().timestamp()) + 60),
            "X-RateLimit-Limit-Hour": "500",
            "X-RateLimit-Remaining-Hour": "499",
            "X-RateLimit-Reset-Hour": str(int(clock().timestamp()) + 3600),
        }

    @pytest.mark.asyncio
    async def test_unlimited_tier_omitted_from_headers(self, limiter, stores):
        await stores.policies.create_rule(
            name="minute-only", identifier_type=RuleTarget.IP, requests_per_minute=10,
        )
        headers = await limiter.headers(ctx())
        assert headers["X-RateLimit-Limit"] == "10"
        assert "X-RateLimit-Limit-Hour" not in headers

    @pytest.mark.asyncio
    async def test_headers_empty_when_store_down(self, limiter):
        limiter.counters = AsyncMock()
        limiter.counters.get.side_effect = StoreUnavailable("down")
        assert await limiter.headers(ctx()) == {}

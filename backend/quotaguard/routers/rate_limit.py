"""
Rate-limit management router.

Endpoints (mounted under /v1/rate-limit):
  GET    /status            — caller's limit / used / remaining / reset per tier
  GET    /rules             — all rules, priority desc            (admin)
  POST   /rules             — create a rule                       (admin)
  PATCH  /rules/{id}        — partial update                      (admin)
  DELETE /rules/{id}        — delete                              (admin)
  GET    /list              — allow/deny entries, newest first    (admin)
  POST   /list              — add an entry, 409 on duplicate      (admin)
  DELETE /list/{id}         — remove an entry                     (admin)
  GET    /analytics         — request-log aggregates over N days  (admin)
  POST   /reset             — clear counters for one caller / all (admin)

Store faults surface as 503; the management surface never fails open.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from quotaguard.auth.dependencies import AdminContext, get_rate_limiter, require_admin
from quotaguard.auth.rate_limit import build_request_context
from quotaguard.core.config import settings
from quotaguard.schemas.rate_limit import (
    AnalyticsOut,
    EndpointCountOut,
    HourCountOut,
    ListEntryCreate,
    ListEntryOut,
    ResetOut,
    ResetRequest,
    RuleCreate,
    RuleOut,
    RuleUpdate,
    StatusOut,
    TierStatusOut,
    UserCountOut,
)
from quotaguard.services.errors import DuplicateListEntry, StoreUnavailable
from quotaguard.services.rate_limiter import RateLimiter
from quotaguard.services.records import ListKind
from quotaguard.services.window_clock import GRANULARITIES

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Rate Limiting"])

Limiter = Annotated[RateLimiter, Depends(get_rate_limiter)]
Admin = Annotated[AdminContext, Depends(require_admin)]

_RULE_NOT_FOUND = HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Rule not found.")
_ENTRY_NOT_FOUND = HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Entry not found.")


@asynccontextmanager
async def _store_errors() -> AsyncIterator[None]:
    try:
        yield
    except StoreUnavailable as exc:
        logger.error("Management request failed, store unavailable: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Rate limit store unavailable.",
        ) from exc


# ── 1. Status ───────────────────────────────────────────────
@router.get(
    "/status",
    response_model=StatusOut,
    summary="Caller's current rate limit standing",
    description=(
        "Reports limit, used, remaining and reset for the minute, hour and day "
        "tiers. Never increments a counter, so it is safe to poll. Counters are "
        "kept per exact request path: pass the path to inspect as ?endpoint=. "
        "Without it the report covers the literal path prefix, which no real "
        "request hits, so used is 0 and only the limits are informative."
    ),
)
async def get_status(
    request: Request,
    limiter: Limiter,
    endpoint: str | None = Query(
        default=None,
        max_length=255,
        description=(
            "Exact request path to report on, e.g. /v1/projects. Defaults to "
            "the limited path prefix, whose counters are always 0."
        ),
    ),
) -> StatusOut:
    ctx = build_request_context(request)
    path = endpoint or settings.RATE_LIMIT_PATH_PREFIX

    async with _store_errors():
        tiers = await limiter.status(ctx.identity, path, ctx.role)

    by_tier = {
        tier.granularity.value: TierStatusOut.model_validate(tier, from_attributes=True)
        for tier in tiers
    }
    return StatusOut(
        identifier=ctx.identity.value,
        identifier_type=ctx.identity.id_class,
        endpoint=path,
        **{granularity.value: by_tier[granularity.value] for granularity in GRANULARITIES},
    )


# ── 2. Rules ────────────────────────────────────────────────
@router.get("/rules", response_model=list[RuleOut], summary="List rate rules")
async def list_rules(limiter: Limiter, _admin: Admin) -> list[RuleOut]:
    async with _store_errors():
        rules = await limiter.policies.list_rules()
    return [RuleOut.model_validate(rule, from_attributes=True) for rule in rules]


@router.post(
    "/rules",
    response_model=RuleOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create a rate rule",
)
async def create_rule(payload: RuleCreate, limiter: Limiter, admin: Admin) -> RuleOut:
    async with _store_errors():
        rule = await limiter.policies.create_rule(**payload.model_dump())
    logger.info("Rule %d (%s) created by %s", rule.id, rule.name, admin.actor)
    return RuleOut.model_validate(rule, from_attributes=True)


@router.patch("/rules/{rule_id}", response_model=RuleOut, summary="Update a rate rule")
async def update_rule(
    rule_id: int,
    payload: RuleUpdate,
    limiter: Limiter,
    admin: Admin,
) -> RuleOut:
    changes = payload.model_dump(exclude_unset=True)
    async with _store_errors():
        if changes:
            rule = await limiter.policies.update_rule(rule_id, **changes)
        else:
            rule = await limiter.policies.get_rule(rule_id)
    if rule is None:
        raise _RULE_NOT_FOUND
    logger.info("Rule %d updated by %s: %s", rule_id, admin.actor, sorted(changes))
    return RuleOut.model_validate(rule, from_attributes=True)


@router.delete(
    "/rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a rate rule",
)
async def delete_rule(rule_id: int, limiter: Limiter, admin: Admin) -> Response:
    async with _store_errors():
        deleted = await limiter.policies.delete_rule(rule_id)
    if not deleted:
        raise _RULE_NOT_FOUND
    logger.info("Rule %d deleted by %s", rule_id, admin.actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── 3. Allow / deny list ────────────────────────────────────
@router.get("/list", response_model=list[ListEntryOut], summary="List allow/deny entries")
async def list_entries(
    limiter: Limiter,
    _admin: Admin,
    list_kind: ListKind | None = None,
) -> list[ListEntryOut]:
    async with _store_errors():
        entries = await limiter.lists.list_entries(list_kind)
    return [ListEntryOut.model_validate(entry, from_attributes=True) for entry in entries]


@router.post(
    "/list",
    response_model=ListEntryOut,
    status_code=status.HTTP_201_CREATED,
    summary="Add an allow/deny entry",
)
async def add_entry(payload: ListEntryCreate, limiter: Limiter, admin: Admin) -> ListEntryOut:
    try:
        async with _store_errors():
            entry = await limiter.lists.add_entry(
                payload.identifier,
                payload.identifier_type,
                payload.list_kind,
                reason=payload.reason,
                expires_at=payload.expires_at,
                created_by=admin.actor,
            )
    except DuplicateListEntry as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    logger.info(
        "%s entry %d for %s added by %s",
        entry.list_kind.value, entry.id, entry.identifier_type.value, admin.actor,
    )
    return ListEntryOut.model_validate(entry, from_attributes=True)


@router.delete(
    "/list/{entry_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove an allow/deny entry",
)
async def remove_entry(entry_id: int, limiter: Limiter, admin: Admin) -> Response:
    async with _store_errors():
        removed = await limiter.lists.remove_entry(entry_id)
    if not removed:
        raise _ENTRY_NOT_FOUND
    logger.info("List entry %d removed by %s", entry_id, admin.actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── 4. Analytics ────────────────────────────────────────────
@router.get(
    "/analytics",
    response_model=AnalyticsOut,
    summary="Request-log aggregates",
    description=(
        "Totals, unique users and IPs, top endpoints and users, and requests "
        "per hour over the last `days` days. Aggregation happens in the store."
    ),
)
async def get_analytics(
    limiter: Limiter,
    _admin: Admin,
    days: int = Query(default=7, ge=1, le=365),
) -> AnalyticsOut:
    since = limiter.clock() - datetime.timedelta(days=days)
    async with _store_errors():
        summary = await limiter.request_log.summarize(since)

    return AnalyticsOut(
        days=days,
        total_requests=summary.total_requests,
        unique_users=summary.unique_users,
        unique_ips=summary.unique_ips,
        top_endpoints=[
            EndpointCountOut(endpoint=endpoint, request_count=count)
            for endpoint, count in summary.top_endpoints
        ],
        top_users=[
            UserCountOut(user_id=user_id, request_count=count)
            for user_id, count in summary.top_users
        ],
        by_hour=[
            HourCountOut(hour=hour, request_count=count)
            for hour, count in summary.by_hour
        ],
    )


# ── 5. Reset ────────────────────────────────────────────────
@router.post("/reset", response_model=ResetOut, summary="Reset request counters")
async def reset_counters(payload: ResetRequest, limiter: Limiter, admin: Admin) -> ResetOut:
    async with _store_errors():
        deleted = await limiter.counters.reset(payload.identifier)
    logger.info(
        "Counters reset for %s by %s (%d rows)",
        payload.identifier or "ALL callers", admin.actor, deleted,
    )
    return ResetOut(identifier=payload.identifier, counters_deleted=deleted)

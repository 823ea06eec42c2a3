"""
Pydantic v2 schemas for the rate-limit management surface.

Separation:
  • *Create / *Update — what an administrator SENDS.
  • *Out              — what the SERVER returns.

Create/update payloads use extra="forbid" so a typo in a field name is
a 422, not a silently ignored change.
"""

from __future__ import annotations

import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from quotaguard.services.records import IdentityClass, ListKind, RuleTarget


# ── Rules ───────────────────────────────────────────────────
class RuleCreate(BaseModel):
    """
    Payload accepted by POST /v1/rate-limit/rules.

    A null tier limit means that tier is unlimited for matching callers.
    role is required exactly when identifier_type is "role".
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=200, examples=["Search Endpoints"])
    endpoint_pattern: str = Field(
        default="*",
        min_length=1,
        max_length=255,
        examples=["/v1/*/search"],
        description="Glob over the request path; '*' matches any run of characters.",
    )
    identifier_type: RuleTarget = Field(default=RuleTarget.IP, examples=["user"])
    role: str | None = Field(default=None, max_length=50, examples=["administrator"])
    requests_per_minute: int | None = Field(default=None, ge=1, examples=[20])
    requests_per_hour: int | None = Field(default=None, ge=1, examples=[200])
    requests_per_day: int | None = Field(default=None, ge=1, examples=[2000])
    priority: int = Field(default=0, examples=[50])
    is_active: bool = True

    @model_validator(mode="after")
    def check_role_target(self) -> RuleCreate:
        if self.identifier_type == RuleTarget.ROLE and not self.role:
            raise ValueError("role is required when identifier_type is 'role'")
        return self


class RuleUpdate(BaseModel):
    """Partial update; only fields present in the body are changed."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=200)
    endpoint_pattern: str | None = Field(default=None, min_length=1, max_length=255)
    identifier_type: RuleTarget | None = None
    role: str | None = Field(default=None, max_length=50)
    requests_per_minute: int | None = Field(default=None, ge=1)
    requests_per_hour: int | None = Field(default=None, ge=1)
    requests_per_day: int | None = Field(default=None, ge=1)
    priority: int | None = None
    is_active: bool | None = None

    @model_validator(mode="after")
    def check_no_null_required(self) -> RuleUpdate:
        # Only tier limits and role may be cleared
        for field in ("name", "endpoint_pattern", "identifier_type", "priority", "is_active"):
            if field in self.model_fields_set and getattr(self, field) is None:
                raise ValueError(f"{field} cannot be null")
        return self


class RuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    endpoint_pattern: str
    identifier_type: RuleTarget
    role: str | None
    requests_per_minute: int | None
    requests_per_hour: int | None
    requests_per_day: int | None
    priority: int
    is_active: bool


# ── Allow / deny list ───────────────────────────────────────
class ListEntryCreate(BaseModel):
    """
    Payload accepted by POST /v1/rate-limit/list.

    identifier is the bare value: "203.0.113.7", not "ip:203.0.113.7".
    """

    model_config = ConfigDict(extra="forbid")

    identifier: str = Field(..., min_length=1, max_length=255, examples=["203.0.113.7"])
    identifier_type: IdentityClass = Field(..., examples=["ip"])
    list_kind: ListKind = Field(..., examples=["deny"])
    reason: str | None = Field(default=None, max_length=1000)
    expires_at: datetime.datetime | None = Field(
        default=None,
        description="Entry is ignored after this instant; null means permanent.",
    )


class ListEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    identifier: str
    identifier_type: IdentityClass
    list_kind: ListKind
    reason: str | None
    expires_at: datetime.datetime | None
    created_by: str | None
    created_at: datetime.datetime | None


# ── Status ──────────────────────────────────────────────────
class TierStatusOut(BaseModel):
    """One tier of the caller's current standing. limit/remaining null = unlimited."""

    model_config = ConfigDict(from_attributes=True)

    limit: int | None
    used: int
    remaining: int | None
    reset: int = Field(..., description="Unix timestamp at which the window rolls over.")


class StatusOut(BaseModel):
    identifier: str
    identifier_type: IdentityClass
    endpoint: str
    minute: TierStatusOut
    hour: TierStatusOut
    day: TierStatusOut


# ── Analytics ───────────────────────────────────────────────
class EndpointCountOut(BaseModel):
    endpoint: str
    request_count: int


class UserCountOut(BaseModel):
    user_id: str
    request_count: int


class HourCountOut(BaseModel):
    hour: datetime.datetime
    request_count: int


class AnalyticsOut(BaseModel):
    days: int
    total_requests: int
    unique_users: int
    unique_ips: int
    top_endpoints: list[EndpointCountOut]
    top_users: list[UserCountOut]
    by_hour: list[HourCountOut]


# ── Reset ───────────────────────────────────────────────────
class ResetRequest(BaseModel):
    """Omit identifier to clear every counter."""

    model_config = ConfigDict(extra="forbid")

    identifier: str | None = Field(
        default=None,
        max_length=255,
        examples=["ip:203.0.113.7"],
        description="Full identity value including its class prefix.",
    )


class ResetOut(BaseModel):
    identifier: str | None
    counters_deleted: int

"""
FastAPI dependencies for the rate-limit management surface.

Flow for admin routes:
  1. Principal set by the host's auth layer on request.state → role check
  2. Otherwise, Bearer token from the Authorization header
  3. Hash the token (SHA-256) and compare against ADMIN_API_TOKEN
  4. Return AdminContext (who acted, for created_by on list entries)

Security:
  • Generic 401 when no credentials are presented, generic 403 otherwise
  • Raw tokens are NEVER logged
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request, status

from quotaguard.auth.hashing import tokens_match
from quotaguard.core.config import settings
from quotaguard.services.rate_limiter import RateLimiter
from quotaguard.services.records import Principal

logger = logging.getLogger(__name__)

_AUTH_REQUIRED = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Authentication required.",
    headers={"WWW-Authenticate": "Bearer"},
)

_FORBIDDEN = HTTPException(
    status_code=status.HTTP_403_FORBIDDEN,
    detail="Administrator access required.",
)


@dataclass(frozen=True, slots=True)
class AdminContext:
    """Who is performing a management action.

    Attributes:
        actor: user id of the admin principal, or "api-token" when the
               shared admin token was used.
    """

    actor: str


def get_principal(request: Request) -> Principal | None:
    """Authenticated principal for this request, or None when anonymous."""
    principal = getattr(request.state, "principal", None)
    return principal if isinstance(principal, Principal) else None


def get_rate_limiter(request: Request) -> RateLimiter:
    """The process-wide RateLimiter built in the app lifespan."""
    return request.app.state.rate_limiter


async def require_admin(
    principal: Principal | None = Depends(get_principal),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> AdminContext:
    """
    FastAPI dependency — admits administrators only.

    Raises 401 when neither a principal nor a Bearer token is present,
    403 when the caller is known but not an administrator.
    """

    # ── 1. Role from the session ────────────────────────────
    if principal is not None and principal.role in settings.ADMIN_ROLES:
        return AdminContext(actor=principal.user_id)

    # ── 2. Shared admin token ───────────────────────────────
    if authorization:
        parts = authorization.split(" ", maxsplit=1)
        if len(parts) == 2 and parts[0].lower() == "bearer":
            if tokens_match(parts[1], settings.ADMIN_API_TOKEN):
                return AdminContext(actor="api-token")
        logger.warning("Rejected admin token on management endpoint")
        raise _FORBIDDEN

    if principal is None:
        raise _AUTH_REQUIRED
    raise _FORBIDDEN

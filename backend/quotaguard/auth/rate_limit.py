"""
HTTP middleware for rate limit enforcement.

Order in request pipeline: HOST AUTH → RATE LIMIT → ROUTER LOGIC.
The host's auth layer (an outer middleware) puts a Principal on
request.state.principal; without one the caller is anonymous.

Only paths under RATE_LIMIT_PATH_PREFIX are limited, minus
RATE_LIMIT_EXEMPT_PATHS (the status endpoint must stay pollable).

  • Deny-listed     → 403 {"code": "rate_limit_blocked", ...}
  • Tier exhausted  → 429 {"code": "rate_limit_exceeded", ..., "retry_after": n}
                      plus a Retry-After header
  • Otherwise       → handler runs, X-RateLimit-* headers are attached
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from quotaguard.auth.dependencies import get_principal
from quotaguard.core.config import settings
from quotaguard.services.errors import AccessDenied, RateLimitExceeded
from quotaguard.services.identity import extract_api_key, resolve_client_ip, resolve_identity
from quotaguard.services.rate_limiter import RateLimiter, RequestContext

logger = logging.getLogger(__name__)


def build_request_context(request: Request) -> RequestContext:
    """Everything the limiter needs from one Starlette request."""
    headers = dict(request.headers)
    query_params = dict(request.query_params)
    client_host = request.client.host if request.client else None
    principal = get_principal(request)

    identity = resolve_identity(
        headers,
        query_params,
        client_host,
        principal,
        api_key_header=settings.API_KEY_HEADER,
        api_key_query_param=settings.API_KEY_QUERY_PARAM,
        trusted_proxy_headers=settings.TRUSTED_PROXY_HEADERS,
    )
    return RequestContext(
        identity=identity,
        endpoint=request.url.path,
        method=request.method,
        ip_address=resolve_client_ip(headers, client_host, settings.TRUSTED_PROXY_HEADERS),
        role=principal.role if principal else None,
        user_id=principal.user_id if principal else None,
        api_key=extract_api_key(
            headers,
            query_params,
            api_key_header=settings.API_KEY_HEADER,
            api_key_query_param=settings.API_KEY_QUERY_PARAM,
        ),
        user_agent=request.headers.get("user-agent"),
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Pre-dispatch check and post-dispatch headers around every limited path."""

    def __init__(
        self,
        app: ASGIApp,
        path_prefix: str | None = None,
        exempt_paths: Iterable[str] | None = None,
    ) -> None:
        super().__init__(app)
        self.path_prefix = path_prefix if path_prefix is not None else settings.RATE_LIMIT_PATH_PREFIX
        self.exempt_paths = frozenset(
            exempt_paths if exempt_paths is not None else settings.RATE_LIMIT_EXEMPT_PATHS
        )

    def is_limited(self, path: str) -> bool:
        return path.startswith(self.path_prefix) and path not in self.exempt_paths

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        if not self.is_limited(request.url.path):
            return await call_next(request)

        limiter: RateLimiter = request.app.state.rate_limiter
        ctx = build_request_context(request)

        # ── 1. Pre-dispatch decision ────────────────────────
        try:
            await limiter.check(ctx)
        except RateLimitExceeded as exc:
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_dict(),
                headers={"Retry-After": str(exc.retry_after)},
            )
        except AccessDenied as exc:
            return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

        # ── 2. Handler ──────────────────────────────────────
        response = await call_next(request)

        # ── 3. Post-dispatch headers ────────────────────────
        response.headers.update(await limiter.headers(ctx))
        return response

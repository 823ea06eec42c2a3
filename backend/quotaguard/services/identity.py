"""
Caller identity resolution.

Exactly one identity class is chosen per request, in priority order:

  1. API key  — header first, then query parameter  → "key:<key>"
  2. Session  — authenticated principal             → "user:<id>"
  3. IP       — trusted proxy header, then peer     → "ip:<addr>"

An API key always wins, even for a logged-in user. An unresolvable IP
becomes the "0.0.0.0" sentinel instead of failing the request.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable, Mapping

from quotaguard.services.records import Identity, IdentityClass, Principal

UNKNOWN_IP = "0.0.0.0"

DEFAULT_PROXY_HEADERS = ("CF-Connecting-IP", "X-Forwarded-For", "X-Real-IP")


def _lowered(headers: Mapping[str, str]) -> dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


def _valid_ip(candidate: str | None) -> str | None:
    if not candidate:
        return None
    candidate = candidate.strip()
    try:
        ipaddress.ip_address(candidate)
    except ValueError:
        return None
    return candidate


def extract_api_key(
    headers: Mapping[str, str],
    query_params: Mapping[str, str],
    *,
    api_key_header: str = "X-API-Key",
    api_key_query_param: str = "api_key",
) -> str | None:
    """Return the API key from the header, else the query string, else None."""
    key = _lowered(headers).get(api_key_header.lower(), "").strip()
    if not key:
        key = (query_params.get(api_key_query_param) or "").strip()
    return key or None


def resolve_client_ip(
    headers: Mapping[str, str],
    client_host: str | None,
    trusted_proxy_headers: Iterable[str] = DEFAULT_PROXY_HEADERS,
) -> str:
    """
    First valid IP from the trusted proxy headers, then the socket peer.

    Forwarded-for style headers may carry a comma-separated chain; only
    the first (client-most) element is considered.
    """
    lowered = _lowered(headers)
    for name in trusted_proxy_headers:
        raw = lowered.get(name.lower())
        if raw:
            ip = _valid_ip(raw.split(",")[0])
            if ip:
                return ip

    return _valid_ip(client_host) or UNKNOWN_IP


def resolve_identity(
    headers: Mapping[str, str],
    query_params: Mapping[str, str],
    client_host: str | None,
    principal: Principal | None,
    *,
    api_key_header: str = "X-API-Key",
    api_key_query_param: str = "api_key",
    trusted_proxy_headers: Iterable[str] = DEFAULT_PROXY_HEADERS,
) -> Identity:
    """Derive the caller identity from request metadata. No side effects."""
    api_key = extract_api_key(
        headers,
        query_params,
        api_key_header=api_key_header,
        api_key_query_param=api_key_query_param,
    )
    if api_key:
        return Identity.build(IdentityClass.API_KEY, api_key)

    if principal is not None:
        return Identity.build(IdentityClass.USER, str(principal.user_id))

    ip = resolve_client_ip(headers, client_host, trusted_proxy_headers)
    return Identity.build(IdentityClass.IP, ip)

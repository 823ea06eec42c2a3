"""
Rate limiter error taxonomy.

  • AccessDenied       — deny-listed caller, 403, terminal.
  • RateLimitExceeded  — tier exhausted, 429, retryable after retry_after.
  • StoreUnavailable   — counter/policy/list store fault. Never sent to
                         clients as-is; the limiter turns it into either an
                         admit (fail-open) or a RateLimitExceeded (fail-closed).

Absence of a rule or list entry is not an error.
"""

from __future__ import annotations

from typing import Any

from quotaguard.services.window_clock import Granularity


class RateLimitError(Exception):
    """Base class for errors that map to a client-facing response."""

    status_code: int = 500
    code: str = "rate_limit_error"
    message: str = "Rate limiting failed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "status": self.status_code,
        }


class AccessDenied(RateLimitError):
    """Raised when the caller has an unexpired deny-list entry."""

    status_code = 403
    code = "rate_limit_blocked"
    message = "Access denied"


class RateLimitExceeded(RateLimitError):
    """Raised when the first exhausted tier blocks a request."""

    status_code = 429
    code = "rate_limit_exceeded"
    message = "Rate limit exceeded. Please try again later."

    def __init__(
        self,
        retry_after: int,
        granularity: Granularity | None = None,
        limit: int | None = None,
        message: str | None = None,
    ) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.granularity = granularity
        self.limit = limit

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["retry_after"] = self.retry_after
        return body


class StoreUnavailable(Exception):
    """Infrastructure fault in a counter, policy, list or log store."""


class DuplicateListEntry(Exception):
    """An entry with the same (identifier, type, kind) already exists."""

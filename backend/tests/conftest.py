"""
Shared fixtures for the rate limiter test suite.

Settings are read at import time, so the environment is pinned here,
before anything from quotaguard is imported:
  • in-memory SQLite URL (the engine is created but never used by the
    memory backend)
  • memory store backend, no background sweeper
  • a known admin token for management-route tests

Time is injected through FrozenClock so window boundaries are exact.
"""

import datetime
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("SWEEP_ENABLED", "false")
os.environ.setdefault("ADMIN_API_TOKEN", "test-admin-token")

import pytest

from quotaguard.services.rate_limiter import RateLimiter
from quotaguard.stores.base import StoreSet
from quotaguard.stores.memory import build_memory_stores

# 12:00:00 UTC — start of a minute, hour and (12h into) a day
NOON = datetime.datetime(2026, 10, 18, 12, 0, 0, tzinfo=datetime.timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime.datetime = NOON) -> None:
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += datetime.timedelta(seconds=seconds)

    def set(self, now: datetime.datetime) -> None:
        self.now = now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def stores() -> StoreSet:
    return build_memory_stores()


@pytest.fixture
def limiter(stores: StoreSet, clock: FrozenClock) -> RateLimiter:
    return RateLimiter(stores, clock=clock, store_timeout=1.0)

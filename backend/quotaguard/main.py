"""
FastAPI application entrypoint.

Lifespan:
  • On startup: verify DB connectivity (sql backend), build the process-wide
    RateLimiter on app.state, start the retention sweeper.
  • On shutdown: stop the sweeper, dispose the engine cleanly.

Middleware:
  • RateLimitMiddleware — every path under RATE_LIMIT_PATH_PREFIX

Routers:
  • /v1/rate-limit — status, rules, allow/deny list, analytics, reset
  • /health — shallow liveness probe
"""

import datetime
import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI
from sqlalchemy import text

from quotaguard.auth.rate_limit import RateLimitMiddleware
from quotaguard.core.config import settings
from quotaguard.core.database import async_session_factory, engine
from quotaguard.routers.rate_limit import router as rate_limit_router
from quotaguard.services.rate_limiter import RateLimiter
from quotaguard.services.records import DefaultLimits, Limits
from quotaguard.services.sweeper import RetentionSweeper
from quotaguard.stores.base import StoreSet
from quotaguard.stores.memory import build_memory_stores
from quotaguard.stores.sql import build_sql_stores

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


# ── Wiring ──────────────────────────────────────────────────
def build_stores() -> StoreSet:
    """Stores for the configured STORE_BACKEND."""
    if settings.STORE_BACKEND == "memory":
        return build_memory_stores()
    return build_sql_stores(async_session_factory, engine.dialect.name)


def build_rate_limiter(stores: StoreSet) -> RateLimiter:
    defaults = DefaultLimits(
        anonymous=Limits(
            settings.DEFAULT_ANON_PER_MINUTE,
            settings.DEFAULT_ANON_PER_HOUR,
            settings.DEFAULT_ANON_PER_DAY,
        ),
        authenticated=Limits(
            settings.DEFAULT_AUTH_PER_MINUTE,
            settings.DEFAULT_AUTH_PER_HOUR,
            settings.DEFAULT_AUTH_PER_DAY,
        ),
    )
    return RateLimiter(
        stores,
        defaults=defaults,
        fail_open=settings.RATE_LIMIT_FAIL_OPEN,
        store_timeout=settings.STORE_TIMEOUT_SECONDS,
        log_requests=settings.REQUEST_LOG_ENABLED,
    )


def build_sweeper(stores: StoreSet) -> RetentionSweeper:
    return RetentionSweeper(
        stores,
        interval=settings.SWEEP_INTERVAL_SECONDS,
        counter_horizon=datetime.timedelta(hours=settings.COUNTER_RETENTION_HOURS),
        day_counter_horizon=datetime.timedelta(hours=settings.DAY_COUNTER_RETENTION_HOURS),
        log_retention=datetime.timedelta(days=settings.REQUEST_LOG_RETENTION_DAYS),
    )


# ── Lifespan ────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle."""

    # Startup — verify DB is reachable
    if settings.STORE_BACKEND == "sql":
        try:
            async with engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
            logger.info("Database connection verified ✓")
        except Exception:
            logger.warning(
                "Could not reach the database on startup. "
                "The app will start; the limiter applies its fail-open/closed "
                "policy until the DB is available."
            )

    # Startup — one limiter for the whole process (tests may inject their own)
    if app.state.rate_limiter is None:
        app.state.rate_limiter = build_rate_limiter(build_stores())
        logger.info(
            "Rate limiter ready (backend=%s, fail_open=%s) ✓",
            settings.STORE_BACKEND, settings.RATE_LIMIT_FAIL_OPEN,
        )

    sweeper = None
    if settings.SWEEP_ENABLED:
        sweeper = build_sweeper(app.state.rate_limiter.stores)
        sweeper.start()

    yield  # ← application runs here

    # Shutdown — stop background work, clean up connection pool
    if sweeper is not None:
        await sweeper.stop()
    await engine.dispose()
    logger.info("Database engine disposed ✓")


# ── App ─────────────────────────────────────────────────────
def create_app(rate_limiter: RateLimiter | None = None) -> FastAPI:
    """Build the application. Pass a RateLimiter to bypass settings-based wiring."""
    app = FastAPI(
        title=settings.APP_NAME,
        version="0.1.0",
        description=(
            "API rate limiting — per-caller minute/hour/day quotas, "
            "allow/deny lists and request analytics."
        ),
        lifespan=lifespan,
    )
    app.state.rate_limiter = rate_limiter

    app.add_middleware(RateLimitMiddleware)

    # Mount routers
    app.include_router(rate_limit_router, prefix="/v1/rate-limit")

    # ── Health check ────────────────────────────────────────
    @app.get(
        "/health",
        tags=["System"],
        summary="Liveness probe",
    )
    async def health_check() -> dict[str, str]:
        """Shallow health check — confirms the process is alive."""
        return {"status": "healthy"}

    return app


app = create_app()

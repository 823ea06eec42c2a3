"""
Retention sweeper — bounded storage for counters, lists and the request log.

Each pass deletes:
  • minute/hour counters whose window started before now - counter_horizon
  • day counters whose window started before now - day_counter_horizon
    (never less than 24h, so the live day window is never touched)
  • expired allow/deny entries
  • request-log rows older than log_retention

Every delete is idempotent, so overlapping or repeated passes are harmless.
RetentionSweeper runs a pass on an asyncio task every `interval` seconds;
a failing pass is logged and the loop keeps going.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
from collections.abc import Callable
from dataclasses import dataclass

from quotaguard.services.window_clock import Granularity, utcnow
from quotaguard.stores.base import CounterStore, ListStore, RequestLogSink, StoreSet

logger = logging.getLogger(__name__)

_MIN_DAY_HORIZON = datetime.timedelta(hours=24)


@dataclass(frozen=True, slots=True)
class SweepResult:
    counters_deleted: int
    list_entries_deleted: int
    log_rows_deleted: int


async def run_retention_sweep(
    counters: CounterStore,
    lists: ListStore,
    request_log: RequestLogSink,
    now: datetime.datetime,
    *,
    counter_horizon: datetime.timedelta = datetime.timedelta(hours=24),
    day_counter_horizon: datetime.timedelta = datetime.timedelta(hours=48),
    log_retention: datetime.timedelta = datetime.timedelta(days=30),
) -> SweepResult:
    """Run one retention pass. Store faults propagate as StoreUnavailable."""
    day_counter_horizon = max(day_counter_horizon, _MIN_DAY_HORIZON)

    counters_deleted = 0
    for granularity in (Granularity.MINUTE, Granularity.HOUR):
        counters_deleted += await counters.purge_before(granularity, now - counter_horizon)
    counters_deleted += await counters.purge_before(Granularity.DAY, now - day_counter_horizon)

    list_entries_deleted = await lists.purge_expired(now)
    log_rows_deleted = await request_log.purge_before(now - log_retention)

    result = SweepResult(
        counters_deleted=counters_deleted,
        list_entries_deleted=list_entries_deleted,
        log_rows_deleted=log_rows_deleted,
    )
    logger.info(
        "Retention sweep: %d counters, %d list entries, %d log rows deleted",
        result.counters_deleted, result.list_entries_deleted, result.log_rows_deleted,
    )
    return result


class RetentionSweeper:
    """Periodic background runner for run_retention_sweep."""

    def __init__(
        self,
        stores: StoreSet,
        *,
        interval: float = 3600,
        counter_horizon: datetime.timedelta = datetime.timedelta(hours=24),
        day_counter_horizon: datetime.timedelta = datetime.timedelta(hours=48),
        log_retention: datetime.timedelta = datetime.timedelta(days=30),
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self.stores = stores
        self.interval = interval
        self.counter_horizon = counter_horizon
        self.day_counter_horizon = day_counter_horizon
        self.log_retention = log_retention
        self.clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep_once(self) -> SweepResult:
        return await run_retention_sweep(
            self.stores.counters,
            self.stores.lists,
            self.stores.request_log,
            self.clock(),
            counter_horizon=self.counter_horizon,
            day_counter_horizon=self.day_counter_horizon,
            log_retention=self.log_retention,
        )

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="retention-sweeper")
        logger.info("Retention sweeper started (every %ss)", self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Retention sweeper stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Retention sweep failed (will retry next interval)")
            await asyncio.sleep(self.interval)

"""Recurring timer driving the price update cycle."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from libs.observability.logging import cycle_context
from libs.observability.metrics import PRICE_UPDATE_CYCLES, SCHEDULER_TICKS_SKIPPED

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SchedulerStatus:
    is_running: bool
    next_update: datetime | None
    interval_minutes: float
    last_tick_started: datetime | None = None
    last_tick_succeeded: bool | None = None


class UpdateScheduler:
    """Run ``cycle`` every ``interval_minutes`` on the event loop.

    Ticks never overlap: a tick requested while another is in flight is
    skipped. A tick that raises is logged and the timer stays armed.
    """

    def __init__(
        self,
        cycle: Callable[[], Awaitable[Any]],
        *,
        interval_minutes: float = 1.0,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        if interval_minutes <= 0:
            raise ValueError("interval_minutes must be positive")
        self._cycle = cycle
        self._interval_minutes = interval_minutes
        self._clock = clock
        self._tick_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._next_update: datetime | None = None
        self._last_tick_started: datetime | None = None
        self._last_tick_succeeded: bool | None = None

    @property
    def interval_seconds(self) -> float:
        return self._interval_minutes * 60.0

    @property
    def is_running(self) -> bool:
        return self._task is not None

    @property
    def tick_in_progress(self) -> bool:
        return self._tick_lock.locked()

    async def initialize(self) -> None:
        if self._task is not None:
            logger.warning("Price update scheduler is already running")
            return
        self._stop_event.clear()
        self._next_update = self._clock() + timedelta(seconds=self.interval_seconds)
        self._task = asyncio.create_task(self._run_periodic(), name="price-update-scheduler")
        logger.info(
            "Price update scheduler started",
            extra={
                "interval_minutes": self._interval_minutes,
                "next_update": self._next_update.isoformat(),
            },
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self._next_update = None
        logger.info("Price update scheduler stopped")

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            is_running=self.is_running,
            next_update=self._next_update if self.is_running else None,
            interval_minutes=self._interval_minutes,
            last_tick_started=self._last_tick_started,
            last_tick_succeeded=self._last_tick_succeeded,
        )

    async def run_once(self) -> bool:
        """Run one tick now. Returns ``False`` if a tick was already running."""

        if self._tick_lock.locked():
            SCHEDULER_TICKS_SKIPPED.inc()
            logger.warning("Previous price update still running, skipping tick")
            return False
        async with self._tick_lock:
            with cycle_context():
                self._last_tick_started = self._clock()
                logger.info("Scheduled price update starting")
                try:
                    await self._cycle()
                except asyncio.CancelledError:
                    raise
                except Exception:  # noqa: BLE001
                    self._last_tick_succeeded = False
                    PRICE_UPDATE_CYCLES.labels("failed").inc()
                    logger.exception("Scheduled price update failed")
                else:
                    self._last_tick_succeeded = True
                    PRICE_UPDATE_CYCLES.labels("completed").inc()
                    logger.info("Scheduled price update completed")
        return True

    async def _run_periodic(self) -> None:
        while not self._stop_event.is_set():
            self._next_update = self._clock() + timedelta(seconds=self.interval_seconds)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                await self.run_once()
            else:
                break


__all__ = ["SchedulerStatus", "UpdateScheduler"]

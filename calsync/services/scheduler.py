"""Periodic refresh and scan ticks on the asyncio event loop."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from calsync.engine import CalendarEngine

logger = logging.getLogger(__name__)


def seconds_until_next_tick(interval: float, now: float | None = None) -> float:
    """Delay until the next wall-clock multiple of *interval* (cron-like alignment)."""
    now = time.time() if now is None else now
    return interval - (now % interval)


class Scheduler:
    """Runs two independent loops: calendar refresh and trigger/token scan.

    Each tick is skipped while a refresh is in flight.
    """

    def __init__(
        self,
        engine: CalendarEngine,
        refresh_interval: float,
        scan_interval: float,
    ) -> None:
        self.engine = engine
        self.refresh_interval = refresh_interval
        self.scan_interval = scan_interval
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(self._run_loop("refresh", self.refresh_interval, self.refresh_tick)),
            asyncio.create_task(self._run_loop("scan", self.scan_interval, self.scan_tick)),
        ]
        logger.info(
            "Scheduler started: refresh every %ss, scan every %ss",
            self.refresh_interval,
            self.scan_interval,
        )

    async def stop(self) -> None:
        self._stop_event.set()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def refresh_tick(self) -> bool:
        if self.engine.orchestrator.is_refreshing:
            logger.debug("Refresh tick skipped, refresh in flight")
            return False
        await self.engine.orchestrator.refresh()
        return True

    async def scan_tick(self) -> bool:
        if self.engine.orchestrator.is_refreshing:
            logger.debug("Scan tick skipped, refresh in flight")
            return False
        self.engine.tick()
        return True

    async def _run_loop(self, name: str, interval: float, tick) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=seconds_until_next_tick(interval)
                )
            except TimeoutError:
                pass
            else:
                return
            try:
                await tick()
            except Exception:
                logger.exception("%s tick failed; continuing", name.capitalize())

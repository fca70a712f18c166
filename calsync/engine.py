"""CalendarEngine: the one object that owns all mutable sync state."""

from __future__ import annotations

import asyncio
import functools
import logging
from datetime import datetime
from typing import Callable

from calsync import telemetry
from calsync.config import (
    FORMAT_SETTINGS,
    REFRESH_SETTINGS,
    SETTING_DATE_FORMAT,
    SETTING_TIME_FORMAT,
    AppConfig,
)
from calsync.domain.bus import EventBus
from calsync.domain.events import EventTrigger
from calsync.domain.handlers import TriggerCards
from calsync.domain.models import DateTimeFormat
from calsync.repos.memory import CalendarStore, SettingsStore, TokenRegistry
from calsync.services.fetcher import CalendarFetcher, fetch_calendar
from calsync.services.scanner import TriggerScanner
from calsync.services.sync import SyncOrchestrator
from calsync.services.tokens import TokenProjector

logger = logging.getLogger(__name__)


class CalendarEngine:
    """Wires store, tokens, triggers and the orchestrator around one settings store."""

    def __init__(
        self,
        config: AppConfig | None = None,
        settings: SettingsStore | None = None,
        fetcher: CalendarFetcher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self.tz = self.config.tz
        self.clock = clock or (lambda: datetime.now(self.tz))
        self.settings = settings or SettingsStore(self.config.settings_path)
        self.store = CalendarStore(self.tz)
        self.tokens = TokenRegistry()
        self.bus = EventBus()
        self.cards = TriggerCards(self.bus, self.store)
        self.projector = TokenProjector(self.tokens, self.read_date_time_format())
        self.scanner = TriggerScanner(self.cards)
        self.orchestrator = SyncOrchestrator(
            self.settings,
            self.store,
            self.cards,
            self.projector,
            fetcher or functools.partial(fetch_calendar, timeout=self.config.fetch_timeout_seconds),
            tz=self.tz,
            fetch_timeout=self.config.fetch_timeout_seconds,
            clock=self.clock,
        )
        self._background: set[asyncio.Task] = set()
        self._started = False

    async def start(self, wait: bool = True) -> None:
        """Register global tokens and listeners, then run the first full refresh.

        With ``wait=False`` the refresh runs as a background task so the
        caller (the app lifespan) is not held up by slow feeds.
        """
        if self._started:
            return
        self._started = True
        self.projector.register_global_tokens()
        self.settings.on_set(self.on_setting_changed)
        if wait:
            logger.info("Initial refresh with registration of calendar tokens")
            await self.orchestrator.refresh(reregister_tokens=True)
        else:
            self.request_refresh(reregister_tokens=True, reason="startup")

    async def wait_idle(self) -> None:
        """Wait for background refreshes scheduled so far."""
        tasks = list(self._background)
        if tasks:
            await asyncio.gather(*tasks)

    async def close(self) -> None:
        tasks, self._background = self._background, set()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def read_date_time_format(self) -> DateTimeFormat:
        return DateTimeFormat.from_patterns(
            self.settings.get(SETTING_DATE_FORMAT), self.settings.get(SETTING_TIME_FORMAT)
        )

    def tick(self, now: datetime | None = None) -> list[EventTrigger]:
        """Update token values, then fire triggers. Returns delivered triggers."""
        now = now or self.clock()
        try:
            self.projector.refresh(self.store, now)
        except Exception as exc:
            logger.exception("Failed to update tokens")
            telemetry.capture_exception(exc)
        return self.scanner.scan(self.store, now)

    async def sync_calendar(self) -> bool:
        """Action card: refresh without token re-registration unless one is running."""
        if self.orchestrator.is_refreshing:
            logger.info("sync_calendar: refresh already running")
            return True
        await self.orchestrator.refresh()
        return True

    def on_setting_changed(self, key: str) -> None:
        if key in FORMAT_SETTINGS:
            self.projector.fmt = self.read_date_time_format()
            logger.info("Date/time format updated from '%s'", key)
        elif key in REFRESH_SETTINGS:
            self.request_refresh(reregister_tokens=True, reason=key)

    def request_refresh(
        self, reregister_tokens: bool = False, reason: str = ""
    ) -> asyncio.Task | None:
        """Schedule a refresh on the running loop; dropped while one is running."""
        if self.orchestrator.is_refreshing:
            logger.info("Refresh for '%s' dropped, refresh in flight", reason)
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, refresh for '%s' not scheduled", reason)
            return None
        logger.info("Triggering refresh with token re-registration for '%s'", reason)
        task = loop.create_task(self.orchestrator.refresh(reregister_tokens=reregister_tokens))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

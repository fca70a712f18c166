"""Service that refreshes every configured calendar and announces changes."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable
from urllib.parse import urlparse

from pydantic import TypeAdapter, ValidationError

from calsync import telemetry
from calsync.config import (
    SETTING_EVENT_LIMIT,
    SETTING_NEXT_EVENT_TOKENS_PER_CALENDAR,
    SETTING_URIS,
    STORAGE_EVENT_UIDS,
)
from calsync.domain.events import CalendarChanged, EventAdded
from calsync.domain.handlers import TriggerCards
from calsync.domain.models import (
    CalendarConfig,
    CalendarEvents,
    CalendarFetchResult,
    EventLimit,
    RefreshResult,
)
from calsync.repos.memory import CalendarStore, SettingsStore
from calsync.services.diff import (
    dump_snapshot,
    filter_updated_calendars,
    get_event_uids,
    get_new_events,
    load_snapshot,
)
from calsync.services.extractor import get_active_events
from calsync.services.fetcher import DEFAULT_TIMEOUT_SECONDS, CalendarFetcher
from calsync.services.formatting import trigger_tokens
from calsync.services.tokens import TokenProjector

logger = logging.getLogger(__name__)

_CALENDARS_ADAPTER = TypeAdapter(list[CalendarConfig])

ALLOWED_SCHEMES = ("http", "https", "webcal")


def normalize_uri(uri: str) -> str | None:
    """Return the URI to fetch, or None when the scheme is not supported.

    ``webcal://`` is fetched over https.
    """
    parsed = urlparse(uri.strip())
    if parsed.scheme.lower() not in ALLOWED_SCHEMES or not parsed.netloc:
        return None
    if parsed.scheme.lower() == "webcal":
        return parsed._replace(scheme="https").geturl()
    return uri.strip()


class SyncOrchestrator:
    """Single-flight refresh of all calendars: idle -> refreshing -> idle."""

    def __init__(
        self,
        settings: SettingsStore,
        store: CalendarStore,
        cards: TriggerCards,
        projector: TokenProjector,
        fetcher: CalendarFetcher,
        *,
        tz: tzinfo = timezone.utc,
        fetch_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.cards = cards
        self.projector = projector
        self.fetcher = fetcher
        self.tz = tz
        self.fetch_timeout = fetch_timeout
        self.clock = clock or (lambda: datetime.now(self.tz))
        self._refreshing = False

    @property
    def is_refreshing(self) -> bool:
        return self._refreshing

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def read_calendars(self) -> list[CalendarConfig]:
        return _read_setting(self.settings, SETTING_URIS, _CALENDARS_ADAPTER, [])

    def read_event_limit(self) -> EventLimit:
        return _read_setting(
            self.settings, SETTING_EVENT_LIMIT, TypeAdapter(EventLimit), EventLimit()
        )

    def include_next_event_tokens(self) -> bool:
        return bool(self.settings.get(SETTING_NEXT_EVENT_TOKENS_PER_CALENDAR, False))

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self, reregister_tokens: bool = False) -> RefreshResult:
        """Refresh every calendar. Rejected (``started=False``) while one is running.

        Per-calendar failures are recorded on the calendar's config and in
        the result; they never fail the refresh as a whole.
        """
        if self._refreshing:
            logger.info("Refresh already running, request dropped")
            return RefreshResult(started=False)

        self._refreshing = True
        try:
            with telemetry.get_tracer().start_as_current_span("calsync.refresh"):
                return await self._refresh(reregister_tokens)
        finally:
            self._refreshing = False

    async def _refresh(self, reregister_tokens: bool) -> RefreshResult:
        calendars = self.read_calendars()
        limit = self.read_event_limit()
        previous = load_snapshot(self.settings.get(STORAGE_EVENT_UIDS))
        logger.info(
            "Refreshing %d calendars (%d %s ahead), %d calendars in uid snapshot",
            len(calendars),
            limit.value,
            limit.type.value,
            len(previous),
        )

        results: list[CalendarFetchResult] = []
        for config in calendars:
            results.append(await self._sync_calendar(config, limit))

        self._record_errors(calendars, results)

        configured = [config.name for config in calendars]
        for result in results:
            if result.ok:
                self.store.replace(result.name, result.events)
        for name in self.store.names():
            if name not in configured:
                self.store.remove(name)

        current = [
            CalendarEvents(name=name, events=self.store.get(name))
            for name in configured
            if self.store.get(name) is not None
        ]
        changed = filter_updated_calendars(previous, current)
        added = get_new_events(previous, current)
        logger.info("%d calendars changed, %d events added", len(changed), len(added))
        for name in changed:
            self._announce(CalendarChanged(calendar_name=name))
        for item in added:
            self._announce(
                EventAdded(tokens=trigger_tokens(item.event, item.calendar_name), event=item.event)
            )

        snapshot = get_event_uids(current)
        # Calendars without a usable list keep their known uids, so a later
        # successful fetch does not announce old events as new.
        for name in configured:
            if name not in snapshot and name in previous:
                snapshot[name] = previous[name]
        self.settings.set(STORAGE_EVENT_UIDS, dump_snapshot(snapshot))

        if reregister_tokens:
            self.projector.rebuild_calendar_tokens(
                self.store.names(), self.include_next_event_tokens()
            )

        return RefreshResult(results=results, changed_calendars=changed, added_events=added)

    async def _sync_calendar(self, config: CalendarConfig, limit: EventLimit) -> CalendarFetchResult:
        if not config.uri:
            logger.info("Calendar '%s' has empty uri. Skipping...", config.name)
            return CalendarFetchResult(name=config.name, skipped=True)

        uri = normalize_uri(config.uri)
        if uri is None:
            logger.warning("Uri for calendar '%s' is invalid. Skipping...", config.name)
            return CalendarFetchResult(
                name=config.name,
                uri=config.uri,
                error=f"Uri for calendar '{config.name}' is invalid",
                skipped=True,
            )

        logger.info("Getting events for calendar '%s' from %s", config.name, uri)
        try:
            parsed = await asyncio.wait_for(self.fetcher(uri), timeout=self.fetch_timeout)
            events = get_active_events(parsed, limit, self.clock(), self.tz)
        except TimeoutError:
            error = f"Timed out after {self.fetch_timeout:g} seconds"
            logger.warning("Failed to get events for calendar '%s': %s", config.name, error)
            return CalendarFetchResult(name=config.name, uri=uri, error=error)
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.warning("Failed to get events for calendar '%s': %s", config.name, error)
            return CalendarFetchResult(name=config.name, uri=uri, error=error)

        logger.info("Events for calendar '%s' updated. Event count: %d", config.name, len(events))
        return CalendarFetchResult(name=config.name, uri=uri, events=events)

    def _record_errors(
        self, calendars: list[CalendarConfig], results: list[CalendarFetchResult]
    ) -> None:
        updated: list[CalendarConfig] = []
        for config, result in zip(calendars, results):
            if result.ok:
                last_error = None
            elif result.error is not None:
                last_error = result.error
            else:
                last_error = config.last_error
            updated.append(config.model_copy(update={"last_error": last_error}))

        if updated != calendars:
            self.settings.set(SETTING_URIS, [config.model_dump() for config in updated])

    def _announce(self, notification: Any) -> None:
        try:
            self.cards.trigger(notification)
        except Exception as exc:
            logger.exception("Failed to trigger '%s'", notification.trigger_id)
            telemetry.capture_exception(exc)


def _read_setting(settings: SettingsStore, key: str, adapter: TypeAdapter, default: Any) -> Any:
    raw = settings.get(key)
    if raw is None:
        return default
    try:
        return adapter.validate_python(raw)
    except ValidationError as exc:
        logger.warning("Ignoring invalid setting '%s': %s", key, exc)
        return default

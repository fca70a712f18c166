"""FastAPI application: host surface for settings, flows and tokens."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, HTTPException

from calsync import telemetry
from calsync.config import AppConfig, configure_logging
from calsync.domain.handlers import InCardArgs
from calsync.domain.models import (
    CalendarConfig,
    CalendarEvent,
    ConditionRequest,
    EventOccurrence,
    NextEvent,
    SettingValue,
    TickResponse,
)
from calsync.engine import CalendarEngine
from calsync.services import conditions
from calsync.services.scheduler import Scheduler


def create_app(engine: CalendarEngine | None = None, run_scheduler: bool = True) -> FastAPI:
    """Build the app around *engine*; the scheduler runs for the app's lifetime."""
    engine = engine or CalendarEngine(AppConfig.from_env())
    config = engine.config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(config.log_level)
        telemetry.init_telemetry(config.service_name)
        await engine.start(wait=False)
        scheduler = Scheduler(
            engine,
            refresh_interval=config.refresh_interval_seconds,
            scan_interval=config.scan_interval_seconds,
        )
        if run_scheduler:
            await scheduler.start()
        app.state.scheduler = scheduler
        try:
            yield
        finally:
            await scheduler.stop()
            await engine.close()

    app = FastAPI(title="Calendar Sync Service", lifespan=lifespan)
    app.state.engine = engine

    # ── Settings ──────────────────────────────────────────────────────

    @app.get("/settings/{key}", response_model=SettingValue)
    def get_setting(key: str) -> SettingValue:
        if key not in engine.settings.keys():
            raise HTTPException(status_code=404, detail="Setting not found")
        return SettingValue(value=engine.settings.get(key))

    @app.put("/settings/{key}", response_model=SettingValue)
    async def set_setting(key: str, body: SettingValue) -> SettingValue:
        """Store a setting; calendar settings schedule a refresh."""
        engine.settings.set(key, body.value)
        return SettingValue(value=engine.settings.get(key))

    # ── Calendars and events ──────────────────────────────────────────

    @app.get("/calendars", response_model=list[CalendarConfig])
    def list_calendars() -> list[CalendarConfig]:
        """Configured calendars, with the last fetch error of each."""
        return engine.orchestrator.read_calendars()

    @app.get("/calendars/{name}/events", response_model=list[EventOccurrence])
    def list_calendar_events(name: str) -> list[EventOccurrence]:
        events = engine.store.get(name)
        if events is None:
            raise HTTPException(status_code=404, detail="Calendar not found")
        return events

    @app.get("/events/next", response_model=NextEvent)
    def next_event(calendar: str | None = None) -> NextEvent:
        return engine.store.next_event(engine.clock(), calendar)

    @app.get("/events/today", response_model=list[CalendarEvent])
    def todays_events(calendar: str | None = None) -> list[CalendarEvent]:
        return engine.store.todays_events(engine.clock(), calendar)

    @app.get("/events/tomorrow", response_model=list[CalendarEvent])
    def tomorrows_events(calendar: str | None = None) -> list[CalendarEvent]:
        return engine.store.tomorrows_events(engine.clock(), calendar)

    # ── Flows ─────────────────────────────────────────────────────────

    @app.post("/sync")
    async def sync_calendar() -> dict:
        """Action card: refresh all calendars now."""
        return {"finished": await engine.sync_calendar()}

    @app.post("/tick", response_model=TickResponse)
    def tick(now: datetime | None = None) -> TickResponse:
        """Update tokens and fire due triggers.

        Pass *now* to control the simulated clock; naive values are read in
        the configured timezone.
        """
        if now is not None and now.tzinfo is None:
            now = now.replace(tzinfo=engine.tz)
        current_time = now or engine.clock()
        fired = engine.tick(current_time)
        return TickResponse(
            time=current_time, triggers_fired=[notification.trigger_id for notification in fired]
        )

    @app.post("/conditions/{card_id}")
    def check_condition(card_id: str, body: ConditionRequest) -> dict:
        now = engine.clock()
        if card_id == "event_ongoing":
            result = conditions.event_ongoing(engine.store, now, body.calendar)
        elif card_id == "event_in":
            result = conditions.event_starts_within(
                engine.store, now, InCardArgs(when=body.when, unit=body.unit), body.calendar
            )
        elif card_id == "event_stops_in":
            result = conditions.event_stops_within(
                engine.store, now, InCardArgs(when=body.when, unit=body.unit), body.calendar
            )
        else:
            raise HTTPException(status_code=404, detail="Condition card not found")
        return {"result": result}

    @app.get("/autocomplete/calendars")
    def autocomplete_calendars(query: str | None = None) -> list[dict[str, str]]:
        return engine.cards.autocomplete_calendars(query)

    # ── Tokens ────────────────────────────────────────────────────────

    @app.get("/tokens")
    def list_tokens() -> dict:
        return engine.tokens.values()

    return app


app = create_app()

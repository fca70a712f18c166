"""Trigger cards: flow subscriptions with run listeners and autocomplete."""

from __future__ import annotations

import logging
from typing import Any, Callable

from pydantic import BaseModel, Field

from calsync.domain.bus import EventBus
from calsync.domain.events import (
    CalendarChanged,
    EventAdded,
    EventStarts,
    EventStartsCalendar,
    EventStartsIn,
    EventStops,
    EventStopsIn,
)
from calsync.domain.models import TimeUnit, convert_to_minutes
from calsync.repos.memory import CalendarStore

logger = logging.getLogger(__name__)

PLAIN_TRIGGERS = {
    "event_starts": EventStarts,
    "event_stops": EventStops,
    "event_added": EventAdded,
    "calendar_changed": CalendarChanged,
}


class InCardArgs(BaseModel):
    """Arguments of the 'starts in' / 'stops in' cards."""

    when: int = Field(ge=0)
    unit: TimeUnit = TimeUnit.MINUTES


class CalendarCardArgs(BaseModel):
    calendar: str


def in_run_listener(args: InCardArgs, state: EventStartsIn | EventStopsIn) -> bool:
    """Exact match between the requested offset and the computed minutes."""
    result = convert_to_minutes(args.when, args.unit) == state.when
    if result:
        logger.info("Triggered '%s' with state when=%s", state.trigger_id, state.when)
    return result


def calendar_run_listener(args: CalendarCardArgs, state: EventStartsCalendar) -> bool:
    result = args.calendar == state.calendar_name
    if result:
        logger.info("Triggered '%s' for calendar '%s'", state.trigger_id, state.calendar_name)
    return result


class TriggerCards:
    """Wires flow subscriptions to the bus and fires notifications."""

    def __init__(self, bus: EventBus, store: CalendarStore) -> None:
        self.bus = bus
        self.store = store

    def trigger(self, notification: Any) -> None:
        self.bus.publish(notification)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, trigger_type: type, callback: Callable) -> Callable:
        self.bus.subscribe(trigger_type, callback)
        return callback

    def unsubscribe(self, trigger_type: type, handler: Callable) -> None:
        self.bus.unsubscribe(trigger_type, handler)

    def on_event_starts_in(
        self, args: InCardArgs, callback: Callable[[EventStartsIn], None]
    ) -> Callable:
        return self._subscribe_with(EventStartsIn, args, in_run_listener, callback)

    def on_event_stops_in(
        self, args: InCardArgs, callback: Callable[[EventStopsIn], None]
    ) -> Callable:
        return self._subscribe_with(EventStopsIn, args, in_run_listener, callback)

    def on_event_starts_calendar(
        self, args: CalendarCardArgs, callback: Callable[[EventStartsCalendar], None]
    ) -> Callable:
        return self._subscribe_with(EventStartsCalendar, args, calendar_run_listener, callback)

    def _subscribe_with(
        self,
        trigger_type: type,
        args: BaseModel,
        run_listener: Callable[[Any, Any], bool],
        callback: Callable,
    ) -> Callable:
        def handler(state: Any) -> None:
            if run_listener(args, state):
                callback(state)

        return self.subscribe(trigger_type, handler)

    # ------------------------------------------------------------------
    # Autocomplete
    # ------------------------------------------------------------------

    def autocomplete_calendars(self, query: str | None = None) -> list[dict[str, str]]:
        names = self.store.names()
        if query:
            needle = query.lower()
            names = [name for name in names if needle in name.lower()]
        return [{"id": name, "name": name} for name in names]

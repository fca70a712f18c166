"""Service that classifies every active event against the current time and
fires start, stop, starts-in and stops-in triggers."""

from __future__ import annotations

import logging
from datetime import datetime

from calsync import telemetry
from calsync.config import SCAN_TOLERANCE_SECONDS
from calsync.domain.events import (
    EventStarts,
    EventStartsCalendar,
    EventStartsIn,
    EventStops,
    EventStopsIn,
    EventTrigger,
)
from calsync.domain.handlers import TriggerCards
from calsync.domain.models import EventOccurrence, whole_minutes
from calsync.repos.memory import CalendarStore
from calsync.services.formatting import trigger_tokens

logger = logging.getLogger(__name__)


def classify_event(
    event: EventOccurrence,
    calendar_name: str,
    now: datetime,
    tolerance: int = SCAN_TOLERANCE_SECONDS,
) -> list[EventTrigger]:
    """Return the notifications *event* warrants at *now*.

    Start and stop fire while the instant lies within *tolerance* seconds in
    the past; with a scan every minute or faster each fires exactly once.
    """
    start_diff = int((now - event.start).total_seconds())
    end_diff = int((now - event.end).total_seconds())

    starts = 0 <= start_diff <= tolerance and end_diff <= 0
    stops = 0 <= end_diff <= tolerance

    tokens = trigger_tokens(event, calendar_name)
    notifications: list[EventTrigger] = []
    if starts:
        notifications.append(EventStarts(tokens=tokens, event=event))
        notifications.append(
            EventStartsCalendar(tokens=tokens, event=event, calendar_name=calendar_name)
        )
    if stops:
        notifications.append(EventStops(tokens=tokens, event=event))
    if not starts and start_diff < 0:
        notifications.append(
            EventStartsIn(tokens=tokens, event=event, when=whole_minutes(event.start - now))
        )
    if not stops and end_diff < 0:
        notifications.append(
            EventStopsIn(tokens=tokens, event=event, when=whole_minutes(event.end - now))
        )
    return notifications


class TriggerScanner:
    def __init__(self, cards: TriggerCards, tolerance: int = SCAN_TOLERANCE_SECONDS) -> None:
        self.cards = cards
        self.tolerance = tolerance

    def scan(self, store: CalendarStore, now: datetime) -> list[EventTrigger]:
        """Fire triggers for every event in *store*; returns what was delivered.

        A notification whose delivery fails is logged and reported, and the
        scan carries on with the rest.
        """
        delivered: list[EventTrigger] = []
        with telemetry.get_tracer().start_as_current_span("calsync.scan"):
            for calendar in store.list_all():
                logger.debug("Checking calendar '%s' for events to trigger", calendar.name)
                for event in calendar.events:
                    for notification in classify_event(
                        event, calendar.name, now, self.tolerance
                    ):
                        if self._fire(notification):
                            delivered.append(notification)
        return delivered

    def _fire(self, notification: EventTrigger) -> bool:
        try:
            self.cards.trigger(notification)
        except Exception as exc:
            logger.exception("'%s' failed to trigger", notification.trigger_id)
            telemetry.capture_exception(exc)
            return False
        if not isinstance(notification, (EventStartsIn, EventStopsIn)):
            logger.info(
                "Triggered '%s' for '%s'",
                notification.trigger_id,
                notification.tokens.event_name,
            )
        return True

"""Trigger notifications fired by the scanner and the sync orchestrator."""

from __future__ import annotations

from pydantic import BaseModel

from calsync.domain.models import EventOccurrence


class TriggerTokens(BaseModel):
    """Values handed to a flow when an event trigger fires."""

    event_name: str = ""
    event_description: str = ""
    event_location: str = ""
    event_duration_readable: str = ""
    event_duration: int = 0
    event_calendar_name: str = ""


class EventTrigger(BaseModel):
    trigger_id: str = ""
    tokens: TriggerTokens
    event: EventOccurrence


class EventStarts(EventTrigger):
    """Fired when an event starts."""

    trigger_id: str = "event_starts"


class EventStartsCalendar(EventTrigger):
    """Fired when an event starts, matched against a chosen calendar."""

    trigger_id: str = "event_starts_calendar"
    calendar_name: str


class EventStops(EventTrigger):
    """Fired when an event stops."""

    trigger_id: str = "event_stops"


class EventStartsIn(EventTrigger):
    """Fired every scan for upcoming events; *when* is whole minutes to start."""

    trigger_id: str = "event_starts_in"
    when: int


class EventStopsIn(EventTrigger):
    """Fired every scan for unfinished events; *when* is whole minutes to end."""

    trigger_id: str = "event_stops_in"
    when: int


class EventAdded(EventTrigger):
    """Fired once for each event that appeared since the previous sync."""

    trigger_id: str = "event_added"


class CalendarChanged(BaseModel):
    """Fired when the set of events in a calendar changed."""

    trigger_id: str = "calendar_changed"
    calendar_name: str

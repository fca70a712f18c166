"""Service for detecting new events and changed calendars between syncs.

Comparison is by uid membership only: an event that keeps its uid but
changes title or time is neither new nor a change.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, TypeAdapter, ValidationError

from calsync.domain.models import CalendarEvent, CalendarEvents

logger = logging.getLogger(__name__)

EventUidSnapshot = dict[str, set[str]]


class EventUid(BaseModel):
    """One entry of the flat, persisted snapshot."""

    calendar: str
    uid: str


_SNAPSHOT_ADAPTER = TypeAdapter(list[EventUid])


def get_event_uids(calendars: list[CalendarEvents]) -> EventUidSnapshot:
    return {calendar.name: {event.uid for event in calendar.events} for calendar in calendars}


def dump_snapshot(snapshot: EventUidSnapshot) -> str:
    entries = [
        EventUid(calendar=name, uid=uid)
        for name, uids in snapshot.items()
        for uid in sorted(uids)
    ]
    return _SNAPSHOT_ADAPTER.dump_json(entries).decode("utf-8")


def load_snapshot(raw: str | None) -> EventUidSnapshot:
    """Read a persisted snapshot; unreadable data counts as no snapshot."""
    if not raw:
        return {}
    try:
        entries = _SNAPSHOT_ADAPTER.validate_json(raw)
    except ValidationError as exc:
        logger.warning("Ignoring unreadable event uid snapshot: %s", exc)
        return {}
    snapshot: EventUidSnapshot = {}
    for entry in entries:
        snapshot.setdefault(entry.calendar, set()).add(entry.uid)
    return snapshot


def filter_updated_calendars(
    previous: EventUidSnapshot, calendars: list[CalendarEvents]
) -> list[str]:
    """Names of calendars whose uid set differs from *previous*."""
    if not previous:
        return []
    return [
        calendar.name
        for calendar in calendars
        if {event.uid for event in calendar.events} != previous.get(calendar.name, set())
    ]


def get_new_events(
    previous: EventUidSnapshot, calendars: list[CalendarEvents]
) -> list[CalendarEvent]:
    """Events whose uid was not in the calendar's previous uid set.

    Without a previous snapshot nothing is new, so a first sync does not
    announce every event.
    """
    if not previous:
        return []
    added: list[CalendarEvent] = []
    for calendar in calendars:
        known = previous.get(calendar.name, set())
        added.extend(
            CalendarEvent(calendar_name=calendar.name, event=event)
            for event in calendar.events
            if event.uid not in known
        )
    return added

"""Condition cards evaluated against the calendar store."""

from __future__ import annotations

from datetime import datetime, timedelta

from calsync.domain.handlers import InCardArgs
from calsync.domain.models import convert_to_minutes
from calsync.repos.memory import CalendarStore


def event_ongoing(store: CalendarStore, now: datetime, calendar_name: str | None = None) -> bool:
    """True while any event (optionally in one calendar) is in progress."""
    return any(
        item.event.start <= now < item.event.end for item in store.iter_events(calendar_name)
    )


def event_starts_within(
    store: CalendarStore, now: datetime, args: InCardArgs, calendar_name: str | None = None
) -> bool:
    """True when an event starts between now and the requested offset."""
    window = timedelta(minutes=convert_to_minutes(args.when, args.unit))
    return any(
        now <= item.event.start <= now + window for item in store.iter_events(calendar_name)
    )


def event_stops_within(
    store: CalendarStore, now: datetime, args: InCardArgs, calendar_name: str | None = None
) -> bool:
    """True when an ongoing event ends between now and the requested offset."""
    window = timedelta(minutes=convert_to_minutes(args.when, args.unit))
    return any(
        item.event.start <= now <= item.event.end <= now + window
        for item in store.iter_events(calendar_name)
    )

"""Formatting of dates, times, durations and event digests for tokens."""

from __future__ import annotations

import math
from datetime import datetime, timedelta

from calsync.domain.events import TriggerTokens
from calsync.domain.models import (
    CalendarEvent,
    DateTimeFormat,
    DateType,
    EventOccurrence,
)

# Unit lengths in seconds, largest first. A month is 1/12 of a Julian year.
_UNITS = [
    ("year", 31_557_600),
    ("month", 2_629_800),
    ("week", 604_800),
    ("day", 86_400),
    ("hour", 3_600),
    ("minute", 60),
]


def humanize_duration(delta: timedelta, largest: int = 3, conjunction: str = " and ") -> str:
    """Render *delta* with at most *largest* units, rounding the smallest shown.

    >>> humanize_duration(timedelta(hours=1, minutes=30))
    '1 hour and 30 minutes'
    """
    seconds = max(delta.total_seconds(), 0.0)
    first = _first_unit(seconds)
    last = min(first + largest - 1, len(_UNITS) - 1)

    step = _UNITS[last][1]
    rounded = math.floor(seconds / step + 0.5) * step
    # Rounding up can carry into a larger unit (59.6 minutes -> 1 hour).
    first = _first_unit(rounded)
    last = min(first + largest - 1, len(_UNITS) - 1)

    parts: list[str] = []
    remaining = rounded
    for name, size in _UNITS[first : last + 1]:
        count = int(remaining // size)
        remaining -= count * size
        if count:
            parts.append(f"{count} {name}{'' if count == 1 else 's'}")
    if not parts:
        return "0 minutes"
    if len(parts) == 1:
        return parts[0]
    return ", ".join(parts[:-1]) + conjunction + parts[-1]


def _first_unit(seconds: float) -> int:
    for index, (_, size) in enumerate(_UNITS):
        if seconds >= size:
            return index
    return len(_UNITS) - 1


def duration_minutes(event: EventOccurrence) -> int:
    return int(event.duration.total_seconds() // 60)


def clean_text(value: str | None) -> str:
    """Return *value*, or "" when it holds only whitespace or escaped line breaks."""
    if not value:
        return ""
    if not value.replace("\\n", "").replace("\\r", "").strip():
        return ""
    return value


def format_date(value: datetime, fmt: DateTimeFormat) -> str:
    return value.strftime(fmt.date)


def format_time_slot(event: EventOccurrence, value: datetime, fmt: DateTimeFormat) -> str:
    """Clock time of *value*, or a midnight placeholder for all-day events."""
    if event.date_type == DateType.DATE:
        return f"00{fmt.splitter}00"
    return value.strftime(fmt.time)


def format_digest_line(event: EventOccurrence, fmt: DateTimeFormat) -> str:
    if event.date_type == DateType.DATE:
        return event.summary
    start = event.start.strftime(fmt.time)
    if event.start.date() == event.end.date():
        end = event.end.strftime(fmt.time)
    else:
        end = f"{event.end.strftime(fmt.date)} {event.end.strftime(fmt.time)}"
    return f"{start} - {end} {event.summary}"


def format_digest(events: list[CalendarEvent], fmt: DateTimeFormat) -> str:
    """One line per event, in the given order; empty list gives ""."""
    return "\n".join(format_digest_line(item.event, fmt) for item in events)


def trigger_tokens(event: EventOccurrence, calendar_name: str) -> TriggerTokens:
    return TriggerTokens(
        event_name=clean_text(event.summary),
        event_description=clean_text(event.description),
        event_location=clean_text(event.location),
        event_duration_readable=humanize_duration(event.duration),
        event_duration=duration_minutes(event),
        event_calendar_name=calendar_name,
    )

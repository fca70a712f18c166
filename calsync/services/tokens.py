"""Service that projects the calendar store onto published tokens.

Missing values follow one rule set: text is "", counts are 0, and
durations or minute offsets are -1 when no event applies.
"""

from __future__ import annotations

import logging
from datetime import datetime

from calsync import telemetry
from calsync.domain.models import (
    DIGEST_KINDS,
    NEXT_EVENT_KINDS,
    DateTimeFormat,
    NextEvent,
    TokenDescriptor,
    TokenKind,
    TokenType,
)
from calsync.repos.memory import CalendarStore, Token, TokenRegistry
from calsync.services.formatting import (
    duration_minutes,
    format_date,
    format_digest,
    format_time_slot,
    humanize_duration,
)

logger = logging.getLogger(__name__)

GLOBAL_TOKENS: list[tuple[str, TokenType, str]] = [
    ("event_next_title", TokenType.STRING, "Next event title"),
    ("event_next_startdate", TokenType.STRING, "Next event start date"),
    ("event_next_startstamp", TokenType.STRING, "Next event start time"),
    ("event_next_stopdate", TokenType.STRING, "Next event end date"),
    ("event_next_stopstamp", TokenType.STRING, "Next event end time"),
    ("event_next_duration", TokenType.STRING, "Next event duration"),
    ("event_next_duration_minutes", TokenType.NUMBER, "Next event duration in minutes"),
    ("event_next_starts_in_minutes", TokenType.NUMBER, "Next event starts in minutes"),
    ("event_next_stops_in_minutes", TokenType.NUMBER, "Next event stops in minutes"),
    ("event_next_calendar_name", TokenType.STRING, "Next event calendar"),
    ("events_today_title_stamps", TokenType.STRING, "Today's events"),
    ("events_today_count", TokenType.NUMBER, "Number of events today"),
    ("events_tomorrow_title_stamps", TokenType.STRING, "Tomorrow's events"),
    ("events_tomorrow_count", TokenType.NUMBER, "Number of events tomorrow"),
]


def calendar_descriptors(names: list[str], include_next: bool) -> list[TokenDescriptor]:
    kinds = DIGEST_KINDS + NEXT_EVENT_KINDS if include_next else DIGEST_KINDS
    return [TokenDescriptor(calendar_name=name, kind=kind) for name in names for kind in kinds]


def next_event_values(next_event: NextEvent, fmt: DateTimeFormat) -> dict[str, str | int]:
    event = next_event.event
    if event is None:
        return {
            "title": "",
            "startdate": "",
            "starttime": "",
            "enddate": "",
            "endtime": "",
            "duration": "",
            "duration_minutes": -1,
            "starts_in": -1,
            "stops_in": -1,
            "calendar_name": "",
        }
    return {
        "title": event.summary,
        "startdate": format_date(event.start, fmt),
        "starttime": format_time_slot(event, event.start, fmt),
        "enddate": format_date(event.end, fmt),
        "endtime": format_time_slot(event, event.end, fmt),
        "duration": humanize_duration(event.duration),
        "duration_minutes": duration_minutes(event),
        "starts_in": next_event.starts_in,
        "stops_in": next_event.stops_in,
        "calendar_name": next_event.calendar_name or "",
    }


def compute_global_values(
    store: CalendarStore, now: datetime, fmt: DateTimeFormat
) -> dict[str, str | int]:
    nxt = next_event_values(store.next_event(now), fmt)
    today = store.todays_events(now)
    tomorrow = store.tomorrows_events(now)
    return {
        "event_next_title": nxt["title"],
        "event_next_startdate": nxt["startdate"],
        "event_next_startstamp": nxt["starttime"],
        "event_next_stopdate": nxt["enddate"],
        "event_next_stopstamp": nxt["endtime"],
        "event_next_duration": nxt["duration"],
        "event_next_duration_minutes": nxt["duration_minutes"],
        "event_next_starts_in_minutes": nxt["starts_in"],
        "event_next_stops_in_minutes": nxt["stops_in"],
        "event_next_calendar_name": nxt["calendar_name"],
        "events_today_title_stamps": format_digest(today, fmt),
        "events_today_count": len(today),
        "events_tomorrow_title_stamps": format_digest(tomorrow, fmt),
        "events_tomorrow_count": len(tomorrow),
    }


_NEXT_KIND_FIELDS = {
    TokenKind.NEXT_TITLE: "title",
    TokenKind.NEXT_STARTDATE: "startdate",
    TokenKind.NEXT_STARTTIME: "starttime",
    TokenKind.NEXT_ENDDATE: "enddate",
    TokenKind.NEXT_ENDTIME: "endtime",
}


def compute_calendar_values(
    store: CalendarStore,
    descriptors: list[TokenDescriptor],
    now: datetime,
    fmt: DateTimeFormat,
) -> dict[TokenDescriptor, str]:
    values: dict[TokenDescriptor, str] = {}
    next_by_calendar: dict[str, dict[str, str | int]] = {}
    for descriptor in descriptors:
        name = descriptor.calendar_name
        if descriptor.kind == TokenKind.TODAY:
            values[descriptor] = format_digest(store.todays_events(now, name), fmt)
        elif descriptor.kind == TokenKind.TOMORROW:
            values[descriptor] = format_digest(store.tomorrows_events(now, name), fmt)
        else:
            if name not in next_by_calendar:
                next_by_calendar[name] = next_event_values(store.next_event(now, name), fmt)
            values[descriptor] = str(next_by_calendar[name][_NEXT_KIND_FIELDS[descriptor.kind]])
    return values


class TokenProjector:
    """Owns the registered tokens and pushes fresh values into them."""

    def __init__(self, registry: TokenRegistry, fmt: DateTimeFormat | None = None) -> None:
        self.registry = registry
        self.fmt = fmt or DateTimeFormat()
        self.global_tokens: dict[str, Token] = {}
        self.calendar_tokens: dict[TokenDescriptor, Token] = {}

    def register_global_tokens(self) -> None:
        for token_id, token_type, title in GLOBAL_TOKENS:
            if token_id not in self.global_tokens:
                self.global_tokens[token_id] = self.registry.create_token(token_id, token_type, title)
                logger.debug("Token '%s' created", token_id)

    def rebuild_calendar_tokens(self, names: list[str], include_next: bool) -> None:
        """Withdraw every per-calendar token, then register the current set."""
        if self.calendar_tokens:
            logger.info("Calendar tokens starting to flush")
            for token in self.calendar_tokens.values():
                token.unregister()
            self.calendar_tokens = {}

        for descriptor in calendar_descriptors(names, include_next):
            self.calendar_tokens[descriptor] = self.registry.create_token(
                descriptor.id, descriptor.type, descriptor.title
            )
            logger.debug("Registered calendar token '%s'", descriptor.id)

    def refresh(self, store: CalendarStore, now: datetime) -> None:
        logger.debug("Updating tokens")
        global_values = compute_global_values(store, now, self.fmt)
        for token_id, token in self.global_tokens.items():
            self._set(token, global_values[token_id])

        calendar_values = compute_calendar_values(
            store, list(self.calendar_tokens), now, self.fmt
        )
        for descriptor, token in self.calendar_tokens.items():
            self._set(token, calendar_values[descriptor])

    def _set(self, token: Token, value: str | int) -> None:
        try:
            token.set_value(value)
        except Exception as exc:
            logger.exception("Failed to set token '%s'", token.id)
            telemetry.capture_exception(exc)

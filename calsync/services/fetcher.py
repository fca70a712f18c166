"""Fetch a remote iCalendar feed and parse it into a ParsedCalendar."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import date, datetime
from typing import Any

import httpx
from icalendar import Calendar
from pydantic import ValidationError

from calsync.domain.models import ParsedCalendar, RawEvent

logger = logging.getLogger(__name__)

CalendarFetcher = Callable[[str], Awaitable[ParsedCalendar]]

DEFAULT_TIMEOUT_SECONDS = 20.0


class CalendarFetchError(Exception):
    """Raised when a feed cannot be downloaded or parsed."""


async def fetch_calendar(
    uri: str,
    *,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    client: httpx.AsyncClient | None = None,
) -> ParsedCalendar:
    """Download *uri* and parse it. Raises ``CalendarFetchError`` on failure."""
    try:
        if client is None:
            async with httpx.AsyncClient(follow_redirects=True, timeout=timeout) as own_client:
                response = await own_client.get(uri)
        else:
            response = await client.get(uri, timeout=timeout)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise CalendarFetchError(
            f"{exc.response.status_code} {exc.response.reason_phrase}"
        ) from exc
    except httpx.HTTPError as exc:
        raise CalendarFetchError(str(exc) or type(exc).__name__) from exc

    return parse_calendar(response.content)


def parse_calendar(content: bytes | str) -> ParsedCalendar:
    """Parse iCalendar text. Malformed VEVENTs are skipped with a warning."""
    try:
        calendar = Calendar.from_ical(content)
    except ValueError as exc:
        raise CalendarFetchError(f"Invalid calendar data: {exc}") from exc

    name = calendar.get("X-WR-CALNAME")
    events: list[RawEvent] = []
    for component in calendar.walk("VEVENT"):
        try:
            events.append(_raw_event(component))
        except (ValidationError, KeyError, ValueError, AttributeError) as exc:
            logger.warning("Skipping unreadable VEVENT '%s': %s", component.get("UID"), exc)
    return ParsedCalendar(name=str(name) if name else None, events=events)


def _raw_event(component: Any) -> RawEvent:
    dtstart = component.get("DTSTART")
    if dtstart is None:
        raise KeyError("DTSTART")
    start = dtstart.dt
    dtend = component.get("DTEND")
    duration = component.get("DURATION")
    rrule = component.get("RRULE")
    recurrence_id = component.get("RECURRENCE-ID")
    uid = component.get("UID")

    return RawEvent(
        uid=str(uid) if uid else _fallback_uid(component, start),
        summary=_text(component.get("SUMMARY")),
        description=_text(component.get("DESCRIPTION")),
        location=_text(component.get("LOCATION")),
        start=start,
        end=dtend.dt if dtend is not None else None,
        duration=duration.dt if duration is not None else None,
        rrule=rrule.to_ical().decode("utf-8") if rrule is not None else None,
        rdates=_date_list(component.get("RDATE")),
        exdates=_date_list(component.get("EXDATE")),
        recurrence_id=recurrence_id.dt if recurrence_id is not None else None,
        status=_text(component.get("STATUS")) or None,
    )


def _text(value: Any) -> str:
    return str(value) if value is not None else ""


def _date_list(prop: Any) -> list[datetime | date]:
    """Flatten RDATE/EXDATE, which may appear once or several times."""
    if prop is None:
        return []
    props = prop if isinstance(prop, list) else [prop]
    values: list[datetime | date] = []
    for item in props:
        for entry in getattr(item, "dts", []):
            # Period RDATEs come through as (start, end) tuples
            value = entry.dt[0] if isinstance(entry.dt, tuple) else entry.dt
            values.append(value)
    return values


def _fallback_uid(component: Any, start: datetime | date) -> str:
    return f"{_text(component.get('SUMMARY'))}@{start.isoformat()}"

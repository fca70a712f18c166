"""Domain models for calendar sync, active events and tokens."""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class DateType(StrEnum):
    DATE = "date"
    DATE_TIME = "date-time"


class EventLimitType(StrEnum):
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"
    EVENTS = "events"


class TimeUnit(StrEnum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"


_MINUTES_PER_UNIT = {
    TimeUnit.MINUTES: 1,
    TimeUnit.HOURS: 60,
    TimeUnit.DAYS: 1440,
    TimeUnit.WEEKS: 10080,
}


def convert_to_minutes(when: int, unit: TimeUnit) -> int:
    return when * _MINUTES_PER_UNIT[TimeUnit(unit)]


class TokenType(StrEnum):
    STRING = "string"
    NUMBER = "number"


class TokenKind(StrEnum):
    """Per-calendar token kinds."""

    TODAY = "today"
    TOMORROW = "tomorrow"
    NEXT_TITLE = "next_title"
    NEXT_STARTDATE = "next_startdate"
    NEXT_STARTTIME = "next_starttime"
    NEXT_ENDDATE = "next_enddate"
    NEXT_ENDTIME = "next_endtime"


DIGEST_KINDS = (TokenKind.TODAY, TokenKind.TOMORROW)
NEXT_EVENT_KINDS = (
    TokenKind.NEXT_TITLE,
    TokenKind.NEXT_STARTDATE,
    TokenKind.NEXT_STARTTIME,
    TokenKind.NEXT_ENDDATE,
    TokenKind.NEXT_ENDTIME,
)

_KIND_TITLES = {
    TokenKind.TODAY: "Today's events for",
    TokenKind.TOMORROW: "Tomorrow's events for",
    TokenKind.NEXT_TITLE: "Next event title for",
    TokenKind.NEXT_STARTDATE: "Next event start date for",
    TokenKind.NEXT_STARTTIME: "Next event start time for",
    TokenKind.NEXT_ENDDATE: "Next event end date for",
    TokenKind.NEXT_ENDTIME: "Next event end time for",
}


# ---------------------------------------------------------------------------
# Settings-backed configuration
# ---------------------------------------------------------------------------


class CalendarConfig(BaseModel):
    name: str
    uri: str = ""
    last_error: str | None = None


class EventLimit(BaseModel):
    value: int = Field(default=2, ge=1)
    type: EventLimitType = EventLimitType.MONTHS


class DateTimeFormat(BaseModel):
    """strftime patterns used when rendering tokens."""

    date: str = "%d.%m.%Y"
    time: str = "%H:%M"
    splitter: str = ":"

    @classmethod
    def from_patterns(cls, date_format: str | None, time_format: str | None) -> DateTimeFormat:
        time_pattern = time_format or cls.model_fields["time"].default
        return cls(
            date=date_format or cls.model_fields["date"].default,
            time=time_pattern,
            splitter=_time_splitter(time_pattern),
        )


def _time_splitter(pattern: str) -> str:
    """Return the separator between the hour and minute directives."""
    hour = pattern.find("%H")
    if hour == -1:
        hour = pattern.find("%I")
    minute = pattern.find("%M")
    if hour == -1 or minute <= hour + 2:
        return ":"
    return pattern[hour + 2 : minute] or ":"


# ---------------------------------------------------------------------------
# Parsed calendar payload (what a CalendarFetcher returns)
# ---------------------------------------------------------------------------


class RawEvent(BaseModel):
    """One VEVENT-equivalent entry, possibly carrying a recurrence rule."""

    uid: str
    summary: str = ""
    description: str = ""
    location: str = ""
    start: datetime | date
    end: datetime | date | None = None
    duration: timedelta | None = None
    rrule: str | None = None
    rdates: list[datetime | date] = Field(default_factory=list)
    exdates: list[datetime | date] = Field(default_factory=list)
    recurrence_id: datetime | date | None = None
    status: str | None = None

    @property
    def is_all_day(self) -> bool:
        return not isinstance(self.start, datetime)


class ParsedCalendar(BaseModel):
    name: str | None = None
    events: list[RawEvent] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Active events
# ---------------------------------------------------------------------------


class EventOccurrence(BaseModel):
    """One concrete, time-resolved instance of a calendar entry."""

    model_config = ConfigDict(frozen=True)

    uid: str
    series_uid: str
    summary: str = ""
    description: str = ""
    location: str = ""
    start: datetime
    end: datetime
    date_type: DateType = DateType.DATE_TIME

    @model_validator(mode="after")
    def _end_not_before_start(self) -> EventOccurrence:
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


def whole_minutes(delta: timedelta) -> int:
    """Round a time span to whole minutes, halves rounding up."""
    return math.floor(delta.total_seconds() / 60 + 0.5)


class CalendarEvents(BaseModel):
    name: str
    events: list[EventOccurrence] = Field(default_factory=list)


class NextEvent(BaseModel):
    event: EventOccurrence | None = None
    calendar_name: str | None = None
    starts_in: int = -1
    stops_in: int = -1


class CalendarEvent(BaseModel):
    """An occurrence tagged with the calendar it belongs to."""

    calendar_name: str
    event: EventOccurrence


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TokenDescriptor(BaseModel):
    """Structured identity of a per-calendar token."""

    model_config = ConfigDict(frozen=True)

    calendar_name: str
    kind: TokenKind

    @property
    def id(self) -> str:
        return f"calendar::{self.calendar_name}::{self.kind.value}"

    @property
    def title(self) -> str:
        return f"{_KIND_TITLES[self.kind]} {self.calendar_name}"

    @property
    def type(self) -> TokenType:
        return TokenType.STRING


# ---------------------------------------------------------------------------
# Refresh results
# ---------------------------------------------------------------------------


class CalendarFetchResult(BaseModel):
    name: str
    uri: str = ""
    events: list[EventOccurrence] | None = None
    error: str | None = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.events is not None


class RefreshResult(BaseModel):
    started: bool = True
    results: list[CalendarFetchResult] = Field(default_factory=list)
    changed_calendars: list[str] = Field(default_factory=list)
    added_events: list[CalendarEvent] = Field(default_factory=list)

    @property
    def failed(self) -> list[CalendarFetchResult]:
        return [r for r in self.results if r.error is not None]


# ---------------------------------------------------------------------------
# Request / Response DTOs
# ---------------------------------------------------------------------------


class SettingValue(BaseModel):
    value: Any = None


class ConditionRequest(BaseModel):
    when: int = Field(default=0, ge=0)
    unit: TimeUnit = TimeUnit.MINUTES
    calendar: str | None = None


class TickResponse(BaseModel):
    time: datetime
    triggers_fired: list[str] = Field(default_factory=list)

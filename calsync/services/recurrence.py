"""Service for resolving calendar entries to local times and expanding
recurring entries into individual occurrences."""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from datetime import date, datetime, time, timedelta, timezone, tzinfo

from dateutil.rrule import rruleset, rrulestr

from calsync.domain.models import DateType, EventOccurrence, RawEvent


def to_local(value: datetime | date, tz: tzinfo) -> datetime:
    """Resolve a date or datetime to an aware datetime in *tz*.

    Dates become local midnight; floating (naive) times are read as local.
    """
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=tz)
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value.astimezone(tz)


def resolve_bounds(raw: RawEvent, tz: tzinfo) -> tuple[datetime, datetime, DateType]:
    """Return local start, end and date type of a single entry."""
    start = to_local(raw.start, tz)
    if raw.is_all_day:
        if raw.end is not None:
            end = to_local(raw.end, tz)
        elif raw.duration is not None:
            end = start + raw.duration
        else:
            end = to_local(raw.start + timedelta(days=1), tz)
        return start, max(start, end), DateType.DATE

    if raw.end is not None:
        end = to_local(raw.end, tz)
    elif raw.duration is not None:
        end = start + raw.duration
    else:
        end = start
    return start, max(start, end), DateType.DATE_TIME


def occurrence_uid(series_uid: str, start: datetime) -> str:
    """Identity of one instance of a recurring series."""
    return f"{series_uid}/{start.isoformat()}"


def expand_recurrence(
    raw: RawEvent,
    tz: tzinfo,
    after: datetime,
    before: datetime | None = None,
    count: int | None = None,
    exclude: Iterable[datetime] = (),
) -> list[EventOccurrence]:
    """Expand *raw* into occurrences that have not ended by *after*.

    Occurrences starting later than *before* are dropped and at most *count*
    are returned. One of *before* or *count* must be given for an unbounded
    rule. Starts listed in *exclude* (overridden instances) are skipped.
    Non-recurring entries yield themselves when they qualify.
    """
    start, end, date_type = resolve_bounds(raw, tz)
    duration = end - start

    if not raw.rrule and not raw.rdates:
        if end < after or (before is not None and start > before):
            return []
        return [_occurrence(raw, raw.uid, start, end, date_type)]

    if before is None and count is None:
        raise ValueError("an unbounded recurrence needs a horizon or a count")

    zone = _series_zone(raw)
    rule = _build_ruleset(raw, start, tz, zone, exclude)

    occurrences: list[EventOccurrence] = []
    for occurrence_start in _local_starts(rule, after - duration, tz, zone):
        if before is not None and occurrence_start > before:
            break
        occurrence_end = occurrence_start + duration
        if occurrence_end < after:
            continue
        occurrences.append(
            _occurrence(
                raw,
                occurrence_uid(raw.uid, occurrence_start),
                occurrence_start,
                occurrence_end,
                date_type,
            )
        )
        if count is not None and len(occurrences) >= count:
            break
    return occurrences


def _series_zone(raw: RawEvent) -> tzinfo | None:
    """Zone a series repeats in, or None for floating and all-day series."""
    if isinstance(raw.start, datetime) and raw.start.tzinfo is not None:
        return raw.start.tzinfo
    return None


def _build_ruleset(
    raw: RawEvent,
    start: datetime,
    tz: tzinfo,
    zone: tzinfo | None,
    exclude: Iterable[datetime],
) -> rruleset:
    # A zoned series repeats on its own wall clock, so DST in its zone keeps
    # the hour and a UTC UNTIL compares as an instant. Floating and all-day
    # series repeat on naive wall-clock time in *tz*.
    series_start = _series_point(start, tz, zone)
    rules = rruleset()
    if raw.rrule:
        body = _rule_body(raw.rrule)
        if zone is None:
            rules.rrule(rrulestr(body, dtstart=series_start, ignoretz=True))
        else:
            rules.rrule(rrulestr(_until_in_utc(body, zone), dtstart=series_start))
    rules.rdate(series_start)
    for value in raw.rdates:
        rules.rdate(_series_point(value, tz, zone))
    for value in raw.exdates:
        rules.exdate(_series_point(value, tz, zone))
    for value in exclude:
        rules.exdate(_series_point(value, tz, zone))
    return rules


def _local_starts(
    rule: rruleset, earliest: datetime, tz: tzinfo, zone: tzinfo | None
) -> Iterator[datetime]:
    for value in rule.xafter(_series_point(earliest, tz, zone), inc=True):
        if zone is None:
            yield value.replace(tzinfo=tz)
        else:
            yield value.astimezone(tz)


def _series_point(value: datetime | date, tz: tzinfo, zone: tzinfo | None) -> datetime:
    if zone is None:
        return to_local(value, tz).replace(tzinfo=None)
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(zone)
    return to_local(value, zone)


# UNTIL without a trailing Z, e.g. UNTIL=20260603T090000 or UNTIL=20260603
_FLOATING_UNTIL = re.compile(r"(UNTIL=)(\d{8})(?:T(\d{6}))?(?=;|$)", re.IGNORECASE)


def _until_in_utc(body: str, zone: tzinfo) -> str:
    """Rewrite a floating UNTIL as UTC, reading it in the series *zone*.

    dateutil rejects a floating UNTIL next to a zoned DTSTART. A date-only
    UNTIL covers the whole day.
    """

    def convert(match: re.Match) -> str:
        day = datetime.strptime(match.group(2), "%Y%m%d").date()
        if match.group(3):
            clock = datetime.strptime(match.group(3), "%H%M%S").time()
        else:
            clock = time(23, 59, 59)
        until = datetime.combine(day, clock, tzinfo=zone).astimezone(timezone.utc)
        return f"{match.group(1)}{until:%Y%m%dT%H%M%SZ}"

    return _FLOATING_UNTIL.sub(convert, body)


def _rule_body(rule: str) -> str:
    rule = rule.strip()
    if rule.upper().startswith("RRULE:"):
        return rule[len("RRULE:") :]
    return rule


def _occurrence(
    raw: RawEvent, uid: str, start: datetime, end: datetime, date_type: DateType
) -> EventOccurrence:
    return EventOccurrence(
        uid=uid,
        series_uid=raw.uid,
        summary=raw.summary,
        description=raw.description,
        location=raw.location,
        start=start,
        end=end,
        date_type=date_type,
    )

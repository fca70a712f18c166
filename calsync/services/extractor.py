"""Service for turning a parsed calendar into its active, time-bounded events."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, time, tzinfo

from dateutil.relativedelta import relativedelta

from calsync.domain.models import (
    EventLimit,
    EventLimitType,
    EventOccurrence,
    ParsedCalendar,
    RawEvent,
)
from calsync.services.recurrence import (
    expand_recurrence,
    occurrence_uid,
    resolve_bounds,
    to_local,
)

logger = logging.getLogger(__name__)

CANCELLED = "CANCELLED"


def get_horizon(limit: EventLimit, now: datetime, tz: tzinfo) -> datetime | None:
    """Return the latest start an active event may have, or None for a count limit.

    A horizon of N days/weeks/months ends at the end of the local day N units ahead.
    """
    if limit.type == EventLimitType.EVENTS:
        return None
    end_of_today = datetime.combine(now.astimezone(tz).date(), time.max, tzinfo=tz)
    return end_of_today + relativedelta(**{limit.type.value: limit.value})


def get_active_events(
    calendar: ParsedCalendar, limit: EventLimit, now: datetime, tz: tzinfo
) -> list[EventOccurrence]:
    """Return occurrences that have not ended, bounded by *limit*, sorted by start.

    Malformed entries are logged and skipped.
    """
    before = get_horizon(limit, now, tz)
    count = limit.value if limit.type == EventLimitType.EVENTS else None

    overridden: dict[str, list[datetime]] = defaultdict(list)
    for raw in calendar.events:
        if raw.recurrence_id is not None:
            overridden[raw.uid].append(to_local(raw.recurrence_id, tz))

    occurrences: list[EventOccurrence] = []
    for raw in calendar.events:
        if _is_cancelled(raw):
            continue
        try:
            if raw.recurrence_id is not None:
                occurrences.extend(_override_occurrence(raw, now, before, tz))
            else:
                occurrences.extend(
                    expand_recurrence(
                        raw,
                        tz,
                        after=now,
                        before=before,
                        count=count,
                        exclude=overridden.get(raw.uid, ()),
                    )
                )
        except (ValueError, TypeError, OverflowError) as exc:
            logger.warning("Skipping malformed entry '%s': %s", raw.uid, exc)

    occurrences.sort(key=lambda e: e.start)
    if count is not None:
        occurrences = occurrences[:count]
    return occurrences


def _override_occurrence(
    raw: RawEvent, now: datetime, before: datetime | None, tz: tzinfo
) -> list[EventOccurrence]:
    start, end, date_type = resolve_bounds(raw, tz)
    if end < now or (before is not None and start > before):
        return []
    return [
        EventOccurrence(
            uid=occurrence_uid(raw.uid, to_local(raw.recurrence_id, tz)),
            series_uid=raw.uid,
            summary=raw.summary,
            description=raw.description,
            location=raw.location,
            start=start,
            end=end,
            date_type=date_type,
        )
    ]


def _is_cancelled(raw: RawEvent) -> bool:
    return (raw.status or "").upper() == CANCELLED

"""Tests for local-time resolution and recurrence expansion."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from calsync.domain.models import DateType, RawEvent
from calsync.services.recurrence import (
    expand_recurrence,
    occurrence_uid,
    resolve_bounds,
    to_local,
)

OSLO = ZoneInfo("Europe/Oslo")


def _practice(**overrides) -> RawEvent:
    defaults = dict(
        uid="practice",
        summary="Soccer practice",
        start=datetime(2026, 2, 19, 15, 30, tzinfo=timezone.utc),
        end=datetime(2026, 2, 19, 17, 0, tzinfo=timezone.utc),
        rrule="FREQ=WEEKLY;BYDAY=TH",
    )
    defaults.update(overrides)
    return RawEvent(**defaults)


# ---------------------------------------------------------------------------
# to_local / resolve_bounds
# ---------------------------------------------------------------------------


def test_date_resolves_to_local_midnight():
    assert to_local(date(2026, 6, 1), OSLO) == datetime(2026, 6, 1, tzinfo=OSLO)


def test_floating_time_is_read_as_local():
    local = to_local(datetime(2026, 6, 1, 9, 0), OSLO)
    assert local.tzinfo is OSLO
    assert local.hour == 9


def test_aware_time_is_converted():
    local = to_local(datetime(2026, 6, 1, 7, 0, tzinfo=timezone.utc), OSLO)
    assert local.hour == 9
    assert local.tzinfo is OSLO


def test_all_day_without_end_lasts_one_day():
    raw = RawEvent(uid="holiday", start=date(2026, 6, 1))
    start, end, date_type = resolve_bounds(raw, timezone.utc)
    assert date_type == DateType.DATE
    assert start == datetime(2026, 6, 1, tzinfo=timezone.utc)
    assert end - start == timedelta(days=1)


def test_timed_entry_uses_duration_when_end_missing():
    raw = RawEvent(
        uid="call",
        start=datetime(2026, 6, 1, 9, 0, tzinfo=timezone.utc),
        duration=timedelta(minutes=45),
    )
    start, end, date_type = resolve_bounds(raw, timezone.utc)
    assert date_type == DateType.DATE_TIME
    assert end - start == timedelta(minutes=45)


def test_timed_entry_without_end_is_instant():
    raw = RawEvent(uid="ping", start=datetime(2026, 6, 1, 9, 0, tzinfo=timezone.utc))
    start, end, _ = resolve_bounds(raw, timezone.utc)
    assert start == end


# ---------------------------------------------------------------------------
# expand_recurrence
# ---------------------------------------------------------------------------


def test_expand_weekly_within_window():
    occurrences = expand_recurrence(
        _practice(),
        timezone.utc,
        after=datetime(2026, 2, 20, tzinfo=timezone.utc),
        before=datetime(2026, 3, 13, tzinfo=timezone.utc),
    )
    assert [o.start.date() for o in occurrences] == [
        date(2026, 2, 26),
        date(2026, 3, 5),
        date(2026, 3, 12),
    ]
    assert all(o.duration == timedelta(minutes=90) for o in occurrences)
    assert all(o.series_uid == "practice" for o in occurrences)


def test_occurrence_uid_combines_series_and_start():
    occurrences = expand_recurrence(
        _practice(),
        timezone.utc,
        after=datetime(2026, 2, 20, tzinfo=timezone.utc),
        count=1,
    )
    assert occurrences[0].uid == "practice/2026-02-26T15:30:00+00:00"
    assert occurrences[0].uid == occurrence_uid("practice", occurrences[0].start)


def test_expand_respects_count():
    occurrences = expand_recurrence(
        _practice(),
        timezone.utc,
        after=datetime(2026, 2, 20, tzinfo=timezone.utc),
        count=2,
    )
    assert len(occurrences) == 2


def test_in_progress_occurrence_is_included():
    # 16:00 is inside the 15:30-17:00 slot on Feb 26
    occurrences = expand_recurrence(
        _practice(),
        timezone.utc,
        after=datetime(2026, 2, 26, 16, 0, tzinfo=timezone.utc),
        count=1,
    )
    assert occurrences[0].start == datetime(2026, 2, 26, 15, 30, tzinfo=timezone.utc)


def test_exdate_removes_occurrence():
    raw = _practice(exdates=[datetime(2026, 3, 5, 15, 30, tzinfo=timezone.utc)])
    occurrences = expand_recurrence(
        raw,
        timezone.utc,
        after=datetime(2026, 2, 20, tzinfo=timezone.utc),
        before=datetime(2026, 3, 13, tzinfo=timezone.utc),
    )
    assert date(2026, 3, 5) not in [o.start.date() for o in occurrences]
    assert len(occurrences) == 2


def test_rdate_adds_occurrence():
    raw = _practice(rdates=[datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)])
    occurrences = expand_recurrence(
        raw,
        timezone.utc,
        after=datetime(2026, 2, 27, tzinfo=timezone.utc),
        before=datetime(2026, 3, 6, tzinfo=timezone.utc),
    )
    assert [o.start for o in occurrences] == [
        datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc),
        datetime(2026, 3, 5, 15, 30, tzinfo=timezone.utc),
    ]


def test_until_stops_series():
    raw = _practice(rrule="RRULE:FREQ=WEEKLY;BYDAY=TH;UNTIL=20260305T235959Z")
    occurrences = expand_recurrence(
        raw,
        timezone.utc,
        after=datetime(2026, 2, 20, tzinfo=timezone.utc),
        before=datetime(2026, 6, 1, tzinfo=timezone.utc),
    )
    assert [o.start.date() for o in occurrences] == [date(2026, 2, 26), date(2026, 3, 5)]


def test_expansion_keeps_local_hour_across_dst():
    raw = RawEvent(
        uid="yoga",
        start=datetime(2026, 3, 20, 9, 0, tzinfo=OSLO),
        end=datetime(2026, 3, 20, 10, 0, tzinfo=OSLO),
        rrule="FREQ=WEEKLY",
    )
    occurrences = expand_recurrence(
        raw, OSLO, after=datetime(2026, 3, 21, tzinfo=OSLO), count=2
    )
    before_dst, after_dst = occurrences
    assert before_dst.start.hour == after_dst.start.hour == 9
    assert before_dst.start.utcoffset() == timedelta(hours=1)
    assert after_dst.start.utcoffset() == timedelta(hours=2)


def test_all_day_series_keeps_date_type():
    raw = RawEvent(uid="chores", start=date(2026, 6, 1), rrule="FREQ=DAILY;COUNT=3")
    occurrences = expand_recurrence(
        raw,
        timezone.utc,
        after=datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc),
        before=datetime(2026, 7, 1, tzinfo=timezone.utc),
    )
    assert len(occurrences) == 3
    assert all(o.date_type == DateType.DATE for o in occurrences)


def test_single_entry_returns_itself():
    raw = RawEvent(
        uid="dentist",
        start=datetime(2026, 6, 2, 9, 0, tzinfo=timezone.utc),
        end=datetime(2026, 6, 2, 10, 0, tzinfo=timezone.utc),
    )
    occurrences = expand_recurrence(
        raw, timezone.utc, after=datetime(2026, 6, 1, tzinfo=timezone.utc)
    )
    assert len(occurrences) == 1
    assert occurrences[0].uid == "dentist"


def test_ended_single_entry_is_dropped():
    raw = RawEvent(
        uid="dentist",
        start=datetime(2026, 5, 2, 9, 0, tzinfo=timezone.utc),
        end=datetime(2026, 5, 2, 10, 0, tzinfo=timezone.utc),
    )
    assert expand_recurrence(raw, timezone.utc, after=datetime(2026, 6, 1, tzinfo=timezone.utc)) == []


def test_unbounded_series_needs_limit():
    with pytest.raises(ValueError):
        expand_recurrence(_practice(), timezone.utc, after=datetime(2026, 2, 20, tzinfo=timezone.utc))


def test_floating_until_is_read_in_series_zone():
    raw = RawEvent(
        uid="standup",
        start=datetime(2026, 6, 1, 9, 0, tzinfo=OSLO),
        end=datetime(2026, 6, 1, 9, 15, tzinfo=OSLO),
        rrule="FREQ=DAILY;UNTIL=20260603T090000",
    )
    occurrences = expand_recurrence(
        raw, timezone.utc, after=datetime(2026, 6, 1, tzinfo=OSLO), count=10
    )
    assert [o.start.astimezone(OSLO).day for o in occurrences] == [1, 2, 3]
    assert all(o.start.utcoffset() == timedelta(0) for o in occurrences)

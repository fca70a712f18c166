"""Tests for the refresh orchestrator and the engine around it."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from calsync.config import (
    SETTING_DATE_FORMAT,
    SETTING_EVENT_LIMIT,
    SETTING_NEXT_EVENT_TOKENS_PER_CALENDAR,
    SETTING_URIS,
    STORAGE_EVENT_UIDS,
)
from calsync.domain.events import CalendarChanged, EventAdded
from calsync.domain.models import EventOccurrence, ParsedCalendar, RawEvent
from calsync.services.fetcher import CalendarFetchError
from calsync.services.sync import normalize_uri

_NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)
_URI = "https://example.com/work.ics"


def _raw(uid: str, hours: int = 1) -> RawEvent:
    start = _NOW + timedelta(hours=hours)
    return RawEvent(uid=uid, summary=uid.title(), start=start, end=start + timedelta(hours=1))


def _feed(*uids: str) -> ParsedCalendar:
    return ParsedCalendar(events=[_raw(uid, hours=i + 1) for i, uid in enumerate(uids)])


def _configure(engine, *calendars: dict) -> None:
    engine.settings.set(SETTING_URIS, list(calendars))


def _refresh(engine, reregister_tokens: bool = False):
    return asyncio.run(engine.orchestrator.refresh(reregister_tokens=reregister_tokens))


# ---------------------------------------------------------------------------
# normalize_uri
# ---------------------------------------------------------------------------


def test_webcal_is_fetched_over_https():
    assert normalize_uri("webcal://example.com/a.ics") == "https://example.com/a.ics"


def test_unsupported_uris_are_rejected():
    assert normalize_uri("ftp://example.com/a.ics") is None
    assert normalize_uri("not a uri") is None
    assert normalize_uri("http://example.com/a.ics") == "http://example.com/a.ics"


def test_http_uri_is_fetched_as_written():
    assert normalize_uri(" https://example.com/a.ics? ") == "https://example.com/a.ics?"
    assert normalize_uri("https://example.com/a.ics#") == "https://example.com/a.ics#"


# ---------------------------------------------------------------------------
# Per-calendar outcomes
# ---------------------------------------------------------------------------


def test_successful_fetch_clears_error(engine, fetcher):
    fetcher.responses[_URI] = _feed("a", "b")
    _configure(
        engine, {"name": "Work", "uri": "webcal://example.com/work.ics", "last_error": "old failure"}
    )

    result = _refresh(engine)

    assert fetcher.calls == [_URI]
    assert result.results[0].ok
    (config,) = engine.orchestrator.read_calendars()
    assert config.last_error is None
    assert config.uri == "webcal://example.com/work.ics"
    assert [e.uid for e in engine.store.get("Work")] == ["a", "b"]


def test_empty_uri_is_skipped_without_error(engine, fetcher):
    kept = [
        EventOccurrence(uid="kept", series_uid="kept", start=_NOW, end=_NOW + timedelta(hours=1))
    ]
    engine.store.replace("Empty", kept)
    _configure(engine, {"name": "Empty", "uri": ""})

    result = _refresh(engine)

    assert fetcher.calls == []
    assert result.results[0].skipped
    assert engine.orchestrator.read_calendars()[0].last_error is None
    assert engine.store.get("Empty") == kept


def test_invalid_uri_records_error(engine, fetcher):
    _configure(engine, {"name": "Broken", "uri": "ftp://example.com/a.ics"})

    result = _refresh(engine)

    assert fetcher.calls == []
    assert result.failed[0].error == "Uri for calendar 'Broken' is invalid"
    assert engine.orchestrator.read_calendars()[0].last_error == "Uri for calendar 'Broken' is invalid"


def test_fetch_failure_keeps_previous_events(engine, fetcher):
    fetcher.responses[_URI] = _feed("a")
    _configure(engine, {"name": "Work", "uri": _URI})
    _refresh(engine)

    fetcher.responses[_URI] = CalendarFetchError("503 Service Unavailable")
    result = _refresh(engine)

    assert result.failed[0].error == "503 Service Unavailable"
    assert engine.orchestrator.read_calendars()[0].last_error == "503 Service Unavailable"
    assert [e.uid for e in engine.store.get("Work")] == ["a"]


def test_one_failure_does_not_stop_other_calendars(engine, fetcher):
    fetcher.responses["https://example.com/home.ics"] = RuntimeError("boom")
    fetcher.responses[_URI] = _feed("a")
    _configure(
        engine,
        {"name": "Home", "uri": "https://example.com/home.ics"},
        {"name": "Work", "uri": _URI},
    )

    result = _refresh(engine)

    assert [r.ok for r in result.results] == [False, True]
    assert engine.store.get("Home") is None
    assert [e.uid for e in engine.store.get("Work")] == ["a"]


def test_slow_fetch_times_out(engine):
    async def hang(uri: str) -> ParsedCalendar:
        await asyncio.sleep(10)
        return ParsedCalendar()

    engine.orchestrator.fetcher = hang
    engine.orchestrator.fetch_timeout = 0.01
    _configure(engine, {"name": "Work", "uri": _URI})

    result = _refresh(engine)

    assert result.failed[0].error == "Timed out after 0.01 seconds"


def test_unconfigured_calendars_are_dropped(engine, fetcher):
    fetcher.responses[_URI] = _feed("a")
    engine.store.replace("Old", [])
    _configure(engine, {"name": "Work", "uri": _URI})

    _refresh(engine)

    assert engine.store.names() == ["Work"]


def test_event_limit_setting_is_applied(engine, fetcher):
    fetcher.responses[_URI] = _feed("a", "b", "c")
    engine.settings.set(SETTING_EVENT_LIMIT, {"value": 2, "type": "events"})
    _configure(engine, {"name": "Work", "uri": _URI})

    _refresh(engine)

    assert len(engine.store.get("Work")) == 2


# ---------------------------------------------------------------------------
# Single flight
# ---------------------------------------------------------------------------


def test_concurrent_refresh_is_rejected(engine):
    async def scenario():
        gate = asyncio.Event()

        async def slow_fetch(uri: str) -> ParsedCalendar:
            await gate.wait()
            return _feed("a")

        engine.orchestrator.fetcher = slow_fetch
        _configure(engine, {"name": "Work", "uri": _URI})

        first = asyncio.create_task(engine.orchestrator.refresh())
        await asyncio.sleep(0)
        assert engine.orchestrator.is_refreshing
        second = await engine.orchestrator.refresh()
        gate.set()
        return await first, second

    first, second = asyncio.run(scenario())
    assert first.started
    assert not second.started
    assert not engine.orchestrator.is_refreshing


# ---------------------------------------------------------------------------
# Change detection
# ---------------------------------------------------------------------------


def test_first_sync_announces_nothing(engine, fetcher):
    added: list[EventAdded] = []
    engine.cards.subscribe(EventAdded, added.append)
    fetcher.responses[_URI] = _feed("a", "b")
    _configure(engine, {"name": "Work", "uri": _URI})

    result = _refresh(engine)

    assert added == []
    assert result.changed_calendars == []
    assert engine.settings.get(STORAGE_EVENT_UIDS)


def test_new_events_and_changed_calendar_are_announced(engine, fetcher):
    added: list[EventAdded] = []
    changed: list[CalendarChanged] = []
    engine.cards.subscribe(EventAdded, added.append)
    engine.cards.subscribe(CalendarChanged, changed.append)
    _configure(engine, {"name": "Work", "uri": _URI})

    fetcher.responses[_URI] = _feed("a", "b")
    _refresh(engine)
    fetcher.responses[_URI] = _feed("b", "c")
    result = _refresh(engine)

    assert [n.event.uid for n in added] == ["c"]
    assert added[0].tokens.event_calendar_name == "Work"
    assert [n.calendar_name for n in changed] == ["Work"]
    assert result.changed_calendars == ["Work"]


def test_failed_fetch_does_not_reannounce_events(engine, fetcher):
    added: list[EventAdded] = []
    engine.cards.subscribe(EventAdded, added.append)
    _configure(
        engine,
        {"name": "Work", "uri": _URI},
        {"name": "Home", "uri": "https://example.com/home.ics"},
    )
    fetcher.responses["https://example.com/home.ics"] = _feed("h")
    fetcher.responses[_URI] = _feed("a")
    _refresh(engine)

    fetcher.responses[_URI] = CalendarFetchError("timeout")
    _refresh(engine)
    fetcher.responses[_URI] = _feed("a")
    _refresh(engine)

    assert added == []


# ---------------------------------------------------------------------------
# Engine: tokens and settings
# ---------------------------------------------------------------------------


def test_start_registers_calendar_tokens(engine, fetcher):
    fetcher.responses[_URI] = _feed("a")
    engine.settings.set(SETTING_NEXT_EVENT_TOKENS_PER_CALENDAR, True)
    _configure(engine, {"name": "Work", "uri": _URI})

    asyncio.run(engine.start())

    assert "event_next_title" in engine.tokens
    assert "calendar::Work::today" in engine.tokens
    assert "calendar::Work::next_title" in engine.tokens


def test_refresh_without_reregistration_keeps_tokens(engine, fetcher):
    fetcher.responses[_URI] = _feed("a")
    _configure(engine, {"name": "Work", "uri": _URI})
    asyncio.run(engine.start())

    # Outside a running loop the settings listener cannot schedule a refresh
    fetcher.responses["https://example.com/home.ics"] = _feed("h")
    _configure(
        engine,
        {"name": "Work", "uri": _URI},
        {"name": "Home", "uri": "https://example.com/home.ics"},
    )
    _refresh(engine)

    assert engine.store.get("Home") is not None

    assert "calendar::Home::today" not in engine.tokens


def test_calendar_setting_change_triggers_refresh(engine, fetcher):
    fetcher.responses[_URI] = _feed("a")

    async def scenario():
        await engine.start()
        _configure(engine, {"name": "Work", "uri": _URI})
        await asyncio.gather(*list(engine._background))

    asyncio.run(scenario())

    assert fetcher.calls == [_URI]
    assert "calendar::Work::today" in engine.tokens


def test_format_setting_change_updates_tokens_without_refresh(engine):
    async def scenario():
        await engine.start()
        engine.settings.set(SETTING_DATE_FORMAT, "%Y-%m-%d")
        return list(engine._background)

    pending = asyncio.run(scenario())

    assert pending == []
    assert engine.projector.fmt.date == "%Y-%m-%d"


def test_sync_action_runs_refresh(engine, fetcher):
    fetcher.responses[_URI] = _feed("a")
    _configure(engine, {"name": "Work", "uri": _URI})

    assert asyncio.run(engine.sync_calendar()) is True
    assert fetcher.calls == [_URI]


def test_tick_updates_tokens_and_fires(engine, fetcher):
    fetcher.responses[_URI] = _feed("a")
    _configure(engine, {"name": "Work", "uri": _URI})
    asyncio.run(engine.start())

    fired = engine.tick(_NOW + timedelta(hours=1))

    assert "event_starts" in [n.trigger_id for n in fired]
    assert engine.tokens.values()["event_next_title"] == "A"

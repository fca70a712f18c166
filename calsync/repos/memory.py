"""In-memory repositories for settings, calendar events and tokens."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, time, timedelta, timezone, tzinfo
from pathlib import Path
from typing import Any, Callable, Iterator

from calsync.domain.models import (
    CalendarEvent,
    CalendarEvents,
    EventOccurrence,
    NextEvent,
    TokenType,
    whole_minutes,
)

logger = logging.getLogger(__name__)


class SettingsStore:
    """Key/value settings with change listeners.

    When *path* is given, values are loaded from and written back to a JSON
    file so they survive a restart.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self._path = Path(path) if path else None
        self._store: dict[str, Any] = {}
        self._listeners: list[Callable[[str], None]] = []
        if self._path is not None and self._path.exists():
            self._store = self._load(self._path)

    @staticmethod
    def _load(path: Path) -> dict[str, Any]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning("Ignoring unreadable settings file %s: %s", path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring settings file %s: not a JSON object", path)
            return {}
        return data

    def get(self, key: str, default: Any = None) -> Any:
        return self._store.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._store[key] = value
        self._save()
        for listener in list(self._listeners):
            listener(key)

    def unset(self, key: str) -> None:
        if self._store.pop(key, None) is not None:
            self._save()

    def on_set(self, listener: Callable[[str], None]) -> None:
        self._listeners.append(listener)

    def keys(self) -> list[str]:
        return list(self._store)

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # Write to a temp file, then rename over the old one
        with tempfile.NamedTemporaryFile(
            mode="w",
            dir=self._path.parent,
            prefix=".tmp_settings_",
            suffix=".json",
            delete=False,
            encoding="utf-8",
        ) as f:
            temp_path = f.name
            json.dump(self._store, f, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, self._path)


class CalendarStore:
    """Latest active events per calendar, each list sorted by start.

    Lists are swapped whole on ``replace`` so readers see either the old or
    the new list. All queries are pure reads.
    """

    def __init__(self, tz: tzinfo = timezone.utc) -> None:
        self.tz = tz
        self._calendars: dict[str, list[EventOccurrence]] = {}

    def replace(self, name: str, events: list[EventOccurrence]) -> None:
        self._calendars[name] = sorted(events, key=lambda e: e.start)

    def remove(self, name: str) -> None:
        self._calendars.pop(name, None)

    def get(self, name: str) -> list[EventOccurrence] | None:
        return self._calendars.get(name)

    def names(self) -> list[str]:
        return list(self._calendars)

    def list_all(self) -> list[CalendarEvents]:
        return [
            CalendarEvents(name=name, events=events)
            for name, events in self._calendars.items()
        ]

    def is_empty(self) -> bool:
        return not any(self._calendars.values())

    def iter_events(self, calendar_name: str | None = None) -> Iterator[CalendarEvent]:
        """Yield events per calendar, in store order, then chronologically."""
        for name, events in list(self._calendars.items()):
            if calendar_name is not None and name != calendar_name:
                continue
            for event in events:
                yield CalendarEvent(calendar_name=name, event=event)

    def next_event(self, now: datetime, calendar_name: str | None = None) -> NextEvent:
        """Return the earliest-starting event that has not ended yet."""
        best: CalendarEvent | None = None
        for item in self.iter_events(calendar_name):
            if item.event.end < now:
                continue
            if best is None or item.event.start < best.event.start:
                best = item
        if best is None:
            return NextEvent()
        return NextEvent(
            event=best.event,
            calendar_name=best.calendar_name,
            starts_in=whole_minutes(best.event.start - now),
            stops_in=whole_minutes(best.event.end - now),
        )

    def todays_events(
        self, now: datetime, calendar_name: str | None = None
    ) -> list[CalendarEvent]:
        return self._events_on_day(now, 0, calendar_name)

    def tomorrows_events(
        self, now: datetime, calendar_name: str | None = None
    ) -> list[CalendarEvent]:
        return self._events_on_day(now, 1, calendar_name)

    def _events_on_day(
        self, now: datetime, offset_days: int, calendar_name: str | None
    ) -> list[CalendarEvent]:
        day = now.astimezone(self.tz).date() + timedelta(days=offset_days)
        day_start = datetime.combine(day, time.min, tzinfo=self.tz)
        day_end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=self.tz)
        return [
            item
            for item in self.iter_events(calendar_name)
            if day_start <= item.event.start < day_end
        ]


class Token:
    """A published value read by flows."""

    def __init__(
        self, registry: TokenRegistry, token_id: str, type: TokenType, title: str
    ) -> None:
        self._registry = registry
        self.id = token_id
        self.type = type
        self.title = title
        self.value: str | int | None = None

    def set_value(self, value: str | int) -> None:
        if self.id not in self._registry:
            raise LookupError(f"Token '{self.id}' is not registered")
        self.value = value

    def unregister(self) -> None:
        self._registry.remove(self.id)


class TokenRegistry:
    """Dict-backed store for published tokens, keyed by id."""

    def __init__(self) -> None:
        self._tokens: dict[str, Token] = {}

    def __contains__(self, token_id: str) -> bool:
        return token_id in self._tokens

    def create_token(self, token_id: str, type: TokenType, title: str) -> Token:
        if token_id in self._tokens:
            raise ValueError(f"Token '{token_id}' is already registered")
        token = Token(self, token_id, type, title)
        self._tokens[token_id] = token
        return token

    def get(self, token_id: str) -> Token | None:
        return self._tokens.get(token_id)

    def remove(self, token_id: str) -> None:
        self._tokens.pop(token_id, None)

    def list_all(self) -> list[Token]:
        return list(self._tokens.values())

    def values(self) -> dict[str, str | int | None]:
        return {token_id: token.value for token_id, token in self._tokens.items()}

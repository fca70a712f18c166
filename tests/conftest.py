"""Shared fixtures: a fake calendar fetcher and an engine on a frozen clock."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from calsync.config import AppConfig
from calsync.domain.models import ParsedCalendar
from calsync.engine import CalendarEngine
from calsync.repos.memory import SettingsStore

FROZEN_NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeFetcher:
    """Serves ParsedCalendars (or raises errors) keyed by URI and records calls."""

    def __init__(self) -> None:
        self.responses: dict[str, ParsedCalendar | Exception] = {}
        self.calls: list[str] = []

    async def __call__(self, uri: str) -> ParsedCalendar:
        self.calls.append(uri)
        response = self.responses[uri]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture()
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture()
def engine(fetcher: FakeFetcher) -> CalendarEngine:
    """Engine on UTC with in-memory settings, the fake fetcher and a frozen clock."""
    return CalendarEngine(
        AppConfig(timezone="UTC"),
        settings=SettingsStore(),
        fetcher=fetcher,
        clock=lambda: FROZEN_NOW,
    )

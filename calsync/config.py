"""Process configuration read from the environment."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from datetime import tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "CALSYNC_"

# Start/stop detection tolerates this many seconds after the exact instant.
SCAN_TOLERANCE_SECONDS = 55

# Settings store keys
SETTING_URIS = "uris"
SETTING_EVENT_LIMIT = "event_limit"
SETTING_NEXT_EVENT_TOKENS_PER_CALENDAR = "next_event_tokens_per_calendar"
SETTING_DATE_FORMAT = "date_format"
SETTING_TIME_FORMAT = "time_format"
STORAGE_EVENT_UIDS = "event_uids"

REFRESH_SETTINGS = (
    SETTING_URIS,
    SETTING_EVENT_LIMIT,
    SETTING_NEXT_EVENT_TOKENS_PER_CALENDAR,
)
FORMAT_SETTINGS = (SETTING_DATE_FORMAT, SETTING_TIME_FORMAT)


class AppConfig(BaseModel):
    refresh_interval_seconds: float = Field(default=900, gt=0)
    scan_interval_seconds: float = Field(default=60, gt=0)
    fetch_timeout_seconds: float = Field(default=20, gt=0)
    timezone: str = "UTC"
    settings_path: str | None = None
    log_level: str = "INFO"
    service_name: str = "calsync"

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"unknown timezone '{value}'") from exc
        return value

    @field_validator("scan_interval_seconds")
    @classmethod
    def _warn_slow_scan(cls, value: float) -> float:
        if value > 60:
            logger.warning(
                "Scan interval of %ss exceeds one minute; start/stop triggers may be missed",
                value,
            )
        return value

    @property
    def tz(self) -> tzinfo:
        return ZoneInfo(self.timezone)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> AppConfig:
        """Build a config from ``CALSYNC_*`` variables, e.g. ``CALSYNC_TIMEZONE``."""
        environ = os.environ if environ is None else environ
        values = {
            name: environ[ENV_PREFIX + name.upper()]
            for name in cls.model_fields
            if ENV_PREFIX + name.upper() in environ
        }
        return cls(**values)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

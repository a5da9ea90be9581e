"""
FamilyBot — Centralized configuration.

Loads all settings from .env and validates required keys.
Loaded once at process start; the scheduling core receives the resulting
Settings object and never re-validates it.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from familybot/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)

_WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str
    OWNER_TELEGRAM_ID: int
    PARTNER_TELEGRAM_ID: int = 0

    # SQLite
    DATABASE_PATH: str = "data/familybot.db"

    # Scheduling
    TIMEZONE: str = "Europe/Moscow"
    MORNING_TIME: str = "09:00"
    EVENING_TIME: str = "21:00"
    FLOATING_NUDGE_DAY: str = "fri"
    FLOATING_NUDGE_TIME: str = "10:00"
    TRACKABLE_TASKS_TIME: str = "05:55"
    CALENDAR_REMINDER_MINUTES: int = 30
    NOTIFY_TIMEOUT_SECONDS: float = 15.0

    # CalDAV (optional, calendar sync is disabled without credentials)
    CALDAV_URL: str = "https://caldav.icloud.com"
    CALDAV_USERNAME: str = ""
    CALDAV_PASSWORD: str = ""
    CALDAV_CALENDAR_PATH: str = ""
    CALDAV_TIMEOUT_SECONDS: float = 30.0
    CALENDAR_SYNC_MONTHS: int = 3

    @field_validator("MORNING_TIME", "EVENING_TIME", "FLOATING_NUDGE_TIME", "TRACKABLE_TASKS_TIME")
    @classmethod
    def check_hhmm(cls, v: str) -> str:
        parts = v.strip().split(":")
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            raise ValueError(f"expected HH:MM, got {v!r}")
        hour, minute = int(parts[0]), int(parts[1])
        if not (0 <= hour <= 23 and 0 <= minute <= 59):
            raise ValueError(f"time out of range: {v!r}")
        return f"{hour:02d}:{minute:02d}"

    @field_validator("FLOATING_NUDGE_DAY")
    @classmethod
    def check_weekday(cls, v: str) -> str:
        day = v.strip().lower()[:3]
        if day not in _WEEKDAYS:
            raise ValueError(f"unknown weekday: {v!r}")
        return day

    @field_validator("TIMEZONE")
    @classmethod
    def check_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"invalid TIMEZONE: {v!r}") from exc
        return v

    @field_validator("PARTNER_TELEGRAM_ID", mode="before")
    @classmethod
    def parse_partner(cls, v: str | int | None) -> int:
        if v in (None, ""):
            return 0
        return int(v)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.TIMEZONE)

    @property
    def caldav_configured(self) -> bool:
        return bool(self.CALDAV_USERNAME and self.CALDAV_PASSWORD and self.CALDAV_CALENDAR_PATH)


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")
    owner_id = os.getenv("OWNER_TELEGRAM_ID", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    if not owner_id.strip().lstrip("-").isdigit():
        print("ERROR: OWNER_TELEGRAM_ID is required and must be a number", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        OWNER_TELEGRAM_ID=int(owner_id),
        PARTNER_TELEGRAM_ID=os.getenv("PARTNER_TELEGRAM_ID", ""),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/familybot.db"),
        TIMEZONE=os.getenv("TIMEZONE", "Europe/Moscow"),
        MORNING_TIME=os.getenv("MORNING_TIME", "09:00"),
        EVENING_TIME=os.getenv("EVENING_TIME", "21:00"),
        FLOATING_NUDGE_DAY=os.getenv("FLOATING_NUDGE_DAY", "fri"),
        FLOATING_NUDGE_TIME=os.getenv("FLOATING_NUDGE_TIME", "10:00"),
        TRACKABLE_TASKS_TIME=os.getenv("TRACKABLE_TASKS_TIME", "05:55"),
        CALENDAR_REMINDER_MINUTES=int(os.getenv("CALENDAR_REMINDER_MINUTES", "30")),
        NOTIFY_TIMEOUT_SECONDS=float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "15")),
        CALDAV_URL=os.getenv("CALDAV_URL", "https://caldav.icloud.com"),
        CALDAV_USERNAME=os.getenv("CALDAV_USERNAME", ""),
        CALDAV_PASSWORD=os.getenv("CALDAV_PASSWORD", ""),
        CALDAV_CALENDAR_PATH=os.getenv("CALDAV_CALENDAR_PATH", ""),
        CALDAV_TIMEOUT_SECONDS=float(os.getenv("CALDAV_TIMEOUT_SECONDS", "30")),
        CALENDAR_SYNC_MONTHS=int(os.getenv("CALENDAR_SYNC_MONTHS", "3")),
    )


# Singleton, imported by the wiring modules as:
#   from familybot.config import settings
settings = _load_settings()

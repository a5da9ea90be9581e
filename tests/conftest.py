"""Shared test fixtures and configuration.

Sets up fake environment variables so familybot.config doesn't sys.exit(),
and provides common fixtures like a temp DB and a mocked notifier.
"""

import os

# Patch env vars BEFORE any familybot imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("OWNER_TELEGRAM_ID", "111")
os.environ.setdefault("PARTNER_TELEGRAM_ID", "222")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "Europe/Moscow")

from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest

# Moscow has no DST, which keeps wall-clock arithmetic in tests simple.
TZ = ZoneInfo("Europe/Moscow")


@pytest.fixture
def tz():
    return TZ


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_familybot.db")


@pytest.fixture
def store(tmp_db_path):
    """Return a RuleStoreDB instance backed by a temp file."""
    from familybot.data.db import RuleStoreDB
    return RuleStoreDB(db_path=tmp_db_path)


@pytest.fixture
def owner(store):
    return store.add_user(111, "Owner")


@pytest.fixture
def partner(store):
    return store.add_user(222, "Partner")


@pytest.fixture
def test_settings():
    """Settings built explicitly so tests don't depend on the process env."""
    from familybot.config import Settings
    return Settings(
        TELEGRAM_BOT_TOKEN="fake-token-for-tests",
        OWNER_TELEGRAM_ID=111,
        PARTNER_TELEGRAM_ID=222,
        TIMEZONE="Europe/Moscow",
        NOTIFY_TIMEOUT_SECONDS=1.0,
        CALENDAR_REMINDER_MINUTES=30,
    )


@pytest.fixture
def notifier():
    """A NotificationPort double recording every send."""
    mock = MagicMock()
    mock.send_message = AsyncMock()
    mock.send_message_with_actions = AsyncMock()
    return mock

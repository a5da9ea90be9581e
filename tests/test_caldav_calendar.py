"""Tests for the CalDAV calendar adapter.

All CalDAV client calls are mocked.
"""

import time as _time
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch
from zoneinfo import ZoneInfo

import pytest
from caldav.lib.error import NotFoundError

from familybot.adapters.caldav_calendar import (
    CalDAVCalendarAdapter,
    _build_vevent,
    _parse_vevent,
)
from familybot.ports.calendar_port import CalendarError, CalendarNotFoundError, RemoteEvent

TZ = ZoneInfo("Europe/Moscow")
PATH = "/calendars/family/"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_caldav_event(uid="test-uid-123", summary="Test Event",
                       dtstart="20240610T100000", dtend="20240610T110000",
                       extra=""):
    """Create a mock caldav.Event with realistic iCalendar data."""
    ical_str = (
        "BEGIN:VCALENDAR\r\n"
        "VERSION:2.0\r\n"
        "BEGIN:VEVENT\r\n"
        f"UID:{uid}\r\n"
        f"SUMMARY:{summary}\r\n"
        f"DTSTART{dtstart}\r\n"
        f"DTEND{dtend}\r\n"
        f"{extra}"
        "END:VEVENT\r\n"
        "END:VCALENDAR\r\n"
    )
    ev = MagicMock()
    ev.data = ical_str
    ev.url = f"{PATH}{uid}.ics"
    return ev


@pytest.fixture
def adapter():
    return CalDAVCalendarAdapter(
        url="https://caldav.example.com",
        username="family",
        password="secret",
        tz=TZ,
        timeout=5.0,
    )


@pytest.fixture
def mock_cal(adapter):
    cal = MagicMock()
    with patch.object(CalDAVCalendarAdapter, "_get_calendar", return_value=cal):
        yield cal


# ---------------------------------------------------------------------------
# Tests for _build_vevent
# ---------------------------------------------------------------------------


class TestBuildVevent:
    def test_builds_timed_vevent(self):
        result = _build_vevent(RemoteEvent(
            uid="test-uid",
            summary="Meeting",
            description="Team sync",
            location="Kitchen",
            start=datetime(2024, 6, 10, 10, 0, tzinfo=timezone.utc),
            end=datetime(2024, 6, 10, 11, 0, tzinfo=timezone.utc),
        ))
        assert "SUMMARY:Meeting" in result
        assert "DESCRIPTION:Team sync" in result
        assert "LOCATION:Kitchen" in result
        assert "UID:test-uid" in result
        assert "DTSTART:20240610T100000Z" in result
        assert "DTEND:20240610T110000Z" in result

    def test_builds_all_day_vevent(self):
        result = _build_vevent(RemoteEvent(
            uid="task-1@familybot",
            summary="📋 Dentist",
            start=datetime(2024, 6, 5, tzinfo=TZ),
            all_day=True,
        ))
        assert "DTSTART;VALUE=DATE:20240605" in result
        assert "DTEND;VALUE=DATE:20240606" in result

    def test_builds_vevent_with_rrule(self):
        result = _build_vevent(RemoteEvent(
            uid="schedule-2@familybot",
            summary="Swimming",
            start=datetime(2024, 6, 8, 10, 0, tzinfo=timezone.utc),
            rrule="FREQ=WEEKLY;BYDAY=SA,SU",
        ))
        assert "RRULE:FREQ=WEEKLY;BYDAY=SA,SU" in result
        assert "DTEND" not in result


# ---------------------------------------------------------------------------
# Tests for _parse_vevent
# ---------------------------------------------------------------------------


class TestParseVevent:
    def test_floating_time_gets_local_zone(self):
        ev = _make_caldav_event(dtstart=":20240610T100000", dtend=":20240610T110000")
        parsed = _parse_vevent(ev.data, TZ)
        assert parsed.uid == "test-uid-123"
        assert parsed.summary == "Test Event"
        assert parsed.start == datetime(2024, 6, 10, 10, 0, tzinfo=TZ)
        assert parsed.end == datetime(2024, 6, 10, 11, 0, tzinfo=TZ)
        assert parsed.all_day is False

    def test_utc_time_kept(self):
        ev = _make_caldav_event(dtstart=":20240610T070000Z", dtend=":20240610T080000Z")
        parsed = _parse_vevent(ev.data, TZ)
        assert parsed.start == datetime(2024, 6, 10, 10, 0, tzinfo=TZ)

    def test_all_day(self):
        ev = _make_caldav_event(dtstart=";VALUE=DATE:20240605", dtend=";VALUE=DATE:20240606")
        parsed = _parse_vevent(ev.data, TZ)
        assert parsed.all_day is True
        assert parsed.start == datetime(2024, 6, 5, tzinfo=TZ)

    def test_rrule_and_location(self):
        ev = _make_caldav_event(
            dtstart=":20240610T100000", dtend=":20240610T110000",
            extra="LOCATION:Pool\r\nRRULE:FREQ=WEEKLY;BYDAY=MO\r\n",
        )
        parsed = _parse_vevent(ev.data, TZ)
        assert parsed.location == "Pool"
        assert parsed.rrule == "FREQ=WEEKLY;BYDAY=MO"

    def test_no_vevent(self):
        data = "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nEND:VCALENDAR\r\n"
        assert _parse_vevent(data, TZ) is None

    def test_vevent_without_uid(self):
        ev = _make_caldav_event(uid="", dtstart=":20240610T100000", dtend=":20240610T110000")
        with pytest.raises(ValueError, match="UID"):
            _parse_vevent(ev.data, TZ)


# ---------------------------------------------------------------------------
# Adapter operations
# ---------------------------------------------------------------------------


class TestListEvents:
    @pytest.mark.asyncio
    async def test_returns_parsed_events(self, adapter, mock_cal):
        mock_cal.search.return_value = [
            _make_caldav_event(uid="a", dtstart=":20240610T100000", dtend=":20240610T110000"),
            _make_caldav_event(uid="b", dtstart=":20240611T100000", dtend=":20240611T110000"),
        ]
        start = datetime(2024, 6, 10, tzinfo=TZ)
        end = datetime(2024, 6, 12, tzinfo=TZ)

        listing = await adapter.list_events(PATH, start, end)

        assert [e.uid for e in listing.events] == ["a", "b"]
        assert listing.failures == []
        mock_cal.search.assert_called_once_with(start=start, end=end, event=True, expand=False)

    @pytest.mark.asyncio
    async def test_reports_unparseable_objects(self, adapter, mock_cal):
        good = RemoteEvent(uid="c", summary="Ok", start=datetime(2024, 6, 10, tzinfo=TZ))
        mock_cal.search.return_value = [
            _make_caldav_event(uid="a"), _make_caldav_event(uid="b"), _make_caldav_event(uid="c"),
        ]

        with patch(
            "familybot.adapters.caldav_calendar._parse_vevent",
            side_effect=[ValueError("bad line"), KeyError("TZID"), good],
        ):
            listing = await adapter.list_events(
                PATH, datetime(2024, 6, 10, tzinfo=TZ), datetime(2024, 6, 12, tzinfo=TZ)
            )

        assert listing.events == [good]
        assert [ref for ref, _ in listing.failures] == [f"{PATH}a.ics", f"{PATH}b.ics"]
        assert listing.failures[0][1] == "bad line"

    @pytest.mark.asyncio
    async def test_vevent_without_dtstart_is_reported(self, adapter, mock_cal):
        broken = _make_caldav_event(uid="a")
        broken.data = (
            "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nBEGIN:VEVENT\r\n"
            "UID:a\r\nSUMMARY:No start\r\nEND:VEVENT\r\nEND:VCALENDAR\r\n"
        )
        good = _make_caldav_event(uid="b", dtstart=":20240610T100000", dtend=":20240610T110000")
        mock_cal.search.return_value = [broken, good]

        listing = await adapter.list_events(
            PATH, datetime(2024, 6, 10, tzinfo=TZ), datetime(2024, 6, 12, tzinfo=TZ)
        )

        assert [e.uid for e in listing.events] == ["b"]
        assert listing.failures == [(f"{PATH}a.ics", "VEVENT without UID or DTSTART")]

    @pytest.mark.asyncio
    async def test_server_error_becomes_calendar_error(self, adapter, mock_cal):
        mock_cal.search.side_effect = ConnectionError("refused")
        with pytest.raises(CalendarError, match="refused"):
            await adapter.list_events(
                PATH, datetime(2024, 6, 10, tzinfo=TZ), datetime(2024, 6, 12, tzinfo=TZ)
            )

    @pytest.mark.asyncio
    async def test_timeout_becomes_calendar_error(self, mock_cal):
        slow = CalDAVCalendarAdapter("https://caldav.example.com", "u", "p", TZ, timeout=0.05)
        mock_cal.search.side_effect = lambda **kwargs: _time.sleep(0.5)
        with pytest.raises(CalendarError):
            await slow.list_events(
                PATH, datetime(2024, 6, 10, tzinfo=TZ), datetime(2024, 6, 12, tzinfo=TZ)
            )


class TestWriteOperations:
    @pytest.mark.asyncio
    async def test_create_event(self, adapter, mock_cal):
        event = RemoteEvent(uid="x", summary="Piano", start=datetime(2024, 6, 10, 18, 0, tzinfo=TZ))
        result = await adapter.create_event(PATH, event)
        assert result is event
        vcal = mock_cal.save_event.call_args.args[0]
        assert "UID:x" in vcal

    @pytest.mark.asyncio
    async def test_update_event(self, adapter, mock_cal):
        existing = MagicMock()
        mock_cal.event_by_uid.return_value = existing
        event = RemoteEvent(uid="x", summary="Piano (moved)", start=datetime(2024, 6, 10, 19, 0, tzinfo=TZ))

        await adapter.update_event(PATH, event)

        mock_cal.event_by_uid.assert_called_once_with("x")
        assert "SUMMARY:Piano (moved)" in existing.data
        existing.save.assert_called_once()

    @pytest.mark.asyncio
    async def test_delete_event(self, adapter, mock_cal):
        existing = MagicMock()
        mock_cal.event_by_uid.return_value = existing
        await adapter.delete_event(PATH, "x")
        existing.delete.assert_called_once()

    @pytest.mark.asyncio
    async def test_delete_missing_event(self, adapter, mock_cal):
        mock_cal.event_by_uid.side_effect = NotFoundError("x")
        with pytest.raises(CalendarNotFoundError):
            await adapter.delete_event(PATH, "x")

    @pytest.mark.asyncio
    async def test_update_missing_event(self, adapter, mock_cal):
        mock_cal.event_by_uid.side_effect = NotFoundError("x")
        event = RemoteEvent(uid="x", summary="Piano", start=datetime(2024, 6, 10, 18, 0, tzinfo=TZ))
        with pytest.raises(CalendarNotFoundError):
            await adapter.update_event(PATH, event)


class TestGetCalendar:
    def test_connects_with_credentials(self, adapter):
        with patch("familybot.adapters.caldav_calendar.caldav.DAVClient") as client_cls:
            adapter._get_calendar(PATH)
        client_cls.assert_called_once_with(
            url="https://caldav.example.com", username="family", password="secret", timeout=5,
        )
        client_cls.return_value.calendar.assert_called_once_with(url=PATH)

"""CalDAV calendar adapter — implements RemoteCalendarPort for CalDAV servers.

Supports iCloud, Nextcloud, Fastmail, and any CalDAV-compliant server.
Uses the caldav library (sync) wrapped with asyncio.to_thread for async
compatibility; every call is bounded by the configured timeout.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import date, datetime, time, timedelta, tzinfo
from typing import TypeVar

import caldav
from caldav.lib.error import NotFoundError
from icalendar import Calendar as iCalendar
from icalendar import Event as iEvent

from familybot.ports.calendar_port import (
    CalendarError,
    CalendarNotFoundError,
    RemoteEvent,
    RemoteListing,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _build_vevent(event: RemoteEvent) -> str:
    """Build an iCalendar VCALENDAR string holding one VEVENT."""
    cal = iCalendar()
    cal.add("prodid", "-//FamilyBot//EN")
    cal.add("version", "2.0")

    vevent = iEvent()
    vevent.add("uid", event.uid)
    vevent.add("summary", event.summary)
    if event.description:
        vevent.add("description", event.description)
    if event.location:
        vevent.add("location", event.location)

    if event.all_day:
        vevent.add("dtstart", event.start.date())
        end = event.end or event.start + timedelta(days=1)
        vevent.add("dtend", end.date())
    else:
        vevent.add("dtstart", event.start)
        if event.end is not None:
            vevent.add("dtend", event.end)

    if event.rrule:
        # "FREQ=WEEKLY;BYDAY=SA,SU" -> {"FREQ": ["WEEKLY"], "BYDAY": ["SA", "SU"]}
        parts = {}
        for part in event.rrule.split(";"):
            key, _, value = part.partition("=")
            parts[key] = value.split(",")
        vevent.add("rrule", parts)

    cal.add_component(vevent)
    return cal.to_ical().decode("utf-8")


def _to_datetime(value: date | datetime, tz: tzinfo) -> tuple[datetime, bool]:
    """Normalize a DTSTART/DTEND value. Returns (aware datetime, is_date)."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=tz)
        return value, False
    return datetime.combine(value, time(0, 0), tzinfo=tz), True


def _parse_vevent(data: str, tz: tzinfo) -> RemoteEvent | None:
    """Parse iCalendar text into a RemoteEvent; None when it holds no VEVENT.

    Raises:
        ValueError: the VEVENT has no UID or no DTSTART.
    """
    cal = iCalendar.from_ical(data)
    for component in cal.walk():
        if component.name != "VEVENT":
            continue

        uid = str(component.get("uid", ""))
        dtstart = component.get("dtstart")
        if not uid or dtstart is None:
            raise ValueError("VEVENT without UID or DTSTART")

        start, all_day = _to_datetime(dtstart.dt, tz)
        end = None
        dtend = component.get("dtend")
        if dtend is not None:
            end, _ = _to_datetime(dtend.dt, tz)

        rrule = component.get("rrule")
        return RemoteEvent(
            uid=uid,
            summary=str(component.get("summary", "")),
            start=start,
            end=end,
            description=str(component.get("description", "")),
            location=str(component.get("location", "")),
            all_day=all_day,
            rrule=rrule.to_ical().decode("utf-8") if rrule is not None else None,
        )
    return None


class CalDAVCalendarAdapter:
    """CalDAV implementation of RemoteCalendarPort."""

    def __init__(
        self,
        url: str,
        username: str,
        password: str,
        tz: tzinfo,
        timeout: float = 30.0,
    ) -> None:
        self._url = url
        self._username = username
        self._password = password
        self._tz = tz
        self._timeout = timeout

    def _get_calendar(self, path: str) -> caldav.Calendar:
        """Connect to the CalDAV server and address the calendar at ``path``."""
        client = caldav.DAVClient(
            url=self._url,
            username=self._username,
            password=self._password,
            timeout=int(self._timeout),
        )
        return client.calendar(url=path)

    async def _call(self, op: str, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self._timeout)
        except CalendarError:
            raise
        except NotFoundError as exc:
            raise CalendarNotFoundError(f"{op}: not found") from exc
        except Exception as exc:
            logger.error("CalDAV error (%s): %s", op, exc)
            raise CalendarError(f"Failed to {op}: {exc}") from exc

    async def list_events(
        self, path: str, start: datetime, end: datetime
    ) -> RemoteListing:
        """Fetch the window. Objects that fail to parse are reported, not raised."""

        def _list() -> RemoteListing:
            cal = self._get_calendar(path)
            results = cal.search(start=start, end=end, event=True, expand=False)
            listing = RemoteListing()
            for obj in results:
                try:
                    parsed = _parse_vevent(obj.data, self._tz)
                except Exception as exc:
                    logger.warning("Unparseable CalDAV object %s: %s", obj.url, exc)
                    listing.failures.append((str(obj.url), str(exc)))
                    continue
                if parsed is not None:
                    listing.events.append(parsed)
            return listing

        listing = await self._call("list events", _list)
        logger.info(
            "Found %d CalDAV event(s) between %s and %s (%d unparseable)",
            len(listing.events), start, end, len(listing.failures),
        )
        return listing

    async def create_event(self, path: str, event: RemoteEvent) -> RemoteEvent:
        vcal = _build_vevent(event)
        await self._call("create event", lambda: self._get_calendar(path).save_event(vcal))
        logger.info("CalDAV event created: %s '%s'", event.uid, event.summary)
        return event

    async def update_event(self, path: str, event: RemoteEvent) -> RemoteEvent:
        vcal = _build_vevent(event)

        def _update() -> None:
            obj = self._get_calendar(path).event_by_uid(event.uid)
            obj.data = vcal
            obj.save()

        await self._call("update event", _update)
        logger.info("CalDAV event updated: %s '%s'", event.uid, event.summary)
        return event

    async def delete_event(self, path: str, uid: str) -> None:
        await self._call(
            "delete event", lambda: self._get_calendar(path).event_by_uid(uid).delete()
        )
        logger.info("CalDAV event %s deleted.", uid)

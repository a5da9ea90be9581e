"""Calendar port — abstract interface for the remote calendar transport.

Core modules depend on this protocol, never on a specific provider.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol


class CalendarError(Exception):
    """Raised when any calendar provider operation fails."""


class CalendarNotFoundError(CalendarError):
    """Raised when the addressed remote event does not exist."""


@dataclass
class RemoteEvent:
    """An event as the remote calendar reports it."""

    uid: str
    summary: str
    start: datetime
    end: datetime | None = None
    description: str = ""
    location: str = ""
    all_day: bool = False
    rrule: str | None = None           # e.g. "FREQ=WEEKLY;BYDAY=MO"


@dataclass
class RemoteListing:
    """One fetched window: the events that parsed, and the objects that did not.

    ``failures`` holds ``(uid_or_url, message)`` pairs.
    """

    events: list[RemoteEvent] = field(default_factory=list)
    failures: list[tuple[str, str]] = field(default_factory=list)


class RemoteCalendarPort(Protocol):
    """Abstract remote calendar interface used by the reconciliation engine."""

    async def list_events(
        self, path: str, start: datetime, end: datetime
    ) -> RemoteListing: ...

    async def create_event(self, path: str, event: RemoteEvent) -> RemoteEvent: ...

    async def update_event(self, path: str, event: RemoteEvent) -> RemoteEvent: ...

    async def delete_event(self, path: str, uid: str) -> None: ...

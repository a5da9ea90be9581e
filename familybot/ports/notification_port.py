"""Notification port — abstract interface for sending messages to users.

Core modules depend on this protocol, never on a specific messaging provider.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class NotificationError(Exception):
    """Raised when a notification could not be delivered."""


@dataclass(frozen=True)
class NotificationAction:
    """An inline affordance attached to a notification ("Done", "Snooze 1h")."""

    label: str
    callback_data: str


class NotificationPort(Protocol):
    """Abstract notification interface used by core modules."""

    async def send_message(self, user_id: int, text: str) -> None: ...

    async def send_message_with_actions(
        self, user_id: int, text: str, actions: list[NotificationAction]
    ) -> None: ...

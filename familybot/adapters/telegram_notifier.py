"""Telegram notification adapter — implements NotificationPort.

Wraps a telegram.Bot instance to satisfy the NotificationPort protocol.
Actions become an inline keyboard: the first action on its own row, the
rest side by side below it.
"""

from __future__ import annotations

import logging

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import TelegramError

from familybot.ports.notification_port import NotificationAction, NotificationError

logger = logging.getLogger(__name__)


def build_keyboard(actions: list[NotificationAction]) -> InlineKeyboardMarkup:
    buttons = [
        InlineKeyboardButton(a.label, callback_data=a.callback_data) for a in actions
    ]
    rows = [buttons[:1]]
    if len(buttons) > 1:
        rows.append(buttons[1:])
    return InlineKeyboardMarkup(rows)


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(self, user_id: int, text: str) -> None:
        try:
            await self._bot.send_message(chat_id=user_id, text=text)
        except TelegramError as exc:
            raise NotificationError(f"Telegram send to {user_id} failed: {exc}") from exc

    async def send_message_with_actions(
        self, user_id: int, text: str, actions: list[NotificationAction]
    ) -> None:
        try:
            await self._bot.send_message(
                chat_id=user_id, text=text, reply_markup=build_keyboard(actions)
            )
        except TelegramError as exc:
            raise NotificationError(f"Telegram send to {user_id} failed: {exc}") from exc

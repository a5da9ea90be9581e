"""Floating weekly events — per-week day confirmation.

A floating event (e.g. "swimming, Saturday or Sunday") has no fixed weekday.
Each ISO week it starts out unconfirmed; the user picks one of its
admissible days, and that choice holds until the ISO week changes.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import date
from enum import Enum

from familybot.data.models import WEEKDAY_NAMES, WeeklyEvent
from familybot.ports.rule_store_port import RuleStorePort

logger = logging.getLogger(__name__)


class FloatingConfirmationError(Exception):
    """Raised when a day confirmation is rejected."""


class FloatingState(str, Enum):
    UNCONFIRMED = "unconfirmed"
    CONFIRMED = "confirmed"


def iso_year_week(day: date) -> tuple[int, int]:
    iso = day.isocalendar()
    return iso[0], iso[1]


def floating_state(event: WeeklyEvent, today: date) -> FloatingState:
    """State of the event for the ISO week containing ``today``.

    Fixed-day events are always confirmed.
    """
    if not event.is_floating:
        return FloatingState.CONFIRMED
    if event.confirmed_day is None:
        return FloatingState.UNCONFIRMED
    if (event.confirmed_year, event.confirmed_week) != iso_year_week(today):
        return FloatingState.UNCONFIRMED
    return FloatingState.CONFIRMED


def effective_weekday(event: WeeklyEvent, today: date) -> int | None:
    """Weekday the event happens on this week, or None while unconfirmed."""
    if not event.is_floating:
        return event.day_of_week
    if floating_state(event, today) == FloatingState.UNCONFIRMED:
        return None
    return event.confirmed_day


def confirm_day(
    store: RuleStorePort, event_id: int, day: int, today: date
) -> WeeklyEvent:
    """Confirm ``day`` for the current ISO week and return the updated event.

    Raises:
        FloatingConfirmationError: unknown event, not floating, or ``day``
            is not one of the admissible weekdays.
    """
    event = store.get_weekly_event(event_id)
    if event is None:
        raise FloatingConfirmationError(f"Weekly event #{event_id} not found")
    if not event.is_floating:
        raise FloatingConfirmationError(f"Weekly event #{event_id} is not floating")
    if day not in event.floating_days:
        allowed = "/".join(WEEKDAY_NAMES[d] for d in event.floating_days)
        raise FloatingConfirmationError(
            f"Day {day} is not admissible for '{event.title}' (allowed: {allowed})"
        )

    iso_year, iso_week = iso_year_week(today)
    store.set_confirmed_day(event_id, day, iso_year, iso_week)
    logger.info(
        "Floating event #%d '%s' confirmed for %s", event_id, event.title, WEEKDAY_NAMES[day]
    )
    return dataclasses.replace(
        event, confirmed_day=day, confirmed_year=iso_year, confirmed_week=iso_week
    )


def clear_confirmation(store: RuleStorePort, event_id: int) -> None:
    event = store.get_weekly_event(event_id)
    if event is None:
        raise FloatingConfirmationError(f"Weekly event #{event_id} not found")
    store.clear_confirmed_day(event_id)


def list_unconfirmed(
    store: RuleStorePort, today: date, user_id: int | None = None
) -> list[WeeklyEvent]:
    """Floating events still waiting for a day this week."""
    return [
        e for e in store.list_floating_events(user_id)
        if floating_state(e, today) == FloatingState.UNCONFIRMED
    ]

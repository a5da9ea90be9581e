"""Task actions — the "Done" / "Snooze" affordances on task notifications,
and the tasks generated from trackable weekly events.

Callback data travels through the messenger as short strings:
    done:<task_id>
    snooze:<task_id>:1h
    snooze:<task_id>:tomorrow
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import TYPE_CHECKING

from familybot.core.floating import effective_weekday
from familybot.core.recurrence import (
    DEFAULT_ANCHOR_TIME,
    RepeatKind,
    advance_past,
    obligation_from_task,
    parse_hhmm,
)
from familybot.core.reminder_rules import day_bounds
from familybot.data.models import Task
from familybot.ports.calendar_port import CalendarError
from familybot.ports.notification_port import NotificationAction

if TYPE_CHECKING:
    from familybot.core.calendar_sync import CalendarReconciler
    from familybot.ports.rule_store_port import RuleStorePort

logger = logging.getLogger(__name__)

SNOOZE_DURATIONS = ("1h", "tomorrow")


class TaskActionError(Exception):
    """Raised when a task action cannot be applied."""


@dataclass(frozen=True)
class TaskCallback:
    action: str                 # "done" | "snooze"
    task_id: int
    duration: str | None = None


def task_actions(task_id: int) -> list[NotificationAction]:
    """Buttons attached to urgent, repeating and due-date task notifications."""
    return [
        NotificationAction("✅ Done", f"done:{task_id}"),
        NotificationAction("⏰ +1 hour", f"snooze:{task_id}:1h"),
        NotificationAction("🌅 Tomorrow", f"snooze:{task_id}:tomorrow"),
    ]


def parse_callback(data: str) -> TaskCallback:
    """Parse callback data produced by task_actions().

    Raises:
        TaskActionError: on anything that is not a well-formed task callback.
    """
    parts = data.split(":")
    if len(parts) < 2 or not parts[1].isdigit():
        raise TaskActionError(f"Malformed task callback: {data!r}")

    action, task_id = parts[0], int(parts[1])
    if action == "done" and len(parts) == 2:
        return TaskCallback("done", task_id)
    if action == "snooze" and len(parts) == 3 and parts[2] in SNOOZE_DURATIONS:
        return TaskCallback("snooze", task_id, parts[2])
    raise TaskActionError(f"Malformed task callback: {data!r}")


def _load_for_actor(store: RuleStorePort, task_id: int, actor_user_id: int) -> Task:
    task = store.get_task(task_id)
    if task is None:
        raise TaskActionError(f"Task #{task_id} not found")
    if not (
        task.is_shared
        or task.user_id == actor_user_id
        or task.assigned_to == actor_user_id
    ):
        raise TaskActionError(f"Task #{task_id} does not belong to user #{actor_user_id}")
    return task


def create_successor(
    store: RuleStorePort, task: Task, now: datetime, tz: tzinfo
) -> Task | None:
    """Create the row for the next occurrence of a repeating task.

    The new due date is the first occurrence of the series strictly after
    ``now``. Returns None for non-repeating or corrupt tasks.
    """
    obligation = obligation_from_task(task, tz)
    if obligation.kind == RepeatKind.NONE:
        return None

    next_due = advance_past(obligation, task.due_date or now, now, tz)
    if next_due is None:
        logger.warning("Task #%d has no next occurrence; series ends", task.id)
        return None

    repeat_day = task.repeat_day
    if obligation.kind == RepeatKind.MONTHLY_SAME_DAY:
        repeat_day = obligation.day_of_month or 0

    successor = store.create_task(
        user_id=task.user_id,
        title=task.title,
        priority=task.priority,
        due_date=next_due,
        assigned_to=task.assigned_to,
        is_shared=task.is_shared,
        repeat_type=task.repeat_type,
        repeat_time=task.repeat_time,
        repeat_week_num=task.repeat_week_num,
        repeat_day=repeat_day,
    )
    logger.info(
        "Repeating task #%d continues as #%d due %s", task.id, successor.id, next_due.isoformat()
    )
    return successor


async def complete_task(
    store: RuleStorePort,
    task_id: int,
    actor_user_id: int,
    now: datetime,
    tz: tzinfo,
    reconciler: CalendarReconciler | None = None,
) -> Task | None:
    """Mark a task done. Returns the next occurrence's row, if one was created.

    The successor is only created here when the dispatcher has not already
    done so when the occurrence fired.
    """
    task = _load_for_actor(store, task_id, actor_user_id)
    if task.is_done:
        raise TaskActionError(f"Task #{task_id} is already done")

    store.mark_task_done(task_id, now)

    successor = None
    if task.is_repeating and task.repeat_fired_at is None:
        successor = create_successor(store, task, now, tz)

    if reconciler is not None and task.due_date is not None:
        try:
            await reconciler.remove_task(task_id)
        except CalendarError as exc:
            logger.error("Failed to remove task #%d from the calendar: %s", task_id, exc)
    return successor


def snooze_task(
    store: RuleStorePort,
    task_id: int,
    actor_user_id: int,
    duration: str,
    now: datetime,
    tz: tzinfo,
) -> datetime:
    """Suppress escalation for a task. Returns the snooze deadline."""
    if duration == "1h":
        until = now + timedelta(hours=1)
    elif duration == "tomorrow":
        tomorrow = now.astimezone(tz).date() + timedelta(days=1)
        until = datetime.combine(tomorrow, DEFAULT_ANCHOR_TIME, tzinfo=tz)
    else:
        raise TaskActionError(f"Unknown snooze duration: {duration!r}")

    _load_for_actor(store, task_id, actor_user_id)
    store.snooze_task(task_id, until)
    return until


def create_trackable_tasks(
    store: RuleStorePort, user_id: int, now: datetime, tz: tzinfo
) -> list[Task]:
    """Turn the user's trackable weekly events happening today into tasks.

    Each task is due at the event's start time. Floating events count only
    once confirmed for today. An event that already has an open task with its
    title due today is skipped, so running this twice a day is harmless.
    """
    today = now.astimezone(tz).date()
    day_start, day_end = day_bounds(today, tz)

    created: list[Task] = []
    for event in store.list_trackable_events(user_id):
        if effective_weekday(event, today) != today.weekday():
            continue
        if store.open_task_exists(user_id, event.title, day_start, day_end):
            continue

        try:
            due = datetime.combine(today, parse_hhmm(event.time_start), tzinfo=tz)
        except ValueError as exc:
            logger.warning("Weekly event #%d has a bad start time: %s", event.id, exc)
            due = day_start

        task = store.create_task(user_id, event.title, due_date=due)
        logger.info("Created task #%d from trackable event #%d '%s'", task.id, event.id, event.title)
        created.append(task)
    return created

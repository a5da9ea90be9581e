"""Reminder rules — due-checks and message texts shared by the dispatcher.

Pure helpers: given an entity and the current instant, decide whether it is
due, and render what the user should see. No I/O.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, tzinfo
from enum import Enum

from familybot.core.floating import effective_weekday
from familybot.core.recurrence import parse_hhmm
from familybot.data.models import (
    WEEKDAY_NAMES,
    CalendarEvent,
    Priority,
    Reminder,
    Task,
    WeeklyEvent,
)

logger = logging.getLogger(__name__)


class EntityKind(str, Enum):
    REMINDER = "reminder"
    WEEKLY_EVENT = "weekly_event"
    REPEATING_TASK = "repeating_task"
    TASK_REMINDER = "task_reminder"
    URGENT_TASK = "urgent_task"
    CALENDAR_EVENT = "calendar_event"


@dataclass(frozen=True)
class DueSignal:
    """One occurrence that is due for notification in the current tick."""

    entity_id: int
    entity_kind: EntityKind
    scheduled_at: datetime


def floor_minute(dt: datetime) -> datetime:
    return dt.replace(second=0, microsecond=0)


# ---------------------------------------------------------------------------
# Due checks
# ---------------------------------------------------------------------------


def is_snoozed(task: Task, now: datetime) -> bool:
    return task.snooze_until is not None and task.snooze_until > now


def should_escalate(task: Task, now: datetime) -> bool:
    """Urgent, open and not snoozed past ``now``."""
    return task.priority == Priority.URGENT and not task.is_done and not is_snoozed(task, now)


def event_reminder_at(event: WeeklyEvent, now: datetime, tz: tzinfo) -> datetime | None:
    """The reminder instant for ``event`` if it falls in the minute of ``now``.

    The occurrence is the event start ``reminder_before`` minutes from now;
    it must land on the event's effective weekday for that week. Floating
    events are skipped while unconfirmed. Returns None when nothing is due,
    including when the reminder for this occurrence was already sent.
    """
    if event.reminder_before <= 0:
        return None
    try:
        start = parse_hhmm(event.time_start)
    except ValueError as exc:
        logger.warning("Weekly event #%d has a malformed start time: %s", event.id, exc)
        return None

    reminder_at = floor_minute(now.astimezone(tz))
    occurrence = reminder_at + timedelta(minutes=event.reminder_before)
    if (occurrence.hour, occurrence.minute) != (start.hour, start.minute):
        return None

    weekday = effective_weekday(event, occurrence.date())
    if weekday is None or weekday != occurrence.weekday():
        return None

    if event.reminder_sent_at is not None and event.reminder_sent_at >= reminder_at:
        return None
    return reminder_at


def calendar_reminder_due(
    event: CalendarEvent, now: datetime, lead_minutes: int
) -> bool:
    """Timed mirror event starting exactly ``lead_minutes`` after this minute."""
    if event.all_day:
        return False
    target = floor_minute(now) + timedelta(minutes=lead_minutes)
    return floor_minute(event.start_time) == target


def day_bounds(day: date, tz: tzinfo) -> tuple[datetime, datetime]:
    """[start, end) of a local calendar day as aware datetimes."""
    start = datetime.combine(day, datetime.min.time(), tzinfo=tz)
    return start, start + timedelta(days=1)


# ---------------------------------------------------------------------------
# Message texts
# ---------------------------------------------------------------------------


def remind_before_label(minutes: int) -> str:
    """Human label for a lead time: "in 15 minutes", "in 1 hour", "in 2 days"."""
    if minutes <= 0:
        return "now"
    if minutes % 1440 == 0:
        days = minutes // 1440
        return "in 1 day" if days == 1 else f"in {days} days"
    if minutes % 60 == 0:
        hours = minutes // 60
        return "in 1 hour" if hours == 1 else f"in {hours} hours"
    return "in 1 minute" if minutes == 1 else f"in {minutes} minutes"


def format_reminder(reminder: Reminder) -> str:
    return f"🔔 Reminder\n\n{reminder.title}"


def format_event_reminder(event: WeeklyEvent) -> str:
    label = remind_before_label(event.reminder_before).capitalize()
    return f"⏰ {label}: {event.title} ({event.time_start})"


def format_repeating_task(task: Task, hhmm: str) -> str:
    return f"🔁 {hhmm}\n\n{task.priority_emoji} #{task.id} {task.title}"


def format_urgent_task(task: Task) -> str:
    return (
        f"🔴 Reminder #{task.reminder_count + 1}\n\n"
        f"Still waiting:\n#{task.id} {task.title}"
    )


def format_task_reminder(task: Task, remind_before: int, tz: tzinfo) -> str:
    due = task.due_date.astimezone(tz).strftime("%d.%m %H:%M") if task.due_date else ""
    return (
        f"⏰ Reminder {remind_before_label(remind_before)}\n\n"
        f"{task.priority_emoji} #{task.id} {task.title}\n\n"
        f"📅 Due: {due}"
    )


def format_calendar_reminder(event: CalendarEvent, lead_minutes: int, tz: tzinfo) -> str:
    local = event.start_time.astimezone(tz).strftime("%H:%M")
    label = remind_before_label(lead_minutes).capitalize()
    text = f"⏰ {label}: {event.title} ({local})"
    if event.location:
        text += f"\n📍 {event.location}"
    return text


def format_floating_nudge(events: list[WeeklyEvent]) -> str:
    lines = ["🔄 Floating events this week:", ""]
    for e in events:
        days = "/".join(WEEKDAY_NAMES[d] for d in e.floating_days)
        lines.append(f"• {e.title} ({days}) {e.time_range}")
    lines.append("")
    lines.append("Pick a day: /floating")
    return "\n".join(lines)


def format_morning_digest(
    tasks: list[Task], events: list[CalendarEvent], urgent_count: int, tz: tzinfo
) -> str:
    lines = ["☀️ Good morning!", ""]

    if events:
        lines.append("📅 Calendar today:")
        for ev in events:
            if ev.all_day:
                lines.append(f"  • {ev.title} (all day)")
            else:
                lines.append(f"  • {ev.start_time.astimezone(tz):%H:%M} {ev.title}")
        lines.append("")

    if tasks:
        lines.append(f"Tasks for today: {len(tasks)}")
        for t in tasks:
            lines.append(f"  {t.priority_emoji} #{t.id} {t.title}")
    else:
        lines.append("No tasks for today.")

    if urgent_count:
        lines.append("")
        lines.append(f"🔴 Urgent: {urgent_count}")
    return "\n".join(lines)


def format_evening_digest(open_count: int, urgent_count: int) -> str:
    text = "🌙 Evening check-in\n\n"
    if open_count == 0:
        return text + "All tasks are done! 🎉"
    text += f"Open tasks: {open_count}"
    if urgent_count:
        text += f" (urgent: {urgent_count} 🔴)"
    return text + "\n\n/list to see them"

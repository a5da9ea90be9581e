"""
FamilyBot — Data Models.

Everything the scheduling core reads lives in SQLite and is owned by the
rule store. The core only issues narrow "mark fired / confirm day / upsert
mirror row" mutations against these records.

Weekdays follow Python's convention throughout: Monday = 0 ... Sunday = 6.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Priority(str, Enum):
    URGENT = "urgent"
    WEEK = "week"
    SOMEDAY = "someday"


class RepeatType(str, Enum):
    """How a task repeats. Stored as text in the tasks table."""

    NONE = ""
    DAILY = "daily"
    WEEKDAYS = "weekdays"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    MONTHLY_NTH = "monthly_nth"


class ReminderType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    MONTH_WEEK = "month_week"  # e.g. 2nd Friday of the month
    YEARLY = "yearly"
    FLOATING = "floating"


WEEKDAY_NAMES = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")

PRIORITY_EMOJI = {
    Priority.URGENT: "🔴",
    Priority.WEEK: "🟡",
    Priority.SOMEDAY: "🟢",
}


@dataclass
class User:
    """A family member who receives notifications."""

    id: int
    telegram_id: int
    name: str


@dataclass
class Task:
    """A to-do item. Repeating tasks keep one row per occurrence."""

    id: int
    user_id: int
    title: str
    priority: Priority = Priority.WEEK
    assigned_to: int | None = None
    is_shared: bool = False
    due_date: datetime | None = None
    done_at: datetime | None = None
    created_at: datetime | None = None
    reminder_count: int = 0
    last_reminded_at: datetime | None = None
    snooze_until: datetime | None = None
    repeat_type: RepeatType = RepeatType.NONE
    repeat_time: str = ""              # "HH:MM"
    repeat_week_num: int = 0           # 1-4, monthly_nth only
    repeat_day: int = 0                # day-of-month anchor, monthly only
    repeat_fired_at: datetime | None = None

    @property
    def is_done(self) -> bool:
        return self.done_at is not None

    @property
    def is_repeating(self) -> bool:
        return self.repeat_type != RepeatType.NONE

    @property
    def priority_emoji(self) -> str:
        return PRIORITY_EMOJI.get(self.priority, "⚪")

    @property
    def recipient_user_id(self) -> int:
        """Assignee if any, otherwise the creator."""
        return self.assigned_to if self.assigned_to is not None else self.user_id


@dataclass
class TaskReminder:
    """A "remind me N minutes before the due date" marker on a task."""

    id: int
    task_id: int
    remind_before: int                 # minutes
    sent_at: datetime | None = None


@dataclass
class Reminder:
    """A free-standing recurring reminder.

    ``params`` is the raw JSON blob from the store; it is parsed into an
    Obligation by familybot.core.recurrence.obligation_from_reminder.
    """

    id: int
    user_id: int
    title: str
    type: ReminderType
    params: str = "{}"
    is_active: bool = True
    last_sent: datetime | None = None
    next_run: datetime | None = None


@dataclass
class WeeklyEvent:
    """A recurring weekly slot, optionally floating among several weekdays."""

    id: int
    user_id: int
    day_of_week: int                   # 0-6, Monday = 0
    time_start: str                    # "HH:MM"
    title: str
    time_end: str = ""
    reminder_before: int = 0           # minutes, 0 = no reminder
    is_floating: bool = False
    floating_days: list[int] = field(default_factory=list)
    confirmed_day: int | None = None
    confirmed_year: int = 0
    confirmed_week: int = 0            # ISO week number the confirmation is for
    is_shared: bool = False
    is_trackable: bool = False         # becomes a task on the day it happens
    reminder_sent_at: datetime | None = None

    @property
    def time_range(self) -> str:
        if self.time_end:
            return f"{self.time_start}-{self.time_end}"
        return self.time_start


@dataclass
class CalendarEvent:
    """Local mirror row of a remote calendar event.

    remote_uid None: created locally, never pushed.
    last_synced_at None: never touched by reconciliation, purely local.
    """

    id: int
    user_id: int
    title: str
    start_time: datetime
    end_time: datetime | None = None
    remote_uid: str | None = None
    description: str = ""
    location: str = ""
    all_day: bool = False
    is_shared: bool = False
    last_synced_at: datetime | None = None

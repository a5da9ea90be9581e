"""Rule store port — the persistence operations the scheduling core consumes.

The core never owns long-lived state: it reads candidates through the query
methods and records firings through the single-row mutation methods. Each
mutation is expected to be atomic at the row level.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from familybot.data.models import (
    CalendarEvent,
    Priority,
    Reminder,
    RepeatType,
    Task,
    TaskReminder,
    User,
    WeeklyEvent,
)


class RuleStorePort(Protocol):
    """Abstract rule store used by the dispatcher and the reconciler."""

    # --- users ---------------------------------------------------------------

    def list_users(self) -> list[User]: ...

    def get_user(self, user_id: int) -> User | None: ...

    # --- reminders -----------------------------------------------------------

    def list_due_reminders(self, now: datetime) -> list[Reminder]: ...

    def mark_reminder_sent(
        self, reminder_id: int, sent_at: datetime, next_run: datetime | None
    ) -> None: ...

    # --- tasks ---------------------------------------------------------------

    def get_task(self, task_id: int) -> Task | None: ...

    def create_task(
        self,
        user_id: int,
        title: str,
        priority: Priority = Priority.WEEK,
        due_date: datetime | None = None,
        assigned_to: int | None = None,
        is_shared: bool = False,
        repeat_type: RepeatType = RepeatType.NONE,
        repeat_time: str = "",
        repeat_week_num: int = 0,
        repeat_day: int = 0,
    ) -> Task: ...

    def list_open_tasks(self, user_id: int | None = None) -> list[Task]: ...

    def list_tasks_for_day(
        self, user_id: int, start: datetime, end: datetime
    ) -> list[Task]: ...

    def open_task_exists(
        self, user_id: int, title: str, start: datetime, end: datetime
    ) -> bool: ...

    def list_urgent_tasks(self, now: datetime) -> list[Task]: ...

    def list_repeating_tasks_by_time(self, hhmm: str, now: datetime) -> list[Task]: ...

    def mark_task_reminded(self, task_id: int, at: datetime) -> None: ...

    def mark_repeat_fired(self, task_id: int, at: datetime) -> None: ...

    def mark_task_done(self, task_id: int, at: datetime) -> None: ...

    def snooze_task(self, task_id: int, until: datetime) -> None: ...

    def list_pending_task_reminders(
        self, now: datetime
    ) -> list[tuple[TaskReminder, Task]]: ...

    def mark_task_reminder_sent(self, reminder_id: int, sent_at: datetime) -> None: ...

    # --- weekly schedule -----------------------------------------------------

    def get_weekly_event(self, event_id: int) -> WeeklyEvent | None: ...

    def list_weekly_events(self, user_id: int | None = None) -> list[WeeklyEvent]: ...

    def list_events_with_reminders(self) -> list[WeeklyEvent]: ...

    def list_floating_events(self, user_id: int | None = None) -> list[WeeklyEvent]: ...

    def list_trackable_events(self, user_id: int) -> list[WeeklyEvent]: ...

    def mark_event_reminder_sent(self, event_id: int, at: datetime) -> None: ...

    def set_confirmed_day(
        self, event_id: int, day: int, iso_year: int, iso_week: int
    ) -> None: ...

    def clear_confirmed_day(self, event_id: int) -> None: ...

    # --- calendar mirror -----------------------------------------------------

    def list_calendar_events(self) -> list[CalendarEvent]: ...

    def list_calendar_events_between(
        self, start: datetime, end: datetime
    ) -> list[CalendarEvent]: ...

    def create_calendar_event(self, event: CalendarEvent) -> CalendarEvent: ...

    def update_calendar_event(self, event: CalendarEvent) -> None: ...

    def delete_calendar_event(self, event_id: int) -> bool: ...

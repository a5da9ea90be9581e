"""
FamilyBot — Dispatch Loop.

A single scheduler object that, once a minute (plus hourly, daily and weekly
cadences), re-evaluates every reminder rule against the clock and notifies
the users whose occurrences are due.

Per candidate the order is always: send, then persist the fired marker.
A failed send leaves the marker unset so the next evaluation retries; a
failed mark after a successful send is logged and may cause a duplicate.

This module depends on the NotificationPort, RuleStorePort and (optionally)
the CalendarReconciler, never on concrete adapters.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from functools import partial
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from familybot.core.floating import list_unconfirmed
from familybot.core.recurrence import (
    RepeatKind,
    advance_past,
    obligation_from_reminder,
    obligation_from_task,
    occurs_on,
)
from familybot.core.reminder_rules import (
    DueSignal,
    EntityKind,
    calendar_reminder_due,
    day_bounds,
    event_reminder_at,
    floor_minute,
    format_calendar_reminder,
    format_evening_digest,
    format_event_reminder,
    format_floating_nudge,
    format_morning_digest,
    format_reminder,
    format_repeating_task,
    format_task_reminder,
    format_urgent_task,
    should_escalate,
)
from familybot.core.task_actions import create_successor, create_trackable_tasks, task_actions
from familybot.data.models import Priority

if TYPE_CHECKING:
    from familybot.config import Settings
    from familybot.core.calendar_sync import CalendarReconciler
    from familybot.ports.notification_port import NotificationAction, NotificationPort
    from familybot.ports.rule_store_port import RuleStorePort

logger = logging.getLogger(__name__)

Handler = Callable[[datetime], Awaitable[None]]

# Ticks later than this are dropped, not replayed.
_MISFIRE_GRACE_SECONDS = 30


class DispatchLoop:
    """Owns the periodic jobs. Construct once, ``start()``, then ``await stop()``."""

    def __init__(
        self,
        store: RuleStorePort,
        notifier: NotificationPort,
        settings: Settings,
        reconciler: CalendarReconciler | None = None,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._settings = settings
        self._reconciler = reconciler
        self._tz = settings.tz
        self._scheduler: AsyncIOScheduler | None = None
        self._inflight: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Register every cadence and start ticking. Needs a running event loop."""
        if self.running:
            return

        s = self._settings
        morning_h, morning_m = s.MORNING_TIME.split(":")
        evening_h, evening_m = s.EVENING_TIME.split(":")
        nudge_h, nudge_m = s.FLOATING_NUDGE_TIME.split(":")
        trackable_h, trackable_m = s.TRACKABLE_TASKS_TIME.split(":")

        jobs: list[tuple[str, CronTrigger, Callable]] = [
            ("minute_tick", CronTrigger(minute="*", timezone=self._tz), self.minute_tick),
            ("hourly_tick", CronTrigger(minute=0, timezone=self._tz), self.hourly_tick),
            (
                "morning_digest",
                CronTrigger(hour=int(morning_h), minute=int(morning_m), timezone=self._tz),
                self.send_morning_digest,
            ),
            (
                "evening_digest",
                CronTrigger(hour=int(evening_h), minute=int(evening_m), timezone=self._tz),
                self.send_evening_digest,
            ),
            (
                "floating_nudge",
                CronTrigger(
                    day_of_week=s.FLOATING_NUDGE_DAY,
                    hour=int(nudge_h),
                    minute=int(nudge_m),
                    timezone=self._tz,
                ),
                self.send_floating_nudge,
            ),
            (
                "trackable_tasks",
                CronTrigger(hour=int(trackable_h), minute=int(trackable_m), timezone=self._tz),
                self.create_trackable_event_tasks,
            ),
        ]

        self._scheduler = AsyncIOScheduler(timezone=self._tz)
        for job_id, trigger, handler in jobs:
            self._scheduler.add_job(
                self._run_job,
                trigger,
                args=[job_id, handler],
                id=job_id,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=_MISFIRE_GRACE_SECONDS,
            )
        self._scheduler.start()
        logger.info(
            "Dispatch loop started (%s, morning %s, evening %s, nudge %s %s)",
            s.TIMEZONE, s.MORNING_TIME, s.EVENING_TIME, s.FLOATING_NUDGE_DAY, s.FLOATING_NUDGE_TIME,
        )

    async def stop(self) -> None:
        """Stop scheduling new ticks, then wait for ticks already running."""
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None

        pending = [t for t in self._inflight if t is not asyncio.current_task()]
        if pending:
            logger.info("Waiting for %d in-flight tick(s)", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Dispatch loop stopped")

    async def _run_job(self, job_id: str, handler: Callable[..., Awaitable[None]]) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._inflight.add(task)
        try:
            await handler(None)
        except Exception as exc:
            logger.error("Job %s failed: %s", job_id, exc)
        finally:
            if task is not None:
                self._inflight.discard(task)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _now(self, now: datetime | None) -> datetime:
        return now if now is not None else datetime.now(self._tz)

    async def _run_handlers(self, name: str, handlers: list[Handler], now: datetime) -> None:
        for handler in handlers:
            try:
                await handler(now)
            except Exception as exc:
                logger.error("%s: %s failed: %s", name, handler.__name__, exc)

    def _chat_id(self, user_id: int) -> int | None:
        user = self._store.get_user(user_id)
        if user is None:
            logger.warning("No user #%d to notify", user_id)
            return None
        return user.telegram_id

    async def _send(
        self, chat_id: int, text: str, actions: list[NotificationAction] | None = None
    ) -> None:
        timeout = self._settings.NOTIFY_TIMEOUT_SECONDS
        if actions:
            coro = self._notifier.send_message_with_actions(chat_id, text, actions)
        else:
            coro = self._notifier.send_message(chat_id, text)
        await asyncio.wait_for(coro, timeout=timeout)

    async def _fire(
        self,
        signal: DueSignal,
        chat_id: int,
        text: str,
        mark: Callable[[], object] | None = None,
        actions: list[NotificationAction] | None = None,
    ) -> bool:
        """Send one notification, then record it. Returns whether it was sent."""
        try:
            await self._send(chat_id, text, actions)
        except Exception as exc:
            logger.error(
                "Failed to send %s #%d to %d: %s",
                signal.entity_kind.value, signal.entity_id, chat_id, exc,
            )
            return False

        logger.info(
            "Sent %s #%d to %d (scheduled %s)",
            signal.entity_kind.value, signal.entity_id, chat_id, signal.scheduled_at.isoformat(),
        )
        if mark is not None:
            try:
                mark()
            except Exception as exc:
                logger.error(
                    "Sent %s #%d but failed to record it, it may repeat: %s",
                    signal.entity_kind.value, signal.entity_id, exc,
                )
        return True

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    async def minute_tick(self, now: datetime | None = None) -> None:
        now = floor_minute(self._now(now))
        await self._run_handlers("minute_tick", [
            self.check_reminders,
            self.check_event_reminders,
            self.check_repeating_tasks,
            self.check_task_reminders,
            self.check_calendar_event_reminders,
        ], now)

    async def hourly_tick(self, now: datetime | None = None) -> None:
        now = floor_minute(self._now(now))
        await self._run_handlers("hourly_tick", [
            self.check_urgent_tasks,
            self.sync_calendar,
        ], now)

    # ------------------------------------------------------------------
    # Minute handlers
    # ------------------------------------------------------------------

    async def check_reminders(self, now: datetime | None = None) -> None:
        """Fire reminders whose next_run has passed, then move next_run past now."""
        now = self._now(now)
        for reminder in self._store.list_due_reminders(now):
            chat_id = self._chat_id(reminder.user_id)
            if chat_id is None:
                continue

            scheduled = reminder.next_run or now
            obligation = obligation_from_reminder(reminder)
            next_run = advance_past(obligation, scheduled, now, self._tz)
            if next_run is None:
                logger.warning("Reminder #%d has no further occurrences", reminder.id)

            await self._fire(
                DueSignal(reminder.id, EntityKind.REMINDER, scheduled),
                chat_id,
                format_reminder(reminder),
                mark=partial(self._store.mark_reminder_sent, reminder.id, now, next_run),
            )

    async def check_event_reminders(self, now: datetime | None = None) -> None:
        """Weekly-schedule reminders, exact minute match; missed minutes are not replayed."""
        now = self._now(now)
        for event in self._store.list_events_with_reminders():
            reminder_at = event_reminder_at(event, now, self._tz)
            if reminder_at is None:
                continue
            chat_id = self._chat_id(event.user_id)
            if chat_id is None:
                continue
            await self._fire(
                DueSignal(event.id, EntityKind.WEEKLY_EVENT, reminder_at),
                chat_id,
                format_event_reminder(event),
                mark=partial(self._store.mark_event_reminder_sent, event.id, now),
            )

    async def check_repeating_tasks(self, now: datetime | None = None) -> None:
        """Fire repeating tasks anchored at this minute and continue their series."""
        now = self._now(now)
        local = now.astimezone(self._tz)
        today = local.date()
        hhmm = local.strftime("%H:%M")

        for task in self._store.list_repeating_tasks_by_time(hhmm, now):
            obligation = obligation_from_task(task, self._tz)
            if obligation.kind == RepeatKind.NONE:
                continue

            due_day = task.due_date.astimezone(self._tz).date() if task.due_date else today
            if due_day > today:
                continue

            def advance(task=task) -> None:
                self._store.mark_repeat_fired(task.id, now)
                create_successor(self._store, task, now, self._tz)

            if not occurs_on(obligation, today):
                # Stale occurrence: continue the series without notifying.
                logger.info("Repeating task #%d missed its day; rolling forward", task.id)
                advance()
                continue

            chat_id = self._chat_id(task.recipient_user_id)
            if chat_id is None:
                continue
            await self._fire(
                DueSignal(task.id, EntityKind.REPEATING_TASK, now),
                chat_id,
                format_repeating_task(task, hhmm),
                mark=advance,
                actions=task_actions(task.id),
            )

    async def check_task_reminders(self, now: datetime | None = None) -> None:
        """Reminders set N minutes before a task's due date."""
        now = self._now(now)
        for reminder, task in self._store.list_pending_task_reminders(now):
            chat_id = self._chat_id(task.recipient_user_id)
            if chat_id is None:
                continue
            scheduled = task.due_date - timedelta(minutes=reminder.remind_before)
            await self._fire(
                DueSignal(reminder.id, EntityKind.TASK_REMINDER, scheduled),
                chat_id,
                format_task_reminder(task, reminder.remind_before, self._tz),
                mark=partial(self._store.mark_task_reminder_sent, reminder.id, now),
                actions=task_actions(task.id),
            )

    async def check_calendar_event_reminders(self, now: datetime | None = None) -> None:
        """Announce mirrored calendar events starting CALENDAR_REMINDER_MINUTES from now."""
        lead = self._settings.CALENDAR_REMINDER_MINUTES
        if lead <= 0:
            return
        now = floor_minute(self._now(now))
        target = now + timedelta(minutes=lead)
        partner_id = self._settings.PARTNER_TELEGRAM_ID

        for event in self._store.list_calendar_events_between(target, target + timedelta(minutes=1)):
            if not calendar_reminder_due(event, now, lead):
                continue
            chat_id = self._chat_id(event.user_id)
            if chat_id is None:
                continue

            text = format_calendar_reminder(event, lead, self._tz)
            signal = DueSignal(event.id, EntityKind.CALENDAR_EVENT, now)
            await self._fire(signal, chat_id, text)
            if event.is_shared and partner_id and partner_id != chat_id:
                await self._fire(signal, partner_id, text)

    # ------------------------------------------------------------------
    # Hourly handlers
    # ------------------------------------------------------------------

    async def check_urgent_tasks(self, now: datetime | None = None) -> None:
        """Renotify every open, unsnoozed urgent task; the count grows each time."""
        now = self._now(now)
        for task in self._store.list_urgent_tasks(now):
            if not should_escalate(task, now):
                continue
            chat_id = self._chat_id(task.recipient_user_id)
            if chat_id is None:
                continue
            await self._fire(
                DueSignal(task.id, EntityKind.URGENT_TASK, now),
                chat_id,
                format_urgent_task(task),
                mark=partial(self._store.mark_task_reminded, task.id, now),
                actions=task_actions(task.id),
            )

    async def sync_calendar(self, now: datetime | None = None) -> None:
        """Pull the remote window, then push every local entry once."""
        if self._reconciler is None:
            return
        now = self._now(now)
        await self._reconciler.sync_from_remote(now)
        await self._reconciler.sync_to_remote(now=now)

    # ------------------------------------------------------------------
    # Digests
    # ------------------------------------------------------------------

    async def send_morning_digest(self, now: datetime | None = None) -> None:
        """Today's tasks and calendar events, plus the urgent count, to every user."""
        now = self._now(now)
        start, end = day_bounds(now.astimezone(self._tz).date(), self._tz)
        events = self._store.list_calendar_events_between(start, end)

        for user in self._store.list_users():
            try:
                tasks = self._store.list_tasks_for_day(user.id, start, end)
                urgent = sum(
                    1 for t in self._store.list_open_tasks(user.id) if t.priority == Priority.URGENT
                )
                mine = [e for e in events if e.user_id == user.id or e.is_shared]
                text = format_morning_digest(tasks, mine, urgent, self._tz)
                await self._send(user.telegram_id, text)
                logger.info("Morning digest sent to user %d", user.telegram_id)
            except Exception as exc:
                logger.error("Failed to send morning digest to %d: %s", user.telegram_id, exc)

    async def send_evening_digest(self, now: datetime | None = None) -> None:
        for user in self._store.list_users():
            try:
                open_tasks = self._store.list_open_tasks(user.id)
                urgent = sum(1 for t in open_tasks if t.priority == Priority.URGENT)
                await self._send(user.telegram_id, format_evening_digest(len(open_tasks), urgent))
                logger.info("Evening check-in sent to user %d", user.telegram_id)
            except Exception as exc:
                logger.error("Failed to send evening check-in to %d: %s", user.telegram_id, exc)

    async def send_floating_nudge(self, now: datetime | None = None) -> None:
        """Ask each user to pick days for floating events still unconfirmed this week."""
        today = self._now(now).astimezone(self._tz).date()
        for user in self._store.list_users():
            try:
                events = list_unconfirmed(self._store, today, user.id)
                if not events:
                    continue
                await self._send(user.telegram_id, format_floating_nudge(events))
                logger.info("Floating nudge sent to user %d (%d events)", user.telegram_id, len(events))
            except Exception as exc:
                logger.error("Failed to send floating nudge to %d: %s", user.telegram_id, exc)

    # ------------------------------------------------------------------
    # Daily task generation
    # ------------------------------------------------------------------

    async def create_trackable_event_tasks(self, now: datetime | None = None) -> None:
        """Create today's tasks from each user's trackable weekly events."""
        now = self._now(now)
        for user in self._store.list_users():
            try:
                create_trackable_tasks(self._store, user.id, now, self._tz)
            except Exception as exc:
                logger.error("Failed to create trackable tasks for user %d: %s", user.id, exc)

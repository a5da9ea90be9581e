"""Calendar reconciliation — keep the local mirror and the remote calendar aligned.

Pull (remote -> mirror): the remote calendar is the source of truth. Unknown
events are inserted, changed ones overwritten, and mirror rows that a
previous sync created but the remote no longer reports are deleted. Rows
that were never synced are left alone.

Push (local -> remote): tasks with a due date and weekly-schedule slots are
projected onto the remote calendar under deterministic UIDs, so pushing the
same data twice updates instead of duplicating.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, tzinfo

from dateutil.relativedelta import relativedelta

from familybot.core.recurrence import parse_hhmm
from familybot.data.models import CalendarEvent, Task, WeeklyEvent
from familybot.ports.calendar_port import (
    CalendarError,
    CalendarNotFoundError,
    RemoteCalendarPort,
    RemoteEvent,
    RemoteListing,
)
from familybot.ports.rule_store_port import RuleStorePort

logger = logging.getLogger(__name__)

UID_DOMAIN = "familybot"

_RRULE_DAYS = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")


def task_uid(task_id: int) -> str:
    return f"task-{task_id}@{UID_DOMAIN}"


def schedule_uid(event_id: int) -> str:
    return f"schedule-{event_id}@{UID_DOMAIN}"


def is_synthetic_uid(uid: str) -> bool:
    """True for UIDs this bot pushes; those events are projections, not mirror rows."""
    return uid.endswith(f"@{UID_DOMAIN}") and uid.startswith(("task-", "schedule-"))


@dataclass
class SyncResult:
    added: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class PushResult:
    created: int = 0
    updated: int = 0
    errors: list[str] = field(default_factory=list)


def _mirror_differs(local: CalendarEvent, remote: RemoteEvent) -> bool:
    return (
        local.title != remote.summary
        or local.description != remote.description
        or local.location != remote.location
        or local.start_time != remote.start
        or local.end_time != remote.end
        or local.all_day != remote.all_day
    )


class CalendarReconciler:
    """Bidirectional sync between the rule store's mirror and one remote calendar."""

    def __init__(
        self,
        store: RuleStorePort,
        transport: RemoteCalendarPort,
        calendar_path: str,
        owner_user_id: int,
        tz: tzinfo,
        window_months: int = 3,
    ) -> None:
        self._store = store
        self._transport = transport
        self._path = calendar_path
        self._owner_user_id = owner_user_id
        self._tz = tz
        self._window_months = window_months

    def _window(self, now: datetime) -> tuple[datetime, datetime]:
        start = datetime.combine(now.astimezone(self._tz).date(), time(0, 0), tzinfo=self._tz)
        return start, start + relativedelta(months=self._window_months)

    async def _fetch(self, start: datetime, end: datetime) -> RemoteListing:
        try:
            return await self._transport.list_events(self._path, start, end)
        except CalendarError:
            raise
        except Exception as exc:
            raise CalendarError(f"Failed to list remote events: {exc}") from exc

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def sync_from_remote(self, now: datetime | None = None) -> SyncResult:
        """Reconcile the mirror with the remote window starting today.

        Raises:
            CalendarError: the remote window could not be fetched at all.
        """
        now = now or datetime.now(self._tz)
        start, end = self._window(now)
        listing = await self._fetch(start, end)

        local_by_uid = {
            e.remote_uid: e for e in self._store.list_calendar_events() if e.remote_uid
        }
        result = SyncResult()
        seen: set[str] = set()

        for ref, message in listing.failures:
            logger.warning("Calendar sync: cannot parse %s: %s", ref, message)
            result.errors.append(f"parse {ref}: {message}")

        for remote in listing.events:
            seen.add(remote.uid)
            if is_synthetic_uid(remote.uid):
                result.skipped += 1
                continue

            local = local_by_uid.get(remote.uid)
            try:
                if local is None:
                    self._store.create_calendar_event(CalendarEvent(
                        id=0,
                        user_id=self._owner_user_id,
                        remote_uid=remote.uid,
                        title=remote.summary,
                        description=remote.description,
                        location=remote.location,
                        start_time=remote.start,
                        end_time=remote.end,
                        all_day=remote.all_day,
                        is_shared=False,
                        last_synced_at=now,
                    ))
                    result.added += 1
                elif _mirror_differs(local, remote):
                    local.title = remote.summary
                    local.description = remote.description
                    local.location = remote.location
                    local.start_time = remote.start
                    local.end_time = remote.end
                    local.all_day = remote.all_day
                    local.last_synced_at = now
                    self._store.update_calendar_event(local)
                    result.updated += 1
            except Exception as exc:
                action = "create" if local is None else "update"
                logger.warning("Calendar sync: %s %s failed: %s", action, remote.uid, exc)
                result.errors.append(f"{action} {remote.uid}: {exc}")

        for uid, local in local_by_uid.items():
            if uid in seen or local.last_synced_at is None:
                continue
            try:
                if self._store.delete_calendar_event(local.id):
                    result.deleted += 1
            except Exception as exc:
                logger.warning("Calendar sync: delete %s failed: %s", uid, exc)
                result.errors.append(f"delete {uid}: {exc}")

        logger.info(
            "Calendar pulled: +%d ~%d -%d (skipped %d, errors %d)",
            result.added, result.updated, result.deleted, result.skipped, len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def _task_event(self, task: Task) -> RemoteEvent:
        day = task.due_date.astimezone(self._tz).date()
        start = datetime.combine(day, time(0, 0), tzinfo=self._tz)
        return RemoteEvent(
            uid=task_uid(task.id),
            summary=f"📋 {task.title}",
            description=f"Task #{task.id} from FamilyBot",
            start=start,
            end=start + timedelta(days=1),
            all_day=True,
        )

    def _schedule_event(self, event: WeeklyEvent, now: datetime) -> RemoteEvent:
        start_time = parse_hhmm(event.time_start)
        days = sorted(event.floating_days) if event.is_floating else [event.day_of_week]
        if not days or not all(0 <= d <= 6 for d in days):
            raise ValueError(f"invalid weekdays {days!r}")

        local_now = now.astimezone(self._tz)
        today = local_now.date()
        candidates = []
        for d in days:
            day = today + timedelta(days=(d - today.weekday()) % 7)
            candidate = datetime.combine(day, start_time, tzinfo=self._tz)
            if candidate <= local_now:
                candidate += timedelta(days=7)
            candidates.append(candidate)
        start = min(candidates)

        if event.time_end:
            end = datetime.combine(start.date(), parse_hhmm(event.time_end), tzinfo=self._tz)
            if end <= start:
                end += timedelta(days=1)
        else:
            end = start + timedelta(hours=1)

        description = "Weekly schedule from FamilyBot"
        if event.is_floating:
            description += " (floating day)"
        return RemoteEvent(
            uid=schedule_uid(event.id),
            summary=event.title,
            description=description,
            start=start,
            end=end,
            rrule="FREQ=WEEKLY;BYDAY=" + ",".join(_RRULE_DAYS[d] for d in days),
        )

    async def sync_to_remote(
        self, user_id: int | None = None, now: datetime | None = None
    ) -> PushResult:
        """Upsert dated tasks and weekly slots on the remote calendar.

        With ``user_id`` only that user's own, assigned and shared entries are
        pushed; without it every entry is pushed once.

        Raises:
            CalendarError: the remote window could not be fetched at all.
        """
        now = now or datetime.now(self._tz)
        result = PushResult()

        outgoing: list[RemoteEvent] = []
        for task in self._store.list_open_tasks(user_id):
            if task.due_date is not None:
                outgoing.append(self._task_event(task))
        for slot in self._store.list_weekly_events(user_id):
            try:
                outgoing.append(self._schedule_event(slot, now))
            except ValueError as exc:
                logger.warning("Weekly event #%d cannot be pushed: %s", slot.id, exc)
                result.errors.append(f"build {schedule_uid(slot.id)}: {exc}")

        if not outgoing:
            return result

        start, end = self._window(now)
        start = min([start] + [e.start for e in outgoing])
        end = max([end] + [e.start + timedelta(days=1) for e in outgoing])
        existing = {e.uid for e in (await self._fetch(start, end)).events}

        for event in outgoing:
            try:
                if event.uid in existing:
                    await self._transport.update_event(self._path, event)
                    result.updated += 1
                else:
                    await self._transport.create_event(self._path, event)
                    existing.add(event.uid)
                    result.created += 1
            except Exception as exc:
                logger.warning("Calendar push: %s failed: %s", event.uid, exc)
                result.errors.append(f"push {event.uid}: {exc}")

        scope = f"user {user_id}" if user_id is not None else "all users"
        logger.info(
            "Calendar pushed for %s: %d created, %d updated, %d errors",
            scope, result.created, result.updated, len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    async def _remove(self, uid: str) -> None:
        try:
            await self._transport.delete_event(self._path, uid)
            logger.info("Remote event %s removed", uid)
        except CalendarNotFoundError:
            logger.debug("Remote event %s already absent", uid)

    async def remove_task(self, task_id: int) -> None:
        await self._remove(task_uid(task_id))

    async def remove_weekly_event(self, event_id: int) -> None:
        await self._remove(schedule_uid(event_id))

"""Tests for familybot.core.calendar_sync — CalendarReconciler against an in-memory calendar."""

import sqlite3
from datetime import datetime, timedelta
from unittest.mock import patch
from zoneinfo import ZoneInfo

import pytest

from familybot.core.calendar_sync import (
    CalendarReconciler,
    is_synthetic_uid,
    schedule_uid,
    task_uid,
)
from familybot.data.models import CalendarEvent
from familybot.ports.calendar_port import (
    CalendarError,
    CalendarNotFoundError,
    RemoteEvent,
    RemoteListing,
)

TZ = ZoneInfo("Europe/Moscow")
# Monday; the pull window is 2024-06-03 00:00 .. 2024-09-03 00:00 local
NOW = datetime(2024, 6, 3, 12, 0, tzinfo=TZ)


def _dt(*args) -> datetime:
    return datetime(*args, tzinfo=TZ)


class FakeCalendar:
    """In-memory RemoteCalendarPort keyed by UID."""

    def __init__(self, events=()):
        self.events = {e.uid: e for e in events}
        self.created: list[str] = []
        self.updated: list[str] = []
        self.list_error: Exception | None = None
        self.fail_uids: set[str] = set()
        self.unparseable: list[tuple[str, str]] = []
        self.list_calls = 0

    async def list_events(self, path, start, end):
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        return RemoteListing(
            events=[e for e in self.events.values() if start <= e.start < end],
            failures=list(self.unparseable),
        )

    async def create_event(self, path, event):
        if event.uid in self.fail_uids:
            raise CalendarError(f"refused {event.uid}")
        self.events[event.uid] = event
        self.created.append(event.uid)
        return event

    async def update_event(self, path, event):
        if event.uid in self.fail_uids:
            raise CalendarError(f"refused {event.uid}")
        self.events[event.uid] = event
        self.updated.append(event.uid)
        return event

    async def delete_event(self, path, uid):
        if uid not in self.events:
            raise CalendarNotFoundError(uid)
        del self.events[uid]


@pytest.fixture
def remote():
    return FakeCalendar()


@pytest.fixture
def reconciler(store, owner, remote):
    return CalendarReconciler(
        store=store,
        transport=remote,
        calendar_path="/calendars/family/",
        owner_user_id=owner.id,
        tz=TZ,
        window_months=3,
    )


def _mirror(store, owner, uid, start, synced=True, title="Event"):
    return store.create_calendar_event(CalendarEvent(
        id=0,
        user_id=owner.id,
        remote_uid=uid,
        title=title,
        start_time=start,
        last_synced_at=NOW - timedelta(hours=1) if synced else None,
    ))


class TestUids:
    def test_synthetic(self):
        assert is_synthetic_uid(task_uid(5))
        assert is_synthetic_uid(schedule_uid(7))
        assert not is_synthetic_uid("abc")
        assert not is_synthetic_uid("task-5@example.com")


# ---------------------------------------------------------------------------
# Pull
# ---------------------------------------------------------------------------


class TestSyncFromRemote:
    @pytest.mark.asyncio
    async def test_add_keep_and_delete(self, store, owner, remote, reconciler):
        _mirror(store, owner, "abc", _dt(2024, 6, 10, 10, 0), title="Dentist")
        _mirror(store, owner, "xyz", _dt(2024, 6, 12, 10, 0), title="Cancelled")
        remote.events = {
            "abc": RemoteEvent(uid="abc", summary="Dentist", start=_dt(2024, 6, 10, 10, 0)),
            "def": RemoteEvent(uid="def", summary="School play", start=_dt(2024, 6, 14, 17, 0)),
        }

        result = await reconciler.sync_from_remote(NOW)

        assert (result.added, result.updated, result.deleted) == (1, 0, 1)
        assert result.errors == []
        uids = {e.remote_uid for e in store.list_calendar_events()}
        assert uids == {"abc", "def"}
        added = next(e for e in store.list_calendar_events() if e.remote_uid == "def")
        assert added.user_id == owner.id
        assert added.is_shared is False
        assert added.last_synced_at == NOW

    @pytest.mark.asyncio
    async def test_changed_event_is_updated(self, store, owner, remote, reconciler):
        _mirror(store, owner, "abc", _dt(2024, 6, 10, 10, 0), title="Dentist")
        remote.events = {
            "abc": RemoteEvent(
                uid="abc", summary="Dentist", start=_dt(2024, 6, 10, 11, 0),
                end=_dt(2024, 6, 10, 12, 0), location="Clinic",
            ),
        }

        result = await reconciler.sync_from_remote(NOW)

        assert result.updated == 1
        [event] = store.list_calendar_events()
        assert event.start_time == _dt(2024, 6, 10, 11, 0)
        assert event.end_time == _dt(2024, 6, 10, 12, 0)
        assert event.location == "Clinic"

    @pytest.mark.asyncio
    async def test_second_pull_is_a_no_op(self, store, remote, reconciler):
        remote.events = {
            "def": RemoteEvent(uid="def", summary="School play", start=_dt(2024, 6, 14, 17, 0)),
        }
        await reconciler.sync_from_remote(NOW)
        result = await reconciler.sync_from_remote(NOW)
        assert (result.added, result.updated, result.deleted) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_never_synced_rows_survive(self, store, owner, reconciler):
        _mirror(store, owner, "local-only", _dt(2024, 6, 10, 10, 0), synced=False)
        _mirror(store, owner, None, _dt(2024, 6, 11, 10, 0), synced=False)

        result = await reconciler.sync_from_remote(NOW)

        assert result.deleted == 0
        assert len(store.list_calendar_events()) == 2

    @pytest.mark.asyncio
    async def test_synced_rows_before_the_window_are_deleted(self, store, owner, remote, reconciler):
        # A recurring series whose DTSTART precedes the window; deleted on the server.
        _mirror(store, owner, "gym", _dt(2024, 1, 1, 7, 0), title="Gym")
        _mirror(store, owner, "past", _dt(2024, 5, 1, 10, 0))
        remote.events = {
            "abc": RemoteEvent(uid="abc", summary="Dentist", start=_dt(2024, 6, 10, 10, 0)),
        }

        result = await reconciler.sync_from_remote(NOW)

        assert result.deleted == 2
        assert {e.remote_uid for e in store.list_calendar_events()} == {"abc"}

    @pytest.mark.asyncio
    async def test_unparseable_objects_are_reported(self, store, remote, reconciler):
        remote.events = {
            "def": RemoteEvent(uid="def", summary="School play", start=_dt(2024, 6, 14, 17, 0)),
        }
        remote.unparseable = [("/calendars/family/broken.ics", "VEVENT without UID or DTSTART")]

        result = await reconciler.sync_from_remote(NOW)

        assert result.added == 1
        assert result.errors == [
            "parse /calendars/family/broken.ics: VEVENT without UID or DTSTART"
        ]

    @pytest.mark.asyncio
    async def test_synthetic_uids_are_not_mirrored(self, store, remote, reconciler):
        remote.events = {
            task_uid(1): RemoteEvent(uid=task_uid(1), summary="📋 Task", start=_dt(2024, 6, 5), all_day=True),
            schedule_uid(2): RemoteEvent(uid=schedule_uid(2), summary="Piano", start=_dt(2024, 6, 3, 18, 0)),
        }

        result = await reconciler.sync_from_remote(NOW)

        assert result.skipped == 2
        assert result.added == 0
        assert store.list_calendar_events() == []

    @pytest.mark.asyncio
    async def test_item_errors_are_collected(self, store, owner, remote, reconciler):
        _mirror(store, owner, "abc", _dt(2024, 6, 10, 10, 0), title="Old title")
        remote.events = {
            "abc": RemoteEvent(uid="abc", summary="New title", start=_dt(2024, 6, 10, 10, 0)),
            "def": RemoteEvent(uid="def", summary="School play", start=_dt(2024, 6, 14, 17, 0)),
        }

        with patch.object(
            store, "create_calendar_event", side_effect=sqlite3.OperationalError("database is locked")
        ):
            result = await reconciler.sync_from_remote(NOW)

        assert result.updated == 1
        assert result.added == 0
        assert result.errors == ["create def: database is locked"]

    @pytest.mark.asyncio
    async def test_fetch_failure_raises(self, store, owner, remote, reconciler):
        _mirror(store, owner, "abc", _dt(2024, 6, 10, 10, 0))
        remote.list_error = ConnectionError("unreachable")

        with pytest.raises(CalendarError, match="unreachable"):
            await reconciler.sync_from_remote(NOW)
        assert len(store.list_calendar_events()) == 1


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------


class TestSyncToRemote:
    @pytest.mark.asyncio
    async def test_push_is_idempotent(self, store, owner, remote, reconciler):
        task = store.create_task(owner.id, "Dentist", due_date=_dt(2024, 6, 5, 15, 0))
        slot = store.add_weekly_event(owner.id, 0, "18:00", "Piano", time_end="19:00")

        first = await reconciler.sync_to_remote(owner.id, NOW)
        assert (first.created, first.updated) == (2, 0)

        second = await reconciler.sync_to_remote(owner.id, NOW)
        assert (second.created, second.updated) == (0, 2)
        assert set(remote.events) == {task_uid(task.id), schedule_uid(slot.id)}

    @pytest.mark.asyncio
    async def test_task_becomes_all_day_event(self, store, owner, remote, reconciler):
        task = store.create_task(owner.id, "Dentist", due_date=_dt(2024, 6, 5, 15, 0))
        store.create_task(owner.id, "Someday")

        await reconciler.sync_to_remote(owner.id, NOW)

        event = remote.events[task_uid(task.id)]
        assert event.all_day is True
        assert event.start == _dt(2024, 6, 5)
        assert event.end == _dt(2024, 6, 6)
        assert event.summary == "📋 Dentist"
        assert len(remote.events) == 1

    @pytest.mark.asyncio
    async def test_weekly_slot_recurs(self, store, owner, remote, reconciler):
        slot = store.add_weekly_event(owner.id, 0, "18:00", "Piano", time_end="19:00")
        swim = store.add_weekly_event(owner.id, 5, "10:00", "Swimming", floating_days=[6, 5])

        await reconciler.sync_to_remote(owner.id, NOW)

        piano = remote.events[schedule_uid(slot.id)]
        assert piano.rrule == "FREQ=WEEKLY;BYDAY=MO"
        assert piano.start == _dt(2024, 6, 3, 18, 0)
        assert piano.end == _dt(2024, 6, 3, 19, 0)

        floating = remote.events[schedule_uid(swim.id)]
        assert floating.rrule == "FREQ=WEEKLY;BYDAY=SA,SU"
        assert floating.start == _dt(2024, 6, 8, 10, 0)
        assert floating.end == _dt(2024, 6, 8, 11, 0)

    @pytest.mark.asyncio
    async def test_slot_already_passed_today_starts_next_week(self, store, owner, remote, reconciler):
        slot = store.add_weekly_event(owner.id, 0, "08:00", "Run")
        await reconciler.sync_to_remote(owner.id, NOW)
        assert remote.events[schedule_uid(slot.id)].start == _dt(2024, 6, 10, 8, 0)

    @pytest.mark.asyncio
    async def test_slot_ending_after_midnight(self, store, owner, remote, reconciler):
        slot = store.add_weekly_event(owner.id, 4, "23:00", "Night shift", time_end="01:00")
        await reconciler.sync_to_remote(owner.id, NOW)
        event = remote.events[schedule_uid(slot.id)]
        assert event.end - event.start == timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_malformed_slot_is_reported(self, store, owner, remote, reconciler):
        bad = store.add_weekly_event(owner.id, 0, "25:00", "Broken")
        good = store.add_weekly_event(owner.id, 1, "18:00", "Piano")

        result = await reconciler.sync_to_remote(owner.id, NOW)

        assert result.created == 1
        assert schedule_uid(good.id) in remote.events
        assert len(result.errors) == 1
        assert result.errors[0].startswith(f"build {schedule_uid(bad.id)}")

    @pytest.mark.asyncio
    async def test_item_failure_does_not_stop_push(self, store, owner, remote, reconciler):
        first = store.create_task(owner.id, "One", due_date=_dt(2024, 6, 5, 9, 0))
        second = store.create_task(owner.id, "Two", due_date=_dt(2024, 6, 6, 9, 0))
        remote.fail_uids = {task_uid(first.id)}

        result = await reconciler.sync_to_remote(owner.id, NOW)

        assert result.created == 1
        assert task_uid(second.id) in remote.events
        assert result.errors == [f"push {task_uid(first.id)}: refused {task_uid(first.id)}"]

    @pytest.mark.asyncio
    async def test_nothing_to_push_skips_fetch(self, store, owner, remote, reconciler):
        remote.list_error = ConnectionError("should not be called")
        result = await reconciler.sync_to_remote(owner.id, NOW)
        assert (result.created, result.updated, result.errors) == (0, 0, [])
        assert remote.list_calls == 0

    @pytest.mark.asyncio
    async def test_push_for_all_users_writes_each_entry_once(
        self, store, owner, partner, remote, reconciler
    ):
        shared = store.add_weekly_event(owner.id, 2, "19:00", "Family dinner", is_shared=True)
        task = store.create_task(
            owner.id, "Pick up kids", due_date=_dt(2024, 6, 4, 16, 0), assigned_to=partner.id
        )

        result = await reconciler.sync_to_remote(now=NOW)

        assert (result.created, result.updated) == (2, 0)
        assert sorted(remote.created) == sorted([schedule_uid(shared.id), task_uid(task.id)])
        assert remote.updated == []


# ---------------------------------------------------------------------------
# Removal
# ---------------------------------------------------------------------------


class TestRemoval:
    @pytest.mark.asyncio
    async def test_remove_task(self, store, owner, remote, reconciler):
        task = store.create_task(owner.id, "Dentist", due_date=_dt(2024, 6, 5, 15, 0))
        await reconciler.sync_to_remote(owner.id, NOW)
        await reconciler.remove_task(task.id)
        assert task_uid(task.id) not in remote.events

    @pytest.mark.asyncio
    async def test_missing_remote_event_is_success(self, reconciler):
        await reconciler.remove_task(999)
        await reconciler.remove_weekly_event(999)

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, remote, reconciler):
        async def broken(path, uid):
            raise CalendarError("server error")

        remote.delete_event = broken
        with pytest.raises(CalendarError, match="server error"):
            await reconciler.remove_task(1)

"""
FamilyBot — Rule Store.

SQLite-backed persistence for tasks, reminders, the weekly schedule and the
calendar mirror. Implements RuleStorePort for the scheduling core.

Every operation opens its own connection and commits a single statement (or
a single short transaction), so per-row updates are atomic and the
dispatcher can share the database with the user-facing request path.
Timestamps are stored as UTC ISO-8601 strings, which keeps lexical and
chronological order identical.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

from familybot.data.models import (
    CalendarEvent,
    Priority,
    Reminder,
    ReminderType,
    RepeatType,
    Task,
    TaskReminder,
    User,
    WeeklyEvent,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    telegram_id INTEGER NOT NULL UNIQUE,
    name        TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id          INTEGER NOT NULL,
    assigned_to      INTEGER,
    title            TEXT    NOT NULL,
    priority         TEXT    NOT NULL DEFAULT 'week',
    is_shared        INTEGER NOT NULL DEFAULT 0,
    due_date         TEXT,
    done_at          TEXT,
    created_at       TEXT    NOT NULL,
    reminder_count   INTEGER NOT NULL DEFAULT 0,
    last_reminded_at TEXT,
    snooze_until     TEXT,
    repeat_type      TEXT    NOT NULL DEFAULT '',
    repeat_time      TEXT    NOT NULL DEFAULT '',
    repeat_week_num  INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS task_reminders (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id       INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    remind_before INTEGER NOT NULL,
    sent_at       TEXT
);

CREATE TABLE IF NOT EXISTS reminders (
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id   INTEGER NOT NULL,
    title     TEXT    NOT NULL,
    type      TEXT    NOT NULL,
    params    TEXT    NOT NULL DEFAULT '{}',
    is_active INTEGER NOT NULL DEFAULT 1,
    last_sent TEXT,
    next_run  TEXT
);

CREATE TABLE IF NOT EXISTS weekly_events (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         INTEGER NOT NULL,
    day_of_week     INTEGER NOT NULL,
    time_start      TEXT    NOT NULL,
    time_end        TEXT    NOT NULL DEFAULT '',
    title           TEXT    NOT NULL,
    reminder_before INTEGER NOT NULL DEFAULT 0,
    is_floating     INTEGER NOT NULL DEFAULT 0,
    floating_days   TEXT    NOT NULL DEFAULT '',
    confirmed_day   INTEGER,
    confirmed_week  INTEGER NOT NULL DEFAULT 0,
    is_shared       INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS calendar_events (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id        INTEGER NOT NULL,
    remote_uid     TEXT UNIQUE,
    title          TEXT    NOT NULL,
    description    TEXT    NOT NULL DEFAULT '',
    location       TEXT    NOT NULL DEFAULT '',
    start_time     TEXT    NOT NULL,
    end_time       TEXT,
    all_day        INTEGER NOT NULL DEFAULT 0,
    is_shared      INTEGER NOT NULL DEFAULT 0,
    last_synced_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_repeat_time ON tasks(repeat_time);
CREATE INDEX IF NOT EXISTS idx_reminders_next_run ON reminders(next_run);
CREATE INDEX IF NOT EXISTS idx_calendar_events_start ON calendar_events(start_time);
"""

# Columns added after the first release; applied to existing databases.
_MIGRATIONS = {
    "tasks": {
        "repeat_fired_at": "ALTER TABLE tasks ADD COLUMN repeat_fired_at TEXT",
        "repeat_day": "ALTER TABLE tasks ADD COLUMN repeat_day INTEGER NOT NULL DEFAULT 0",
    },
    "weekly_events": {
        "confirmed_year": "ALTER TABLE weekly_events ADD COLUMN confirmed_year INTEGER NOT NULL DEFAULT 0",
        "reminder_sent_at": "ALTER TABLE weekly_events ADD COLUMN reminder_sent_at TEXT",
        "is_trackable": "ALTER TABLE weekly_events ADD COLUMN is_trackable INTEGER NOT NULL DEFAULT 0",
    },
}


def _to_db(dt: datetime | None) -> str | None:
    """Serialize an instant as a UTC ISO string. Naive values are taken as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds")


def _from_db(raw: str | None) -> datetime | None:
    if not raw:
        return None
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _parse_days(raw: str) -> list[int]:
    days: list[int] = []
    for part in (raw or "").split(","):
        part = part.strip()
        if part.isdigit():
            days.append(int(part))
    return days


class RuleStoreDB:
    """SQLite-backed storage for everything the scheduler evaluates."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from familybot.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self) -> None:
        """Create tables if they don't exist, and migrate schema."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(_SCHEMA)
            for table, columns in _MIGRATIONS.items():
                existing_cols = {
                    row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()
                }
                for column, ddl in columns.items():
                    if column not in existing_cols:
                        conn.execute(ddl)
        logger.debug("Rule store initialized at %s", self._db_path)

    # ------------------------------------------------------------------
    # Row mappers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(id=row["id"], telegram_id=row["telegram_id"], name=row["name"])

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            user_id=row["user_id"],
            assigned_to=row["assigned_to"],
            title=row["title"],
            priority=Priority(row["priority"]),
            is_shared=bool(row["is_shared"]),
            due_date=_from_db(row["due_date"]),
            done_at=_from_db(row["done_at"]),
            created_at=_from_db(row["created_at"]),
            reminder_count=row["reminder_count"],
            last_reminded_at=_from_db(row["last_reminded_at"]),
            snooze_until=_from_db(row["snooze_until"]),
            repeat_type=RepeatType(row["repeat_type"]),
            repeat_time=row["repeat_time"],
            repeat_week_num=row["repeat_week_num"],
            repeat_day=row["repeat_day"],
            repeat_fired_at=_from_db(row["repeat_fired_at"]),
        )

    @staticmethod
    def _row_to_reminder(row: sqlite3.Row) -> Reminder:
        return Reminder(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            type=ReminderType(row["type"]),
            params=row["params"],
            is_active=bool(row["is_active"]),
            last_sent=_from_db(row["last_sent"]),
            next_run=_from_db(row["next_run"]),
        )

    @staticmethod
    def _row_to_weekly_event(row: sqlite3.Row) -> WeeklyEvent:
        return WeeklyEvent(
            id=row["id"],
            user_id=row["user_id"],
            day_of_week=row["day_of_week"],
            time_start=row["time_start"],
            time_end=row["time_end"],
            title=row["title"],
            reminder_before=row["reminder_before"],
            is_floating=bool(row["is_floating"]),
            floating_days=_parse_days(row["floating_days"]),
            confirmed_day=row["confirmed_day"],
            confirmed_year=row["confirmed_year"],
            confirmed_week=row["confirmed_week"],
            is_shared=bool(row["is_shared"]),
            is_trackable=bool(row["is_trackable"]),
            reminder_sent_at=_from_db(row["reminder_sent_at"]),
        )

    @staticmethod
    def _row_to_calendar_event(row: sqlite3.Row) -> CalendarEvent:
        return CalendarEvent(
            id=row["id"],
            user_id=row["user_id"],
            remote_uid=row["remote_uid"],
            title=row["title"],
            description=row["description"],
            location=row["location"],
            start_time=_from_db(row["start_time"]),
            end_time=_from_db(row["end_time"]),
            all_day=bool(row["all_day"]),
            is_shared=bool(row["is_shared"]),
            last_synced_at=_from_db(row["last_synced_at"]),
        )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def add_user(self, telegram_id: int, name: str) -> User:
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO users (telegram_id, name) VALUES (?, ?)",
                (telegram_id, name),
            )
            user_id = cursor.lastrowid
        logger.info("User registered: #%d %d '%s'", user_id, telegram_id, name)
        return User(id=user_id, telegram_id=telegram_id, name=name)

    def get_user(self, user_id: int) -> User | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_telegram_id(self, telegram_id: int) -> User | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE telegram_id = ?", (telegram_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self) -> list[User]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY id").fetchall()
        return [self._row_to_user(r) for r in rows]

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    def add_reminder(
        self,
        user_id: int,
        title: str,
        reminder_type: ReminderType,
        params: str,
        next_run: datetime | None,
    ) -> Reminder:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO reminders (user_id, title, type, params, is_active, next_run)
                VALUES (?, ?, ?, ?, 1, ?)
                """,
                (user_id, title, reminder_type.value, params, _to_db(next_run)),
            )
            reminder_id = cursor.lastrowid
        logger.info("Reminder added: #%d '%s' (%s)", reminder_id, title, reminder_type.value)
        return Reminder(
            id=reminder_id,
            user_id=user_id,
            title=title,
            type=reminder_type,
            params=params,
            next_run=next_run,
        )

    def get_reminder(self, reminder_id: int) -> Reminder | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM reminders WHERE id = ?", (reminder_id,)
            ).fetchone()
        return self._row_to_reminder(row) if row else None

    def list_due_reminders(self, now: datetime) -> list[Reminder]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM reminders
                WHERE is_active = 1 AND next_run IS NOT NULL AND next_run <= ?
                ORDER BY next_run
                """,
                (_to_db(now),),
            ).fetchall()
        return [self._row_to_reminder(r) for r in rows]

    def mark_reminder_sent(
        self, reminder_id: int, sent_at: datetime, next_run: datetime | None
    ) -> None:
        """Record a firing. A None next_run deactivates the reminder."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE reminders
                SET last_sent = ?, next_run = ?, is_active = ?
                WHERE id = ?
                """,
                (_to_db(sent_at), _to_db(next_run), int(next_run is not None), reminder_id),
            )

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

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
    ) -> Task:
        created_at = datetime.now(timezone.utc).replace(microsecond=0)
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO tasks
                    (user_id, assigned_to, title, priority, is_shared, due_date,
                     created_at, repeat_type, repeat_time, repeat_week_num, repeat_day)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id, assigned_to, title, priority.value, int(is_shared),
                    _to_db(due_date), _to_db(created_at), repeat_type.value,
                    repeat_time, repeat_week_num, repeat_day,
                ),
            )
            task_id = cursor.lastrowid
        logger.info("Task added: #%d '%s' (%s)", task_id, title, priority.value)
        return Task(
            id=task_id,
            user_id=user_id,
            title=title,
            priority=priority,
            assigned_to=assigned_to,
            is_shared=is_shared,
            due_date=_from_db(_to_db(due_date)),
            created_at=created_at,
            repeat_type=repeat_type,
            repeat_time=repeat_time,
            repeat_week_num=repeat_week_num,
            repeat_day=repeat_day,
        )

    def get_task(self, task_id: int) -> Task | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    def list_open_tasks(self, user_id: int | None = None) -> list[Task]:
        query = "SELECT * FROM tasks WHERE done_at IS NULL"
        params: list = []
        if user_id is not None:
            query += " AND (user_id = ? OR assigned_to = ?)"
            params.extend([user_id, user_id])
        query += " ORDER BY due_date IS NULL, due_date, id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(r) for r in rows]

    def list_tasks_for_day(
        self, user_id: int, start: datetime, end: datetime
    ) -> list[Task]:
        """Open tasks of a user due in [start, end)."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM tasks
                WHERE (user_id = ? OR assigned_to = ?)
                  AND done_at IS NULL
                  AND due_date >= ? AND due_date < ?
                ORDER BY due_date
                """,
                (user_id, user_id, _to_db(start), _to_db(end)),
            ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def open_task_exists(
        self, user_id: int, title: str, start: datetime, end: datetime
    ) -> bool:
        """Whether the user owns an open task with this title due in [start, end)."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM tasks
                WHERE user_id = ? AND title = ? AND done_at IS NULL
                  AND due_date >= ? AND due_date < ?
                LIMIT 1
                """,
                (user_id, title, _to_db(start), _to_db(end)),
            ).fetchone()
        return row is not None

    def list_urgent_tasks(self, now: datetime) -> list[Task]:
        """Urgent, not done, and not snoozed past ``now``."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM tasks
                WHERE priority = 'urgent'
                  AND done_at IS NULL
                  AND (snooze_until IS NULL OR snooze_until <= ?)
                ORDER BY id
                """,
                (_to_db(now),),
            ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def list_repeating_tasks_by_time(self, hhmm: str, now: datetime) -> list[Task]:
        """Unfired, open, unsnoozed repeating tasks anchored at ``hhmm``."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM tasks
                WHERE repeat_time = ?
                  AND repeat_type != ''
                  AND done_at IS NULL
                  AND repeat_fired_at IS NULL
                  AND (snooze_until IS NULL OR snooze_until <= ?)
                ORDER BY id
                """,
                (hhmm, _to_db(now)),
            ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def mark_task_reminded(self, task_id: int, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE tasks
                SET reminder_count = reminder_count + 1, last_reminded_at = ?
                WHERE id = ?
                """,
                (_to_db(at), task_id),
            )

    def mark_repeat_fired(self, task_id: int, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE tasks SET repeat_fired_at = ? WHERE id = ?",
                (_to_db(at), task_id),
            )

    def mark_task_done(self, task_id: int, at: datetime) -> None:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE tasks SET done_at = ? WHERE id = ? AND done_at IS NULL",
                (_to_db(at), task_id),
            )
        if cursor.rowcount:
            logger.info("Task #%d marked done", task_id)

    def snooze_task(self, task_id: int, until: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE tasks SET snooze_until = ? WHERE id = ?",
                (_to_db(until), task_id),
            )
        logger.info("Task #%d snoozed until %s", task_id, _to_db(until))

    def add_task_reminder(self, task_id: int, remind_before: int) -> TaskReminder:
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO task_reminders (task_id, remind_before) VALUES (?, ?)",
                (task_id, remind_before),
            )
            reminder_id = cursor.lastrowid
        return TaskReminder(id=reminder_id, task_id=task_id, remind_before=remind_before)

    def list_pending_task_reminders(
        self, now: datetime
    ) -> list[tuple[TaskReminder, Task]]:
        """Unsent reminders whose ``due_date - remind_before`` has passed."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT tr.id AS tr_id, tr.remind_before, tr.sent_at AS tr_sent_at, t.*
                FROM task_reminders tr
                JOIN tasks t ON tr.task_id = t.id
                WHERE tr.sent_at IS NULL
                  AND t.due_date IS NOT NULL
                  AND t.done_at IS NULL
                ORDER BY t.due_date
                """
            ).fetchall()

        pending: list[tuple[TaskReminder, Task]] = []
        for row in rows:
            task = self._row_to_task(row)
            if task.due_date - timedelta(minutes=row["remind_before"]) > now:
                continue
            reminder = TaskReminder(
                id=row["tr_id"],
                task_id=task.id,
                remind_before=row["remind_before"],
                sent_at=_from_db(row["tr_sent_at"]),
            )
            pending.append((reminder, task))
        return pending

    def mark_task_reminder_sent(self, reminder_id: int, sent_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE task_reminders SET sent_at = ? WHERE id = ?",
                (_to_db(sent_at), reminder_id),
            )

    # ------------------------------------------------------------------
    # Weekly schedule
    # ------------------------------------------------------------------

    def add_weekly_event(
        self,
        user_id: int,
        day_of_week: int,
        time_start: str,
        title: str,
        time_end: str = "",
        reminder_before: int = 0,
        floating_days: list[int] | None = None,
        is_shared: bool = False,
        is_trackable: bool = False,
    ) -> WeeklyEvent:
        """Insert a weekly slot. Passing floating_days makes it floating."""
        is_floating = bool(floating_days)
        days_raw = ",".join(str(d) for d in floating_days or [])
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO weekly_events
                    (user_id, day_of_week, time_start, time_end, title,
                     reminder_before, is_floating, floating_days, is_shared, is_trackable)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id, day_of_week, time_start, time_end, title,
                    reminder_before, int(is_floating), days_raw, int(is_shared),
                    int(is_trackable),
                ),
            )
            event_id = cursor.lastrowid
        logger.info("Weekly event added: #%d '%s'", event_id, title)
        return WeeklyEvent(
            id=event_id,
            user_id=user_id,
            day_of_week=day_of_week,
            time_start=time_start,
            time_end=time_end,
            title=title,
            reminder_before=reminder_before,
            is_floating=is_floating,
            floating_days=list(floating_days or []),
            is_shared=is_shared,
            is_trackable=is_trackable,
        )

    def get_weekly_event(self, event_id: int) -> WeeklyEvent | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM weekly_events WHERE id = ?", (event_id,)
            ).fetchone()
        return self._row_to_weekly_event(row) if row else None

    def list_weekly_events(self, user_id: int | None = None) -> list[WeeklyEvent]:
        query = "SELECT * FROM weekly_events"
        params: list = []
        if user_id is not None:
            query += " WHERE user_id = ? OR is_shared = 1"
            params.append(user_id)
        query += " ORDER BY day_of_week, time_start"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_weekly_event(r) for r in rows]

    def list_events_with_reminders(self) -> list[WeeklyEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM weekly_events
                WHERE reminder_before > 0
                ORDER BY day_of_week, time_start
                """
            ).fetchall()
        return [self._row_to_weekly_event(r) for r in rows]

    def list_floating_events(self, user_id: int | None = None) -> list[WeeklyEvent]:
        query = "SELECT * FROM weekly_events WHERE is_floating = 1"
        params: list = []
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        query += " ORDER BY id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_weekly_event(r) for r in rows]

    def list_trackable_events(self, user_id: int) -> list[WeeklyEvent]:
        """The user's own trackable slots; shared ones are not included."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM weekly_events
                WHERE user_id = ? AND is_trackable = 1
                ORDER BY time_start, id
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_weekly_event(r) for r in rows]

    def mark_event_reminder_sent(self, event_id: int, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE weekly_events SET reminder_sent_at = ? WHERE id = ?",
                (_to_db(at), event_id),
            )

    def set_confirmed_day(
        self, event_id: int, day: int, iso_year: int, iso_week: int
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE weekly_events
                SET confirmed_day = ?, confirmed_year = ?, confirmed_week = ?
                WHERE id = ?
                """,
                (day, iso_year, iso_week, event_id),
            )
        logger.info(
            "Weekly event #%d confirmed for day %d of %d-W%02d",
            event_id, day, iso_year, iso_week,
        )

    def clear_confirmed_day(self, event_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE weekly_events
                SET confirmed_day = NULL, confirmed_year = 0, confirmed_week = 0
                WHERE id = ?
                """,
                (event_id,),
            )

    # ------------------------------------------------------------------
    # Calendar mirror
    # ------------------------------------------------------------------

    def list_calendar_events(self) -> list[CalendarEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM calendar_events ORDER BY start_time"
            ).fetchall()
        return [self._row_to_calendar_event(r) for r in rows]

    def list_calendar_events_between(
        self, start: datetime, end: datetime
    ) -> list[CalendarEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM calendar_events
                WHERE start_time >= ? AND start_time < ?
                ORDER BY start_time
                """,
                (_to_db(start), _to_db(end)),
            ).fetchall()
        return [self._row_to_calendar_event(r) for r in rows]

    def create_calendar_event(self, event: CalendarEvent) -> CalendarEvent:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO calendar_events
                    (user_id, remote_uid, title, description, location,
                     start_time, end_time, all_day, is_shared, last_synced_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.user_id, event.remote_uid, event.title, event.description,
                    event.location, _to_db(event.start_time), _to_db(event.end_time),
                    int(event.all_day), int(event.is_shared), _to_db(event.last_synced_at),
                ),
            )
            event.id = cursor.lastrowid
        return event

    def update_calendar_event(self, event: CalendarEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE calendar_events
                SET remote_uid = ?, title = ?, description = ?, location = ?,
                    start_time = ?, end_time = ?, all_day = ?, is_shared = ?,
                    last_synced_at = ?
                WHERE id = ?
                """,
                (
                    event.remote_uid, event.title, event.description, event.location,
                    _to_db(event.start_time), _to_db(event.end_time), int(event.all_day),
                    int(event.is_shared), _to_db(event.last_synced_at), event.id,
                ),
            )

    def delete_calendar_event(self, event_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM calendar_events WHERE id = ?", (event_id,)
            )
        return cursor.rowcount > 0

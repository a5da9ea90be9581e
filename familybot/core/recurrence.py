"""Recurrence calculator — pure occurrence math.

Maps a repeating task or reminder onto an Obligation and computes when it
is next due. Every function takes the reference instant explicitly; nothing
here reads the clock or touches storage.

Weekdays are Monday = 0 ... Sunday = 6.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from enum import Enum

from dateutil.relativedelta import relativedelta

from familybot.data.models import Reminder, ReminderType, RepeatType, Task

logger = logging.getLogger(__name__)

DEFAULT_ANCHOR_TIME = time(9, 0)

# Upper bound for advance_past; a daily rule needs ~3650 steps per decade.
_MAX_ADVANCE_STEPS = 10_000


class RepeatKind(str, Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKDAYS = "weekdays"
    WEEKLY = "weekly"
    MONTHLY_SAME_DAY = "monthly_same_day"
    MONTHLY_NTH_WEEKDAY = "monthly_nth_weekday"
    YEARLY = "yearly"


@dataclass(frozen=True)
class Obligation:
    """Typed recurrence rule. ``kind`` decides which other fields matter.

    weekday:       weekly, monthly_nth_weekday
    week_of_month: monthly_nth_weekday (1-4)
    day_of_month:  monthly_same_day, yearly
    month:         yearly
    """

    kind: RepeatKind
    anchor_time: time | None = None
    weekday: int | None = None
    week_of_month: int | None = None
    day_of_month: int | None = None
    month: int | None = None


NO_RECURRENCE = Obligation(kind=RepeatKind.NONE)


# ---------------------------------------------------------------------------
# Parsing at the boundary
# ---------------------------------------------------------------------------


def parse_hhmm(raw: str) -> time:
    """Parse "HH:MM" into a time. Raises ValueError on malformed input."""
    parts = raw.strip().split(":")
    if len(parts) != 2 or not all(p.strip().isdigit() for p in parts):
        raise ValueError(f"expected HH:MM, got {raw!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"time out of range: {raw!r}")
    return time(hour, minute)


_TASK_KINDS = {
    RepeatType.NONE: RepeatKind.NONE,
    RepeatType.DAILY: RepeatKind.DAILY,
    RepeatType.WEEKDAYS: RepeatKind.WEEKDAYS,
    RepeatType.WEEKLY: RepeatKind.WEEKLY,
    RepeatType.MONTHLY: RepeatKind.MONTHLY_SAME_DAY,
    RepeatType.MONTHLY_NTH: RepeatKind.MONTHLY_NTH_WEEKDAY,
}


def obligation_from_task(task: Task, tz: tzinfo) -> Obligation:
    """Derive the recurrence rule of a repeating task.

    The weekday and day-of-month come from the task's due date in local
    time. Corrupt rows (bad time string) yield NO_RECURRENCE with a warning.
    """
    kind = _TASK_KINDS.get(task.repeat_type, RepeatKind.NONE)
    if kind == RepeatKind.NONE:
        return NO_RECURRENCE

    anchor: time | None = None
    if task.repeat_time:
        try:
            anchor = parse_hhmm(task.repeat_time)
        except ValueError as exc:
            logger.warning("Task #%d has a malformed repeat time: %s", task.id, exc)
            return NO_RECURRENCE

    local_due = task.due_date.astimezone(tz) if task.due_date else None
    weekday = local_due.weekday() if local_due else None
    day_of_month = task.repeat_day or (local_due.day if local_due else None)

    week_of_month = None
    if kind == RepeatKind.MONTHLY_NTH_WEEKDAY:
        week_of_month = task.repeat_week_num

    return Obligation(
        kind=kind,
        anchor_time=anchor,
        weekday=weekday,
        week_of_month=week_of_month,
        day_of_month=day_of_month,
    )


def _int_param(params: dict, key: str) -> int | None:
    value = params.get(key)
    if value in (None, ""):
        return None
    return int(value)


def obligation_from_reminder(reminder: Reminder) -> Obligation:
    """Parse a reminder's JSON params into an Obligation.

    Floating reminders need a confirmation before each firing, so they are
    offered daily at their time. Malformed params yield NO_RECURRENCE.
    """
    try:
        params = json.loads(reminder.params or "{}")
        if not isinstance(params, dict):
            raise ValueError("params must be a JSON object")
        anchor = parse_hhmm(params["time"]) if params.get("time") else None
        weekday = _int_param(params, "day_of_week")
        day_of_month = _int_param(params, "day_of_month")
        week_of_month = _int_param(params, "week_of_month")
        month = _int_param(params, "month")
        day = _int_param(params, "day")
    except (ValueError, TypeError, AttributeError) as exc:
        logger.warning("Reminder #%d has malformed params: %s", reminder.id, exc)
        return NO_RECURRENCE

    if weekday is not None and not 0 <= weekday <= 6:
        logger.warning("Reminder #%d has weekday out of range: %d", reminder.id, weekday)
        return NO_RECURRENCE

    rtype = reminder.type
    if rtype in (ReminderType.DAILY, ReminderType.FLOATING):
        return Obligation(kind=RepeatKind.DAILY, anchor_time=anchor)
    if rtype == ReminderType.WEEKLY:
        return Obligation(kind=RepeatKind.WEEKLY, anchor_time=anchor, weekday=weekday or 0)
    if rtype == ReminderType.MONTHLY:
        return Obligation(
            kind=RepeatKind.MONTHLY_SAME_DAY, anchor_time=anchor, day_of_month=day_of_month or 1
        )
    if rtype == ReminderType.MONTH_WEEK:
        return Obligation(
            kind=RepeatKind.MONTHLY_NTH_WEEKDAY,
            anchor_time=anchor,
            weekday=weekday or 0,
            week_of_month=week_of_month,
        )
    if rtype == ReminderType.YEARLY:
        if not month or not day:
            logger.warning("Yearly reminder #%d lacks month/day", reminder.id)
            return NO_RECURRENCE
        return Obligation(kind=RepeatKind.YEARLY, anchor_time=anchor, month=month, day_of_month=day)

    logger.warning("Reminder #%d has unknown type %r", reminder.id, rtype)
    return NO_RECURRENCE


# ---------------------------------------------------------------------------
# Date helpers
# ---------------------------------------------------------------------------


def nth_weekday_of_month(year: int, month: int, weekday: int, n: int) -> date:
    """Nth occurrence of ``weekday`` in the month. N outside 1-4 counts as 1."""
    if not 1 <= n <= 4:
        n = 1
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset + (n - 1) * 7)


def _at_anchor(day: date, obligation: Obligation, tz: tzinfo) -> datetime:
    return datetime.combine(day, obligation.anchor_time or DEFAULT_ANCHOR_TIME, tzinfo=tz)


def _next_date(obligation: Obligation, current: date) -> date | None:
    """The occurrence date following ``current`` (strictly later)."""
    kind = obligation.kind

    if kind == RepeatKind.DAILY:
        return current + timedelta(days=1)

    if kind == RepeatKind.WEEKDAYS:
        nxt = current + timedelta(days=1)
        while nxt.weekday() >= 5:
            nxt += timedelta(days=1)
        return nxt

    if kind == RepeatKind.WEEKLY:
        if obligation.weekday is None:
            return current + timedelta(days=7)
        return current + timedelta(days=(obligation.weekday - current.weekday() - 1) % 7 + 1)

    if kind == RepeatKind.MONTHLY_SAME_DAY:
        # relativedelta clamps day 31 to the last day of shorter months
        anchor_day = obligation.day_of_month or current.day
        return current + relativedelta(months=1, day=anchor_day)

    if kind == RepeatKind.MONTHLY_NTH_WEEKDAY:
        weekday = obligation.weekday if obligation.weekday is not None else current.weekday()
        target = current.replace(day=1) + relativedelta(months=1)
        return nth_weekday_of_month(
            target.year, target.month, weekday, obligation.week_of_month or 1
        )

    if kind == RepeatKind.YEARLY:
        month = obligation.month or current.month
        anchor_day = obligation.day_of_month or current.day
        # 29 Feb clamps to 28 Feb outside leap years
        return current + relativedelta(years=1, month=month, day=anchor_day)

    return None


def _period_date(obligation: Obligation, today: date) -> date | None:
    """The occurrence date in the period containing ``today`` (may be earlier)."""
    kind = obligation.kind

    if kind == RepeatKind.DAILY:
        return today
    if kind == RepeatKind.WEEKDAYS:
        day = today
        while day.weekday() >= 5:
            day += timedelta(days=1)
        return day
    if kind == RepeatKind.WEEKLY:
        weekday = obligation.weekday if obligation.weekday is not None else today.weekday()
        return today + timedelta(days=(weekday - today.weekday()) % 7)
    if kind == RepeatKind.MONTHLY_SAME_DAY:
        return today + relativedelta(day=obligation.day_of_month or today.day)
    if kind == RepeatKind.MONTHLY_NTH_WEEKDAY:
        weekday = obligation.weekday if obligation.weekday is not None else today.weekday()
        return nth_weekday_of_month(
            today.year, today.month, weekday, obligation.week_of_month or 1
        )
    if kind == RepeatKind.YEARLY:
        return today + relativedelta(
            month=obligation.month or today.month,
            day=obligation.day_of_month or today.day,
        )
    return None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def next_occurrence(obligation: Obligation, from_dt: datetime, tz: tzinfo) -> datetime | None:
    """Next occurrence strictly after ``from_dt``, or None for kind none.

    The date advances from ``from_dt``'s local date by one period and is
    combined with the anchor time (09:00 when unset) in ``tz``.
    Monthly same-day rules clamp to the month's last day but keep their
    anchor day, so 31 Jan -> 29 Feb -> 31 Mar.

    ``from_dt`` is expected to be an occurrence. Monthly and yearly rules
    always move to the next period, so from a date that is not an occurrence
    the current period's occurrence is skipped: a yearly 25 Dec rule from
    1 Jan 2024 gives 25 Dec 2025. Use first_occurrence() for arbitrary
    starting points.
    """
    local = from_dt.astimezone(tz)
    nxt = _next_date(obligation, local.date())
    if nxt is None:
        return None
    return _at_anchor(nxt, obligation, tz)


def first_occurrence(obligation: Obligation, now: datetime, tz: tzinfo) -> datetime | None:
    """First occurrence at or after ``now``. Used to seed a new reminder."""
    day = _period_date(obligation, now.astimezone(tz).date())
    if day is None:
        return None
    candidate = _at_anchor(day, obligation, tz)
    if candidate >= now:
        return candidate
    return advance_past(obligation, candidate, now, tz)


def advance_past(
    obligation: Obligation, scheduled: datetime, now: datetime, tz: tzinfo
) -> datetime | None:
    """Roll ``scheduled`` forward until it is strictly after ``now``.

    Missed occurrences in between are skipped, not replayed.
    """
    nxt = next_occurrence(obligation, scheduled, tz)
    steps = 0
    while nxt is not None and nxt <= now:
        steps += 1
        if steps > _MAX_ADVANCE_STEPS:
            logger.warning("Gave up advancing %s past %s", obligation.kind.value, now)
            return None
        nxt = next_occurrence(obligation, nxt, tz)
    return nxt


def occurs_on(obligation: Obligation, day: date) -> bool:
    """Whether ``day`` is an occurrence date of the rule."""
    if obligation.kind == RepeatKind.NONE:
        return False
    return _period_date(obligation, day) == day

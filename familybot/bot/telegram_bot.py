"""
FamilyBot — Telegram wiring.

Builds the Telegram Application: registers the owner and partner as users,
wires the notifier, rule store, optional calendar reconciler and the dispatch
loop, and handles the inline buttons attached to notifications ("Done",
"Snooze", floating-day picks).

Security-first: only the owner and the partner are served; everyone else is
silently ignored.
"""

from __future__ import annotations

import logging
from datetime import datetime
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
)

from familybot.config import settings
from familybot.core.floating import FloatingConfirmationError, confirm_day, list_unconfirmed
from familybot.core.task_actions import TaskActionError, complete_task, parse_callback, snooze_task
from familybot.data.models import WEEKDAY_NAMES, User
from familybot.ports.calendar_port import CalendarError

if TYPE_CHECKING:
    from familybot.core.calendar_sync import CalendarReconciler
    from familybot.data.db import RuleStoreDB
    from familybot.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


def _allowed_ids() -> set[int]:
    ids = {settings.OWNER_TELEGRAM_ID}
    if settings.PARTNER_TELEGRAM_ID:
        ids.add(settings.PARTNER_TELEGRAM_ID)
    return ids


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores updates from anyone but the family."""

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or user.id not in _allowed_ids():
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return
        return await func(update, context)

    return wrapper


def _current_user(update: Update, context: ContextTypes.DEFAULT_TYPE) -> User | None:
    store: RuleStoreDB = context.bot_data["store"]
    return store.get_user_by_telegram_id(update.effective_user.id)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.message.reply_text(
        "Hi! I'll remind you about tasks, reminders and your weekly schedule.\n\n"
        "/floating - pick days for this week's floating events\n"
        "/sync - sync with the calendar now"
    )


@authorized_only
async def cmd_floating(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """List this week's unconfirmed floating events with one button per admissible day."""
    user = _current_user(update, context)
    if user is None:
        return
    today = datetime.now(settings.tz).date()
    events = list_unconfirmed(context.bot_data["store"], today, user.id)
    if not events:
        await update.message.reply_text("All floating events are settled for this week.")
        return

    for event in events:
        buttons = [
            InlineKeyboardButton(WEEKDAY_NAMES[d], callback_data=f"float:{event.id}:{d}")
            for d in event.floating_days
        ]
        await update.message.reply_text(
            f"🔄 {event.title} ({event.time_range})",
            reply_markup=InlineKeyboardMarkup([buttons]),
        )


@authorized_only
async def cmd_sync(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    reconciler: CalendarReconciler | None = context.bot_data.get("reconciler")
    user = _current_user(update, context)
    if reconciler is None or user is None:
        await update.message.reply_text("Calendar sync is not configured.")
        return

    try:
        pulled = await reconciler.sync_from_remote()
        pushed = await reconciler.sync_to_remote(user.id)
    except CalendarError as exc:
        logger.error("Manual calendar sync failed: %s", exc)
        await update.message.reply_text("Calendar is unavailable right now, try again later.")
        return

    text = (
        f"📅 Synced: +{pulled.added} ~{pulled.updated} -{pulled.deleted}, "
        f"pushed {pushed.created} new / {pushed.updated} updated"
    )
    errors = len(pulled.errors) + len(pushed.errors)
    if errors:
        text += f"\n⚠️ {errors} item(s) failed"
    await update.message.reply_text(text)


# ---------------------------------------------------------------------------
# Inline button callbacks
# ---------------------------------------------------------------------------


@authorized_only
async def _handle_task_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """done:<id> / snooze:<id>:<duration> from task notifications."""
    query = update.callback_query
    user = _current_user(update, context)
    if user is None:
        await query.answer()
        return

    store: RuleStoreDB = context.bot_data["store"]
    now = datetime.now(settings.tz)
    try:
        callback = parse_callback(query.data)
        if callback.action == "done":
            successor = await complete_task(
                store, callback.task_id, user.id, now, settings.tz,
                reconciler=context.bot_data.get("reconciler"),
            )
            status = "✅ Done"
            if successor is not None and successor.due_date is not None:
                status += f", next: {successor.due_date.astimezone(settings.tz):%d.%m %H:%M}"
        else:
            until = snooze_task(
                store, callback.task_id, user.id, callback.duration, now, settings.tz
            )
            status = f"⏰ Snoozed until {until.astimezone(settings.tz):%d.%m %H:%M}"
    except TaskActionError as exc:
        logger.warning("Task callback %r rejected: %s", query.data, exc)
        await query.answer(str(exc), show_alert=True)
        return

    await query.answer()
    await query.edit_message_text(f"{query.message.text}\n\n{status}")


@authorized_only
async def _handle_floating_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """float:<event_id>:<weekday> from /floating."""
    query = update.callback_query
    _, event_id, day = query.data.split(":")
    today = datetime.now(settings.tz).date()
    try:
        event = confirm_day(context.bot_data["store"], int(event_id), int(day), today)
    except FloatingConfirmationError as exc:
        logger.warning("Floating confirmation rejected: %s", exc)
        await query.answer(str(exc), show_alert=True)
        return

    await query.answer()
    await query.edit_message_text(
        f"✅ {event.title}: {WEEKDAY_NAMES[event.confirmed_day]} {event.time_range}"
    )


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def _ensure_users(store: RuleStoreDB) -> User:
    """Register the owner (and partner) on first start. Returns the owner."""
    owner = store.get_user_by_telegram_id(settings.OWNER_TELEGRAM_ID)
    if owner is None:
        owner = store.add_user(settings.OWNER_TELEGRAM_ID, "Owner")
    if settings.PARTNER_TELEGRAM_ID and store.get_user_by_telegram_id(settings.PARTNER_TELEGRAM_ID) is None:
        store.add_user(settings.PARTNER_TELEGRAM_ID, "Partner")
    return owner


def _build_reconciler(store: RuleStoreDB, owner: User) -> CalendarReconciler | None:
    if not settings.caldav_configured:
        logger.info("CalDAV not configured; calendar sync disabled")
        return None

    from familybot.adapters.caldav_calendar import CalDAVCalendarAdapter
    from familybot.core.calendar_sync import CalendarReconciler

    transport = CalDAVCalendarAdapter(
        url=settings.CALDAV_URL,
        username=settings.CALDAV_USERNAME,
        password=settings.CALDAV_PASSWORD,
        tz=settings.tz,
        timeout=settings.CALDAV_TIMEOUT_SECONDS,
    )
    return CalendarReconciler(
        store=store,
        transport=transport,
        calendar_path=settings.CALDAV_CALENDAR_PATH,
        owner_user_id=owner.id,
        tz=settings.tz,
        window_months=settings.CALENDAR_SYNC_MONTHS,
    )


async def _post_init(app: Application) -> None:
    app.bot_data["dispatcher"].start()


async def _post_shutdown(app: Application) -> None:
    await app.bot_data["dispatcher"].stop()


def build_app(
    store: RuleStoreDB | None = None,
    notifier: NotificationPort | None = None,
    reconciler: CalendarReconciler | None = None,
) -> Application:
    """Build and configure the Telegram Application with all handlers.

    Args:
        store: Rule store. Defaults to RuleStoreDB at DATABASE_PATH.
        notifier: Notification port implementation. Defaults to TelegramNotifier
                  (created from the bot instance after app is built).
        reconciler: Calendar reconciler. Defaults to a CalDAV-backed one when
                    CalDAV credentials are configured.
    """
    from familybot.core.dispatcher import DispatchLoop

    app = (
        ApplicationBuilder()
        .token(settings.TELEGRAM_BOT_TOKEN)
        .post_init(_post_init)
        .post_shutdown(_post_shutdown)
        .build()
    )

    if store is None:
        from familybot.data.db import RuleStoreDB
        store = RuleStoreDB()
    owner = _ensure_users(store)

    if notifier is None:
        from familybot.adapters.telegram_notifier import TelegramNotifier
        notifier = TelegramNotifier(app.bot)

    if reconciler is None:
        reconciler = _build_reconciler(store, owner)

    app.bot_data["store"] = store
    app.bot_data["notifier"] = notifier
    app.bot_data["reconciler"] = reconciler
    app.bot_data["dispatcher"] = DispatchLoop(store, notifier, settings, reconciler=reconciler)

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_start))
    app.add_handler(CommandHandler("floating", cmd_floating))
    app.add_handler(CommandHandler("sync", cmd_sync))
    app.add_handler(CallbackQueryHandler(_handle_task_callback, pattern=r"^(done|snooze):\d+"))
    app.add_handler(CallbackQueryHandler(_handle_floating_callback, pattern=r"^float:\d+:[0-6]$"))

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting FamilyBot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()

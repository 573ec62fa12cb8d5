"""
WasteWise — Telegram Bot.

Chat front-end for the rewards core. Reporters file waste reports,
collectors claim tasks and send a photo to get them verified, everyone can
check points, browse rewards and read notifications.

All business rules live in RewardsService; handlers only parse arguments,
call the service and render the outcome or the error.
"""

from __future__ import annotations

import logging
import re
import sys
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from src.config import settings
from src.core.errors import (
    DuplicateUser,
    Forbidden,
    InsufficientBalance,
    InvalidTransition,
    NotFound,
    OracleParseError,
    RewardsError,
    StoreUnavailable,
)

if TYPE_CHECKING:
    from src.core.rewards_service import RewardsService
    from src.data.models import Task, User
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_VERIFY_CAPTION_RE = re.compile(r"^/verify(?:@\w+)?\s+(\d+)\s*$")
_REPORT_CAPTION_RE = re.compile(r"^/report(?:@\w+)?\s+(.+)$", re.DOTALL)

_STATUS_ICONS = {
    "pending": "\U0001f7e1",
    "in_progress": "\U0001f69b",
    "completed": "\U0001f4e6",
    "verified": "✅",
}


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Silently ignore chats outside ALLOWED_USER_IDS (when the list is set)."""

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        allowed = settings.ALLOWED_USER_IDS
        if user is None or (allowed and user.id not in allowed):
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _service(context: ContextTypes.DEFAULT_TYPE) -> RewardsService:
    return context.bot_data["service"]


async def _current_user(update: Update, context: ContextTypes.DEFAULT_TYPE) -> User | None:
    """Look up the chat's registered user, prompting registration if missing."""
    user = _service(context).get_user_by_telegram_id(update.effective_user.id)
    if user is None:
        await update.message.reply_text(
            "You're not registered yet. Use /register <email> first."
        )
    return user


def _parse_report_args(text: str) -> tuple[str, str, str] | None:
    """Parse 'waste type | amount | location' into its three parts."""
    parts = [p.strip() for p in text.split("|")]
    if len(parts) != 3 or not all(parts):
        return None
    waste_type, amount, location = parts
    return waste_type, amount, location


def _parse_id(args: list[str] | None) -> int | None:
    if not args:
        return None
    try:
        value = int(args[0])
    except ValueError:
        return None
    return value if value > 0 else None


def _format_task(task: Task) -> str:
    icon = _STATUS_ICONS.get(task.status.value, "")
    return (
        f"#{task.id} {icon} {task.waste_type} ({task.amount}) — {task.location} "
        f"[{task.status.value.replace('_', ' ')}, {task.created_at[:10]}]"
    )


def _error_text(exc: RewardsError) -> str:
    """User-facing wording for each core error."""
    if isinstance(exc, NotFound):
        return f"Not found: {exc}"
    if isinstance(exc, InvalidTransition):
        return f"That's not possible right now: {exc}"
    if isinstance(exc, Forbidden):
        return "This task is assigned to another collector."
    if isinstance(exc, OracleParseError):
        return "Verification couldn't run right now. Your task is unchanged — please try again later."
    if isinstance(exc, InsufficientBalance):
        return f"Not enough points: {exc}"
    if isinstance(exc, DuplicateUser):
        return "You're already registered."
    if isinstance(exc, StoreUnavailable):
        return "The service is busy. Please try again in a moment."
    return "Something went wrong. Please try again."


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — welcome message."""
    await update.message.reply_text(
        "Welcome to *WasteWise*!\n\n"
        "Report waste, collect it, earn points:\n"
        "• /register <email> to get started\n"
        "• /report <type> | <amount> | <location> to report waste (+10 points)\n"
        "• /tasks to see collection tasks, /claim <id> to take one\n"
        "• Send a photo with caption `/verify <id>` when you've collected it\n\n"
        "Type /help for the full command list.",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help — list available commands."""
    await update.message.reply_text(
        "*Available commands:*\n"
        "/register <email> — Create your account\n"
        "/report <type> | <amount> | <location> — Report waste\n"
        "/tasks — List collection tasks\n"
        "/recent — Latest reports\n"
        "/claim <id> — Claim a pending task\n"
        "/done <id> — Mark a claimed task as collected\n"
        "Photo + caption `/verify <id>` — Verify a collection\n"
        "/balance — Your points\n"
        "/history — Recent point transactions\n"
        "/rewards — Available rewards\n"
        "/redeem <id> — Redeem a reward\n"
        "/notifications — Unread notifications\n"
        "/help — Show this message",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_register(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /register <email> — link this chat to a new user."""
    args = context.args
    if not args or not _EMAIL_RE.match(args[0]):
        await update.message.reply_text("Usage: /register <email>")
        return

    tg_user = update.effective_user
    name = tg_user.first_name or tg_user.username or args[0]
    try:
        user = _service(context).register_user(args[0], name, telegram_user_id=tg_user.id)
    except RewardsError as exc:
        logger.warning("/register failed for %d: %s", tg_user.id, exc)
        await update.message.reply_text(_error_text(exc))
        return

    await update.message.reply_text(f"✅ Welcome, {user.name}! You're registered as {user.email}.")


async def _file_report(
    text: str,
    photo_ref: str | None,
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
) -> None:
    """Shared logic for /report and photo-with-caption reports."""
    parsed = _parse_report_args(text)
    if parsed is None:
        await update.message.reply_text(
            "Usage: /report <waste type> | <amount> | <location>\n"
            "Example: /report plastic | 2 bags | Park entrance, Main St"
        )
        return

    user = await _current_user(update, context)
    if user is None:
        return

    waste_type, amount, location = parsed
    try:
        task = _service(context).create_task(
            user.id, location, waste_type, amount, photo_ref=photo_ref,
        )
    except RewardsError as exc:
        logger.error("/report error: %s", exc)
        await update.message.reply_text(_error_text(exc))
        return

    await update.message.reply_text(
        f"✅ Report #{task.id} filed: {waste_type} ({amount}) at {location}.\n"
        f"You earned {settings.REPORT_REWARD_POINTS} points!"
    )


@authorized_only
async def cmd_report(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /report <type> | <amount> | <location>."""
    await _file_report(" ".join(context.args or []), None, update, context)


@authorized_only
async def cmd_tasks(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /tasks — list collection tasks, oldest first."""
    try:
        tasks = _service(context).list_tasks(limit=20)
    except RewardsError as exc:
        logger.error("/tasks error: %s", exc)
        await update.message.reply_text(_error_text(exc))
        return

    if not tasks:
        await update.message.reply_text("No collection tasks yet.")
        return

    lines = ["Collection tasks:\n"] + [_format_task(t) for t in tasks]
    await update.message.reply_text("\n".join(lines))


@authorized_only
async def cmd_recent(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /recent — newest reports first."""
    try:
        tasks = _service(context).list_recent_tasks(limit=5)
    except RewardsError as exc:
        logger.error("/recent error: %s", exc)
        await update.message.reply_text(_error_text(exc))
        return

    if not tasks:
        await update.message.reply_text("No reports yet.")
        return

    lines = ["Recent reports:\n"] + [_format_task(t) for t in tasks]
    await update.message.reply_text("\n".join(lines))


@authorized_only
async def cmd_claim(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /claim <id> — take a pending task."""
    task_id = _parse_id(context.args)
    if task_id is None:
        await update.message.reply_text("Usage: /claim <task_id>\nUse /tasks to see IDs.")
        return

    user = await _current_user(update, context)
    if user is None:
        return

    try:
        task = _service(context).claim_task(task_id, user.id)
    except RewardsError as exc:
        logger.warning("/claim %d by user #%d failed: %s", task_id, user.id, exc)
        await update.message.reply_text(_error_text(exc))
        return

    await update.message.reply_text(
        f"\U0001f69b Task #{task.id} is yours: {task.waste_type} ({task.amount}) at {task.location}.\n"
        f"When you've collected it, send a photo with caption /verify {task.id}.",
    )


@authorized_only
async def cmd_done(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /done <id> — mark a claimed task as collected (awaiting verification)."""
    task_id = _parse_id(context.args)
    if task_id is None:
        await update.message.reply_text("Usage: /done <task_id>")
        return

    user = await _current_user(update, context)
    if user is None:
        return

    try:
        task = _service(context).mark_task_completed(task_id, user.id)
    except RewardsError as exc:
        logger.warning("/done %d by user #%d failed: %s", task_id, user.id, exc)
        await update.message.reply_text(_error_text(exc))
        return

    await update.message.reply_text(
        f"\U0001f4e6 Task #{task.id} marked as collected. Send a photo with caption "
        f"/verify {task.id} to earn your reward.",
    )


@authorized_only
async def cmd_balance(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /balance — current spendable points."""
    user = await _current_user(update, context)
    if user is None:
        return
    try:
        balance = _service(context).get_balance(user.id)
    except RewardsError as exc:
        logger.error("/balance error: %s", exc)
        await update.message.reply_text(_error_text(exc))
        return
    await update.message.reply_text(f"\U0001fa99 You have *{balance}* points.", parse_mode="Markdown")


@authorized_only
async def cmd_history(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /history — last point transactions."""
    user = await _current_user(update, context)
    if user is None:
        return
    try:
        entries = _service(context).transaction_history(user.id)
    except RewardsError as exc:
        logger.error("/history error: %s", exc)
        await update.message.reply_text(_error_text(exc))
        return

    if not entries:
        await update.message.reply_text("No transactions yet.")
        return

    lines = ["Recent transactions:\n"]
    for e in entries:
        lines.append(f"{e.created_at[:10]}  {e.signed_amount:+d}  {e.description}")
    await update.message.reply_text("\n".join(lines))


@authorized_only
async def cmd_rewards(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /rewards — points summary plus the available catalog."""
    user = await _current_user(update, context)
    if user is None:
        return
    try:
        offers = _service(context).list_available_rewards(user.id)
    except RewardsError as exc:
        logger.error("/rewards error: %s", exc)
        await update.message.reply_text(_error_text(exc))
        return

    points, catalog = offers[0], offers[1:]
    lines = [f"{points.name}: {points.cost}\n"]
    if not catalog:
        lines.append("No rewards available right now.")
    for offer in catalog:
        mark = "✅" if offer.cost <= points.cost else "\U0001f512"
        lines.append(f"#{offer.id} {mark} {offer.name} — {offer.cost} points")
    await update.message.reply_text("\n".join(lines))


@authorized_only
async def cmd_redeem(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /redeem <id> — spend points on a reward."""
    reward_id = _parse_id(context.args)
    if reward_id is None:
        await update.message.reply_text("Usage: /redeem <reward_id>\nUse /rewards to see IDs.")
        return

    user = await _current_user(update, context)
    if user is None:
        return

    try:
        entry = _service(context).redeem_reward(user.id, reward_id)
    except RewardsError as exc:
        logger.warning("/redeem %d by user #%d failed: %s", reward_id, user.id, exc)
        await update.message.reply_text(_error_text(exc))
        return

    await update.message.reply_text(f"\U0001f381 {entry.description} (-{entry.amount} points).")


@authorized_only
async def cmd_notifications(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /notifications — unread notifications with mark-read buttons."""
    user = await _current_user(update, context)
    if user is None:
        return
    try:
        unread = _service(context).list_unread_notifications(user.id)
    except RewardsError as exc:
        logger.error("/notifications error: %s", exc)
        await update.message.reply_text(_error_text(exc))
        return

    if not unread:
        await update.message.reply_text("No unread notifications.")
        return

    keyboard = [
        [InlineKeyboardButton(f"✓ {n.message[:40]}", callback_data=f"notif:{n.id}")]
        for n in unread
    ]
    await update.message.reply_text(
        f"You have {len(unread)} unread notifications. Tap one to mark it read.",
        reply_markup=InlineKeyboardMarkup(keyboard),
    )


async def _handle_notification_callback(
    update: Update, context: ContextTypes.DEFAULT_TYPE
) -> None:
    """Handle the inline button tap to mark a notification read."""
    query = update.callback_query
    await query.answer()

    tg_user = query.from_user
    allowed = settings.ALLOWED_USER_IDS
    if tg_user is None or (allowed and tg_user.id not in allowed):
        return

    notification_id = int(query.data.split(":")[1])
    service = _service(context)
    user = service.get_user_by_telegram_id(tg_user.id)
    notification = service.notifications.get(notification_id)
    if user is None or notification is None or notification.user_id != user.id:
        await query.edit_message_text("Notification not found.")
        return

    try:
        service.mark_notification_read(notification_id)
    except RewardsError as exc:
        logger.error("mark-read callback error: %s", exc)
        await query.edit_message_text(_error_text(exc))
        return

    await query.edit_message_text(f"✓ Read: {notification.message}")


# ---------------------------------------------------------------------------
# Photo handler: verification and photo reports
# ---------------------------------------------------------------------------


async def _verify_collection(
    task_id: int, update: Update, context: ContextTypes.DEFAULT_TYPE,
) -> None:
    user = await _current_user(update, context)
    if user is None:
        return

    processing_msg = await update.message.reply_text("\U0001f50d Verifying your collection...")
    try:
        photo_file = await update.message.photo[-1].get_file()
        photo = bytes(await photo_file.download_as_bytearray())
    except TelegramError as exc:
        logger.error("Photo download for task #%d failed: %s", task_id, exc)
        await processing_msg.edit_text(
            "Couldn't download your photo. Your task is unchanged, please send it again."
        )
        return

    try:
        outcome = await _service(context).submit_verification(task_id, user.id, photo)
    except RewardsError as exc:
        logger.warning("/verify %d by user #%d failed: %s", task_id, user.id, exc)
        await processing_msg.edit_text(_error_text(exc))
        return

    j = outcome.judgment
    details = (
        f"Waste type match: {'Yes' if j.waste_type_match else 'No'}\n"
        f"Quantity match: {'Yes' if j.quantity_match else 'No'}\n"
        f"Confidence: {j.confidence * 100:.2f}%"
    )
    if outcome.accepted:
        text = f"\U0001f389 Verification successful! You earned {outcome.reward} points.\n\n{details}"
    else:
        text = (
            "❌ Verification failed: the photo doesn't match the reported waste.\n"
            f"You can try again with a clearer photo.\n\n{details}"
        )
    await processing_msg.edit_text(text)


@authorized_only
async def handle_photo(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle photos: caption `/verify <id>` verifies, `/report ...` files a report."""
    caption = (update.message.caption or "").strip()

    verify = _VERIFY_CAPTION_RE.match(caption)
    if verify:
        await _verify_collection(int(verify.group(1)), update, context)
        return

    report = _REPORT_CAPTION_RE.match(caption)
    if report:
        photo_ref = update.message.photo[-1].file_id
        await _file_report(report.group(1), photo_ref, update, context)
        return

    await update.message.reply_text(
        "Add a caption to your photo: `/verify <task_id>` or `/report <type> | <amount> | <location>`.",
        parse_mode="Markdown",
    )


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def build_app(
    service: RewardsService | None = None,
    notifier: NotificationPort | None = None,
) -> Application:
    """Build and configure the Telegram Application with all handlers.

    Args:
        service: Rewards service. Defaults to one backed by DATABASE_PATH and the LLM oracle.
        notifier: Notification port implementation. Defaults to TelegramNotifier.
    """
    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).build()

    if service is None:
        from src.core.oracle import LLMOracle
        from src.core.rewards_service import RewardsService
        service = RewardsService(oracle=LLMOracle())

    if notifier is None:
        from src.adapters.telegram_notifier import TelegramNotifier
        notifier = TelegramNotifier(app.bot)

    app.bot_data["service"] = service
    app.bot_data["notifier"] = notifier

    # Commands
    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("register", cmd_register))
    app.add_handler(CommandHandler("report", cmd_report))
    app.add_handler(CommandHandler("tasks", cmd_tasks))
    app.add_handler(CommandHandler("recent", cmd_recent))
    app.add_handler(CommandHandler("claim", cmd_claim))
    app.add_handler(CommandHandler("done", cmd_done))
    app.add_handler(CommandHandler("balance", cmd_balance))
    app.add_handler(CommandHandler("history", cmd_history))
    app.add_handler(CommandHandler("rewards", cmd_rewards))
    app.add_handler(CommandHandler("redeem", cmd_redeem))
    app.add_handler(CommandHandler("notifications", cmd_notifications))
    app.add_handler(CallbackQueryHandler(_handle_notification_callback, pattern=r"^notif:\d+$"))

    # Photos (verification proofs and photo reports)
    app.add_handler(MessageHandler(filters.PHOTO, handle_photo))

    _setup_notification_push(app, service, notifier)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def _setup_notification_push(
    app: Application,
    service: RewardsService,
    notifier: NotificationPort,
) -> None:
    """Register the repeating job that pushes new notifications to chats."""
    from src.core.notification_feed import push_new_notifications

    async def _push_job_callback(context: ContextTypes.DEFAULT_TYPE) -> None:
        await push_new_notifications(notifier, service.feed, service.users)

    app.job_queue.run_repeating(
        _push_job_callback,
        interval=settings.NOTIFICATION_POLL_SECONDS,
        first=settings.NOTIFICATION_POLL_SECONDS,
        name="notification_push",
    )

    logger.info("Notification push scheduled every %ds", settings.NOTIFICATION_POLL_SECONDS)


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    if not settings.TELEGRAM_BOT_TOKEN or settings.TELEGRAM_BOT_TOKEN.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    logger.info("Starting WasteWise bot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()

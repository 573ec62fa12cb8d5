"""Tests for src.bot.telegram_bot — Telegram bot handlers.

Handlers run against a real RewardsService on a temp DB; Telegram objects
are mocked.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from src.bot.telegram_bot import (
    _error_text,
    _format_task,
    _parse_id,
    _parse_report_args,
)
from src.core.errors import (
    Forbidden,
    InsufficientBalance,
    OracleParseError,
    RewardsError,
    StoreUnavailable,
)
from src.data.models import Judgment, TaskStatus


def _make_update(text="", user_id=12345, first_name="Cole", caption=None):
    """Create a mock Update with a text message from an authorized user."""
    update = MagicMock()
    update.message.text = text
    update.message.caption = caption
    update.effective_user.id = user_id
    update.effective_user.first_name = first_name
    update.message.reply_text = AsyncMock()
    return update


def _make_context(service, args=None):
    """Create a mock context with the service in bot_data."""
    context = MagicMock()
    context.args = args or []
    context.bot_data = {"service": service}
    return context


def _reply(update):
    return update.message.reply_text.call_args.args[0]


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


class TestParseReportArgs:
    def test_three_parts(self):
        assert _parse_report_args("plastic | 2 bags | Park entrance, Main St") == (
            "plastic", "2 bags", "Park entrance, Main St",
        )

    def test_missing_part(self):
        assert _parse_report_args("plastic | 2 bags") is None

    def test_empty_part(self):
        assert _parse_report_args("plastic |  | Park") is None

    def test_empty_text(self):
        assert _parse_report_args("") is None


class TestParseId:
    def test_valid(self):
        assert _parse_id(["7"]) == 7

    @pytest.mark.parametrize("args", [None, [], ["abc"], ["0"], ["-3"]])
    def test_invalid(self, args):
        assert _parse_id(args) is None


class TestErrorText:
    def test_forbidden(self):
        assert "another collector" in _error_text(Forbidden("x"))

    def test_oracle(self):
        assert "unchanged" in _error_text(OracleParseError("x"))

    def test_insufficient(self):
        assert _error_text(InsufficientBalance("need 50")) == "Not enough points: need 50"

    def test_store(self):
        assert "busy" in _error_text(StoreUnavailable("locked"))

    def test_generic(self):
        assert _error_text(RewardsError("x")) == "Something went wrong. Please try again."


class TestFormatTask:
    def test_status_readable(self, service, reporter, collector):
        task = service.create_task(reporter.id, "Park", "plastic", "2 bags")
        task = service.claim_task(task.id, collector.id)
        text = _format_task(task)
        assert text.startswith(f"#{task.id}")
        assert "in progress" in text
        assert "in_progress" not in text


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_unauthorized_user_ignored(self, service):
        from src.bot.telegram_bot import cmd_start

        update = _make_update(user_id=99999)
        await cmd_start(update, _make_context(service))
        update.message.reply_text.assert_not_called()

    @pytest.mark.asyncio
    async def test_open_access_when_list_empty(self, service):
        from src.bot.telegram_bot import cmd_start

        update = _make_update(user_id=99999)
        with patch("src.bot.telegram_bot.settings") as mock_settings:
            mock_settings.ALLOWED_USER_IDS = []
            await cmd_start(update, _make_context(service))
        update.message.reply_text.assert_called_once()


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


class TestRegister:
    @pytest.mark.asyncio
    async def test_registers_chat(self, service):
        from src.bot.telegram_bot import cmd_register

        update = _make_update()
        await cmd_register(update, _make_context(service, ["cole@example.com"]))

        user = service.get_user_by_telegram_id(12345)
        assert user.email == "cole@example.com"
        assert user.name == "Cole"
        assert "Welcome" in _reply(update)

    @pytest.mark.asyncio
    async def test_invalid_email(self, service):
        from src.bot.telegram_bot import cmd_register

        update = _make_update()
        await cmd_register(update, _make_context(service, ["not-an-email"]))
        assert _reply(update).startswith("Usage")
        assert service.get_user_by_telegram_id(12345) is None

    @pytest.mark.asyncio
    async def test_already_registered(self, service, collector):
        from src.bot.telegram_bot import cmd_register

        update = _make_update()
        await cmd_register(update, _make_context(service, ["collector@example.com"]))
        assert _reply(update) == "You're already registered."


class TestReport:
    @pytest.mark.asyncio
    async def test_files_report(self, service, collector):
        from src.bot.telegram_bot import cmd_report

        update = _make_update()
        args = "plastic | 2 bags | Park entrance".split()
        await cmd_report(update, _make_context(service, args))

        (task,) = service.list_tasks()
        assert task.reporter_id == collector.id
        assert task.waste_type == "plastic"
        assert task.location == "Park entrance"
        assert service.get_balance(collector.id) == 10
        assert "earned 10 points" in _reply(update)

    @pytest.mark.asyncio
    async def test_bad_args_show_usage(self, service, collector):
        from src.bot.telegram_bot import cmd_report

        update = _make_update()
        await cmd_report(update, _make_context(service, ["plastic"]))
        assert _reply(update).startswith("Usage")
        assert service.list_tasks() == []

    @pytest.mark.asyncio
    async def test_unregistered_prompted(self, service):
        from src.bot.telegram_bot import cmd_report

        update = _make_update()
        await cmd_report(update, _make_context(service, "glass | 1 | Beach".split()))
        assert "/register" in _reply(update)
        assert service.list_tasks() == []


class TestClaimAndDone:
    @pytest.mark.asyncio
    async def test_claim(self, service, reporter, collector):
        from src.bot.telegram_bot import cmd_claim

        task = service.create_task(reporter.id, "Park", "plastic", "2 bags")
        update = _make_update()
        await cmd_claim(update, _make_context(service, [str(task.id)]))

        assert service.get_task(task.id).collector_id == collector.id
        assert f"/verify {task.id}" in _reply(update)

    @pytest.mark.asyncio
    async def test_claim_taken_task(self, service, reporter, collector, other_collector):
        from src.bot.telegram_bot import cmd_claim

        task = service.create_task(reporter.id, "Park", "plastic", "2 bags")
        service.claim_task(task.id, other_collector.id)
        update = _make_update()
        await cmd_claim(update, _make_context(service, [str(task.id)]))

        assert _reply(update).startswith("That's not possible right now")
        assert service.get_task(task.id).collector_id == other_collector.id

    @pytest.mark.asyncio
    async def test_claim_usage(self, service, collector):
        from src.bot.telegram_bot import cmd_claim

        update = _make_update()
        await cmd_claim(update, _make_context(service))
        assert _reply(update).startswith("Usage")

    @pytest.mark.asyncio
    async def test_done(self, service, reporter, collector):
        from src.bot.telegram_bot import cmd_done

        task = service.create_task(reporter.id, "Park", "plastic", "2 bags")
        service.claim_task(task.id, collector.id)
        update = _make_update()
        await cmd_done(update, _make_context(service, [str(task.id)]))
        assert service.get_task(task.id).status is TaskStatus.COMPLETED


class TestListings:
    @pytest.mark.asyncio
    async def test_tasks_empty(self, service):
        from src.bot.telegram_bot import cmd_tasks

        update = _make_update()
        await cmd_tasks(update, _make_context(service))
        assert _reply(update) == "No collection tasks yet."

    @pytest.mark.asyncio
    async def test_recent_lists_reports(self, service, reporter):
        from src.bot.telegram_bot import cmd_recent

        service.create_task(reporter.id, "Park", "plastic", "2 bags")
        update = _make_update()
        await cmd_recent(update, _make_context(service))
        assert "plastic" in _reply(update)

    @pytest.mark.asyncio
    async def test_balance(self, service, collector):
        from src.bot.telegram_bot import cmd_balance

        service.create_task(collector.id, "Park", "plastic", "2 bags")
        update = _make_update()
        await cmd_balance(update, _make_context(service))
        assert "*10*" in _reply(update)

    @pytest.mark.asyncio
    async def test_history(self, service, collector):
        from src.bot.telegram_bot import cmd_history

        service.create_task(collector.id, "Park", "plastic", "2 bags")
        update = _make_update()
        await cmd_history(update, _make_context(service))
        assert "+10  Points earned from reporting waste" in _reply(update)


class TestRewardsCommands:
    @pytest.mark.asyncio
    async def test_rewards_lists_points_and_offers(self, service, collector):
        from src.bot.telegram_bot import cmd_rewards

        service.create_task(collector.id, "Park", "plastic", "2 bags")
        service.add_reward_offer("Sticker", 5)
        update = _make_update()
        await cmd_rewards(update, _make_context(service))

        text = _reply(update)
        assert text.startswith("Your points: 10")
        assert "Sticker" in text

    @pytest.mark.asyncio
    async def test_redeem(self, service, collector):
        from src.bot.telegram_bot import cmd_redeem

        service.create_task(collector.id, "Park", "plastic", "2 bags")
        offer = service.add_reward_offer("Sticker", 5)
        update = _make_update()
        await cmd_redeem(update, _make_context(service, [str(offer.id)]))

        assert "Redeemed Sticker" in _reply(update)
        assert service.get_balance(collector.id) == 5

    @pytest.mark.asyncio
    async def test_redeem_insufficient(self, service, collector):
        from src.bot.telegram_bot import cmd_redeem

        offer = service.add_reward_offer("Bike", 500)
        update = _make_update()
        await cmd_redeem(update, _make_context(service, [str(offer.id)]))
        assert _reply(update).startswith("Not enough points")


class TestNotificationsCommand:
    @pytest.mark.asyncio
    async def test_lists_with_buttons(self, service, collector):
        from src.bot.telegram_bot import cmd_notifications

        service.create_task(collector.id, "Park", "plastic", "2 bags")
        update = _make_update()
        await cmd_notifications(update, _make_context(service))

        kwargs = update.message.reply_text.call_args.kwargs
        buttons = kwargs["reply_markup"].inline_keyboard
        assert len(buttons) == 1
        assert buttons[0][0].callback_data.startswith("notif:")

    @pytest.mark.asyncio
    async def test_callback_marks_read(self, service, collector):
        from src.bot.telegram_bot import _handle_notification_callback

        service.create_task(collector.id, "Park", "plastic", "2 bags")
        (notification,) = service.list_unread_notifications(collector.id)

        update = MagicMock()
        update.callback_query.answer = AsyncMock()
        update.callback_query.edit_message_text = AsyncMock()
        update.callback_query.from_user.id = 12345
        update.callback_query.data = f"notif:{notification.id}"

        await _handle_notification_callback(update, _make_context(service))

        assert service.list_unread_notifications(collector.id) == []
        update.callback_query.edit_message_text.assert_called_once()

    @pytest.mark.asyncio
    async def test_callback_other_users_notification(self, service, reporter, collector):
        from src.bot.telegram_bot import _handle_notification_callback

        service.create_task(reporter.id, "Park", "plastic", "2 bags")
        (notification,) = service.list_unread_notifications(reporter.id)

        update = MagicMock()
        update.callback_query.answer = AsyncMock()
        update.callback_query.edit_message_text = AsyncMock()
        update.callback_query.from_user.id = 12345
        update.callback_query.data = f"notif:{notification.id}"

        await _handle_notification_callback(update, _make_context(service))

        assert len(service.list_unread_notifications(reporter.id)) == 1
        update.callback_query.edit_message_text.assert_called_once_with("Notification not found.")


# ---------------------------------------------------------------------------
# Photo handler
# ---------------------------------------------------------------------------


def _photo_update(caption):
    update = _make_update(caption=caption)
    photo_file = MagicMock()
    photo_file.download_as_bytearray = AsyncMock(return_value=bytearray(b"jpeg"))
    size = MagicMock()
    size.file_id = "file-123"
    size.get_file = AsyncMock(return_value=photo_file)
    update.message.photo = [size]
    processing = MagicMock()
    processing.edit_text = AsyncMock()
    update.message.reply_text = AsyncMock(return_value=processing)
    return update, processing


class TestHandlePhoto:
    @pytest.mark.asyncio
    async def test_verify_caption_runs_verification(self, tmp_db_path, reporter, collector):
        from src.bot.telegram_bot import handle_photo
        from src.core.rewards_service import RewardsService

        oracle = MagicMock()
        oracle.judge = AsyncMock(return_value=Judgment(True, True, 0.9))
        service = RewardsService(db_path=tmp_db_path, oracle=oracle)
        task = service.create_task(reporter.id, "Park", "plastic", "2 bags")
        service.claim_task(task.id, collector.id)

        update, processing = _photo_update(f"/verify {task.id}")
        await handle_photo(update, _make_context(service))

        assert oracle.judge.await_args.args[0] == b"jpeg"
        assert service.get_task(task.id).status is TaskStatus.VERIFIED
        assert "Verification successful" in processing.edit_text.call_args.args[0]

    @pytest.mark.asyncio
    async def test_rejected_verification_reported(self, tmp_db_path, reporter, collector):
        from src.bot.telegram_bot import handle_photo
        from src.core.rewards_service import RewardsService

        oracle = MagicMock()
        oracle.judge = AsyncMock(return_value=Judgment(True, False, 0.9))
        service = RewardsService(db_path=tmp_db_path, oracle=oracle)
        task = service.create_task(reporter.id, "Park", "plastic", "2 bags")
        service.claim_task(task.id, collector.id)

        update, processing = _photo_update(f"/verify {task.id}")
        await handle_photo(update, _make_context(service))

        text = processing.edit_text.call_args.args[0]
        assert "Verification failed" in text
        assert "Quantity match: No" in text
        assert service.get_task(task.id).status is TaskStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_oracle_unavailable_reported(self, service, reporter, collector):
        from src.bot.telegram_bot import handle_photo

        task = service.create_task(reporter.id, "Park", "plastic", "2 bags")
        service.claim_task(task.id, collector.id)

        update, processing = _photo_update(f"/verify {task.id}")
        await handle_photo(update, _make_context(service))

        assert "couldn't run" in processing.edit_text.call_args.args[0]

    @pytest.mark.asyncio
    async def test_report_caption_files_report_with_photo(self, service, collector):
        from src.bot.telegram_bot import handle_photo

        update, _ = _photo_update("/report glass | 1 box | Beach")
        await handle_photo(update, _make_context(service))

        (task,) = service.list_tasks()
        assert task.photo_ref == "file-123"
        assert task.waste_type == "glass"

    @pytest.mark.asyncio
    async def test_no_caption_prompts(self, service):
        from src.bot.telegram_bot import handle_photo

        update, _ = _photo_update(None)
        await handle_photo(update, _make_context(service))
        assert "caption" in _reply(update)

    @pytest.mark.asyncio
    async def test_photo_download_failure_reported(self, tmp_db_path, reporter, collector):
        from telegram.error import NetworkError

        from src.bot.telegram_bot import handle_photo
        from src.core.rewards_service import RewardsService

        oracle = MagicMock()
        oracle.judge = AsyncMock()
        service = RewardsService(db_path=tmp_db_path, oracle=oracle)
        task = service.create_task(reporter.id, "Park", "plastic", "2 bags")
        service.claim_task(task.id, collector.id)

        update, processing = _photo_update(f"/verify {task.id}")
        update.message.photo[-1].get_file = AsyncMock(side_effect=NetworkError("timed out"))
        await handle_photo(update, _make_context(service))

        assert "Couldn't download your photo" in processing.edit_text.call_args.args[0]
        oracle.judge.assert_not_called()
        assert service.get_task(task.id).status is TaskStatus.IN_PROGRESS

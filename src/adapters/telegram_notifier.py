"""Telegram notification adapter — implements NotificationPort.

Pushes reward and task notifications into the user's chat. A chat that has
blocked the bot is a permanent non-delivery and is reported as such; other
Telegram errors propagate so the feed retries on its next tick.
"""

from __future__ import annotations

import logging

from telegram import Bot
from telegram.error import Forbidden, TelegramError

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(self, chat_id: int, text: str) -> bool:
        try:
            await self._bot.send_message(chat_id=chat_id, text=text)
        except Forbidden as exc:
            logger.warning("Chat %d blocked the bot, dropping push: %s", chat_id, exc)
            return False
        except TelegramError as exc:
            logger.error("Telegram push to chat %d failed: %s", chat_id, exc)
            raise
        return True

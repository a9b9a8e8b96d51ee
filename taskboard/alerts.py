"""
Out-of-band alert channel for deployment failures.

TelegramAlerter pushes to the configured chats; LogAlerter is the fallback
when no bot token is configured. Delivery failures are logged, never raised.
"""
import logging
from typing import List

from telegram import Bot

logger = logging.getLogger(__name__)


class LogAlerter:
    """Writes alerts to the log only."""

    async def send(self, text: str) -> None:
        logger.error(f"ALERT: {text}")


class TelegramAlerter:
    """Sends alerts to Telegram chats through the Bot API."""

    def __init__(self, token: str, chat_ids: List[str]):
        self.bot = Bot(token)
        self.chat_ids = [str(c) for c in chat_ids]

    async def send(self, text: str) -> None:
        if not self.chat_ids:
            logger.warning(f"No alert chats configured; dropping alert: {text}")
            return
        async with self.bot:
            for chat_id in self.chat_ids:
                try:
                    await self.bot.send_message(chat_id, text, parse_mode="Markdown")
                except Exception as e:
                    logger.error(f"Failed to send alert to {chat_id}: {e}")


def build_alerter(token: str, chat_ids: List[str]):
    if token and chat_ids:
        return TelegramAlerter(token, chat_ids)
    return LogAlerter()

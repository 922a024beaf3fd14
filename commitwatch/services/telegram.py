import asyncio
from typing import Iterable, Optional

import telegram
from telegram.constants import ParseMode
from telegram.error import TelegramError

from commitwatch.services.notification_service import NotificationService
from commitwatch.util.formatting import MAX_MESSAGE_LENGTH, split_message
from commitwatch.util.logging import Logger


class TelegramService(NotificationService):
    """Delivers HTML-formatted messages to a single Telegram chat"""

    MAX_MESSAGE_LENGTH = MAX_MESSAGE_LENGTH

    def __init__(self, bot_token: str, chat_id: str, bot: Optional[telegram.Bot] = None):
        if not bot_token:
            raise ValueError("Telegram bot token not configured")
        if not chat_id:
            raise ValueError("Telegram chat ID not configured")

        self.logger = Logger("TelegramService")
        self.chat_id = chat_id
        self.bot = bot or telegram.Bot(token=bot_token)
        self._initialized = False

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.bot.initialize()
            self._initialized = True

    async def send_message(self, message: str) -> None:
        """Send a message through Telegram, raising if Telegram rejects it"""
        await self._ensure_initialized()

        # Messages built by the formatter fit; longer ones are split between lines
        chunks = split_message(message, self.MAX_MESSAGE_LENGTH)

        try:
            for chunk in chunks:
                await self.bot.send_message(chat_id=self.chat_id, text=chunk, parse_mode=ParseMode.HTML)
        except TelegramError as e:
            self.logger.error(f"Failed to send Telegram message: {e}")
            raise

    async def send_messages(self, messages: Iterable[str], delay: float = 0.1) -> int:
        """Send messages in order with a short pause between them, stopping at the first failure"""
        sent = 0
        for message in messages:
            if sent:
                await asyncio.sleep(delay)
            await self.send_message(message)
            sent += 1
        return sent

    async def test_connection(self) -> bool:
        try:
            await self._ensure_initialized()
            me = await self.bot.get_me()
            self.logger.info(f"Bot connected: @{me.username}")
            return True
        except TelegramError as e:
            self.logger.error(f"Bot connection failed: {e}")
            return False

    async def close(self) -> None:
        if self._initialized:
            await self.bot.shutdown()
            self._initialized = False

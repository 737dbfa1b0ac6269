"""
Telegram notification module.

Sends session progress and payment updates to a chat.
"""

import asyncio
import logging
from typing import Hashable, List, Optional, Sequence, Tuple

import requests

from rankerbot.core.config import Config

logger = logging.getLogger(__name__)

# Rows of (button text, callback data)
Controls = Sequence[Sequence[Tuple[str, str]]]


class TelegramNotifier:
    """
    Sends messages through the Telegram Bot API.

    Never raises: failures are logged and reported as False.
    """

    def __init__(self, config: Config):
        self.config = config
        self.bot_token = config.telegram_bot_token

    @staticmethod
    def build_reply_markup(controls: Controls) -> dict:
        keyboard: List[List[dict]] = [
            [{"text": text, "callback_data": data} for text, data in row]
            for row in controls
        ]
        return {"inline_keyboard": keyboard}

    def send_message(self, chat_id: Hashable, text: str, controls: Optional[Controls] = None) -> bool:
        """
        Send a message with HTML formatting and optional callback buttons.

        Returns True if successful, False otherwise.
        """
        if not self.bot_token:
            logger.warning("Telegram not configured, skipping notification")
            return False

        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        payload = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        if controls:
            payload["reply_markup"] = self.build_reply_markup(controls)

        try:
            response = requests.post(url, json=payload, timeout=10)
            response.raise_for_status()

            logger.debug(f"Telegram message sent to {chat_id}")
            return True

        except requests.RequestException as e:
            logger.error(f"Telegram message failed: {e}")
            return False

    async def send(self, chat_id: Hashable, text: str, controls: Optional[Controls] = None) -> bool:
        return await asyncio.to_thread(self.send_message, chat_id, text, controls)

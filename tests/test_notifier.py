"""
Tests for Telegram notifications with requests.post patched.
"""

import asyncio
from unittest.mock import MagicMock, patch
import sys
from pathlib import Path

import requests

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from rankerbot.core.config import Config
from rankerbot.notify.telegram import TelegramNotifier


class TestTelegramNotifier:
    """Delivery and failure reporting."""

    def test_not_configured(self):
        notifier = TelegramNotifier(Config())

        with patch("rankerbot.notify.telegram.requests.post") as post:
            assert notifier.send_message(1, "hi") is False
            post.assert_not_called()

    def test_message_with_controls(self):
        notifier = TelegramNotifier(Config(telegram_bot_token="token"))

        with patch("rankerbot.notify.telegram.requests.post") as post:
            post.return_value = MagicMock()
            ok = notifier.send_message(42, "<b>hi</b>", [[("🛑 Stop Bot", "stop_volume_Mint")]])

        assert ok is True
        url = post.call_args.args[0]
        payload = post.call_args.kwargs["json"]
        assert url == "https://api.telegram.org/bottoken/sendMessage"
        assert payload["chat_id"] == 42
        assert payload["parse_mode"] == "HTML"
        assert payload["reply_markup"] == {
            "inline_keyboard": [[{"text": "🛑 Stop Bot", "callback_data": "stop_volume_Mint"}]]
        }

    def test_delivery_failure_is_false(self):
        notifier = TelegramNotifier(Config(telegram_bot_token="token"))

        with patch("rankerbot.notify.telegram.requests.post", side_effect=requests.Timeout("slow")):
            assert asyncio.run(notifier.send(42, "hi")) is False

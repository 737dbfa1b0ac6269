"""
Tests for the Telegram control surface with updates and the scheduler mocked.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock
import sys
from pathlib import Path

import pytest

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from rankerbot.core.config import Config
from rankerbot.core.conversation import InputKind
from rankerbot.core.models import ProjectStatus
from rankerbot.core.store import ProjectRecord
from rankerbot.notify.telegram_bot import TelegramBotHandler

MINT = "TokenMint111111111111111111111111111111111"
DEV = "DevWallet1111111111111111111111111111111111"


def make_handler(settings=None):
    config = Config(telegram_bot_token="token", dev_wallet=DEV, maker_packages=[(5, 0.08), (25, 0.35)])
    scheduler = MagicMock()
    scheduler.watch_for_payment = AsyncMock()
    scheduler.store.get.return_value = ProjectRecord(
        owner_id=1,
        token_mint=MINT,
        token_name="TEST",
        status=ProjectStatus.ONBOARDED,
        volume_custom_settings=dict(settings or {}),
    )
    return TelegramBotHandler(config, scheduler)


def make_update(callback_data=None, text=None):
    update = MagicMock()
    update.effective_user.id = 1
    update.effective_chat.id = 10
    update.callback_query.data = callback_data
    update.callback_query.answer = AsyncMock()
    update.callback_query.message.reply_text = AsyncMock()
    update.callback_query.message.reply_html = AsyncMock()
    update.message.text = text
    update.message.reply_text = AsyncMock()
    return update


class TestBuyMakers:
    """Maker package purchase buttons."""

    def test_price_comes_from_config(self):
        handler = make_handler()
        update = make_update(callback_data=f"buy_makers|{MINT}|25")

        asyncio.run(handler.buy_makers_callback(update, MagicMock()))

        kwargs = handler.scheduler.watch_for_payment.call_args.kwargs
        assert kwargs["quantity"] == 25
        assert kwargs["cost"] == 0.35
        assert "<code>0.35</code>" in update.callback_query.message.reply_html.call_args.args[0]

    def test_price_in_callback_is_ignored(self):
        """A client-supplied price cannot lower the amount due."""
        handler = make_handler()
        update = make_update(callback_data=f"buy_makers|{MINT}|25|0")

        asyncio.run(handler.buy_makers_callback(update, MagicMock()))

        handler.scheduler.watch_for_payment.assert_not_called()
        update.callback_query.answer.assert_called_once_with("Invalid callback")

    @pytest.mark.parametrize("qty", ["7", "0", "-5", "abc"])
    def test_unlisted_quantity_rejected(self, qty):
        handler = make_handler()
        update = make_update(callback_data=f"buy_makers|{MINT}|{qty}")

        asyncio.run(handler.buy_makers_callback(update, MagicMock()))

        handler.scheduler.watch_for_payment.assert_not_called()

    def test_menu_buttons_carry_no_price(self):
        handler = make_handler()
        update = make_update()
        update.message.reply_html = AsyncMock()
        context = MagicMock()
        context.args = [MINT]

        asyncio.run(handler.cmd_buymakers(update, context))

        markup = update.message.reply_html.call_args.kwargs["reply_markup"]
        data = [row[0].callback_data for row in markup.inline_keyboard]
        assert data == [f"buy_makers|{MINT}|5", f"buy_makers|{MINT}|25"]


class TestSettingInput:
    """Free-text replies to a setting prompt."""

    def send(self, handler, setting, text):
        handler.conversation.expect(10, InputKind.SETTING, setting=setting, token_mint=MINT)
        update = make_update(text=text)
        asyncio.run(handler.handle_text(update, MagicMock()))
        return update

    def saved(self, handler):
        return handler.store.upsert.call_args.args[2]["volume_custom_settings"]

    def test_sell_only_ratio_allowed(self):
        """buy_ratio 0 is a valid sell-only session."""
        handler = make_handler()

        self.send(handler, "buy_ratio", "0")

        assert self.saved(handler) == {"buy_ratio": 0.0}

    def test_budget_switches_to_fixed(self):
        handler = make_handler()

        self.send(handler, "budget", "0.5")

        assert self.saved(handler) == {"budget": 0.5, "budget_mode": "fixed"}

    @pytest.mark.parametrize("text", ["off", "OFF", "0"])
    def test_budget_can_be_cleared(self, text):
        handler = make_handler({"budget": 0.5, "budget_mode": "fixed", "buy_min": 0.01, "buy_max": 0.02})

        self.send(handler, "budget", text)

        assert self.saved(handler) == {"budget_mode": "until_exhausted", "buy_min": 0.01, "buy_max": 0.02}

    def test_invalid_range_rejected(self):
        handler = make_handler()

        update = self.send(handler, "buy_min", "-1")

        handler.store.upsert.assert_not_called()
        assert update.message.reply_text.call_args.args[0].startswith("❌")

    @pytest.mark.parametrize("text", ["abc", "nan", "inf"])
    def test_not_a_number(self, text):
        handler = make_handler()

        update = self.send(handler, "buy_max", text)

        handler.store.upsert.assert_not_called()
        update.message.reply_text.assert_called_once_with("❌ Please send a number.")

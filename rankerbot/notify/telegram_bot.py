"""
Telegram bot handler for RankerBot.

Thin control surface: commands and button callbacks start and stop
volume sessions, manage wallets and kick off maker purchases. Free-text
replies are routed through the per-chat conversation tracker.
"""

import logging
import math
from typing import Optional

from solders.pubkey import Pubkey
from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from rankerbot.core.config import Config, ConfigError
from rankerbot.core.conversation import ConversationTracker, InputKind
from rankerbot.core.store import ProjectOwnershipError
from rankerbot.core.utils import short_address, tx_url
from rankerbot.trading.ledger import LedgerError
from rankerbot.trading.scheduler import Scheduler
from rankerbot.trading.session import SessionConfig

logger = logging.getLogger(__name__)

# Settings a user may change, with their button labels
SETTABLE = {
    "buy_min": "Buy Min (SOL)",
    "buy_max": "Buy Max (SOL)",
    "interval_min": "Interval Min (s)",
    "interval_max": "Interval Max (s)",
    "buy_ratio": "Buy Ratio (%)",
    "buy_slippage_bps": "Buy Slippage (bps)",
    "sell_slippage_bps": "Sell Slippage (bps)",
    "limit_trades": "Trade Limit",
    "budget": "Budget (SOL)",
}

INTEGER_SETTINGS = ("buy_slippage_bps", "sell_slippage_bps", "limit_trades")

# Replies that switch a project back to trading until its wallets run dry
BUDGET_OFF = ("off", "none", "0")


class TelegramBotHandler:
    """
    Handles Telegram bot interactions.

    All long-running work is delegated to the Scheduler.
    """

    def __init__(self, config: Config, scheduler: Scheduler, conversation: Optional[ConversationTracker] = None):
        self.config = config
        self.bot_token = config.telegram_bot_token
        self.scheduler = scheduler
        self.store = scheduler.store
        self.conversation = conversation or ConversationTracker()
        self.application: Optional[Application] = None

    @staticmethod
    def _mint_arg(context: ContextTypes.DEFAULT_TYPE) -> Optional[str]:
        return context.args[0] if context.args else None

    async def _require_mint(self, update: Update, context: ContextTypes.DEFAULT_TYPE, usage: str) -> Optional[str]:
        mint = self._mint_arg(context)
        if not mint:
            await update.message.reply_text(f"Usage: {usage}")
        return mint

    # =========================
    # Command Handlers
    # =========================

    async def cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /start command - welcome message."""
        await update.message.reply_html(
            "<b>Welcome to RankerBot!</b>\n\n"
            "Organic volume for your Solana token.\n\n"
            "/project &lt;mint&gt; [name] - onboard a token\n"
            "/wallets &lt;mint&gt; - wallet balances\n"
            "/settings &lt;mint&gt; - volume settings\n"
            "/volume &lt;mint&gt; - start a volume session\n"
            "/stop - stop the running session\n"
            "/distribute &lt;mint&gt; - fund makers from the project wallet\n"
            "/sellall &lt;mint&gt; - sell makers back into the project wallet\n"
            "/withdraw &lt;mint&gt; - withdraw the project wallet\n"
            "/buymakers &lt;mint&gt; - buy more maker wallets\n"
            "/cancel - cancel a pending input"
        )

    async def cmd_project(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /project <mint> [name] - onboard a token."""
        mint = await self._require_mint(update, context, "/project <mint> [name]")
        if not mint:
            return

        name = " ".join(context.args[1:]) or None
        user = update.effective_user
        try:
            project = self.scheduler.onboard_project(user.id, mint, token_name=name, owner_username=user.username)
        except ProjectOwnershipError as e:
            await update.message.reply_text(f"❌ {e}")
            return

        await update.message.reply_html(
            f"<b>Project ready:</b> {project.token_name or short_address(mint)}\n\n"
            f"Project wallet: <code>{project.project_wallet.pubkey}</code>\n"
            f"Maker wallets: {len(project.worker_wallets)}\n\n"
            "Fund the project wallet, then /distribute to the makers."
        )

    async def cmd_wallets(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /wallets <mint> - show balances."""
        mint = await self._require_mint(update, context, "/wallets <mint>")
        if not mint:
            return

        project = self.store.get(update.effective_user.id, mint)
        if project is None:
            await update.message.reply_text("Project not found.")
            return

        pool = self.scheduler.pool
        lines = ["<b>Wallets</b>\n"]
        if project.project_wallet:
            balance = await pool.balance_of(project.project_wallet.pubkey)
            lines.append(f"Project: <code>{project.project_wallet.pubkey}</code> {balance:.4f} SOL\n")
        for idx, wallet in enumerate(project.worker_wallets, 1):
            balance = await pool.balance_of(wallet.pubkey)
            lines.append(f"Maker {idx}: <code>{short_address(wallet.pubkey)}</code> {balance:.4f} SOL")

        await update.message.reply_html("\n".join(lines))

    async def cmd_settings(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /settings <mint> - show current settings with edit buttons."""
        mint = await self._require_mint(update, context, "/settings <mint>")
        if not mint:
            return

        project = self.store.get(update.effective_user.id, mint)
        if project is None:
            await update.message.reply_text("Project not found.")
            return

        try:
            cfg = SessionConfig.build(mint, project.volume_custom_settings, self.config.volume_defaults)
        except ConfigError as e:
            await update.message.reply_text(f"⚠️ Saved settings are invalid: {e}")
            cfg = None

        text = "<b>Volume Settings</b>\n"
        if cfg is not None:
            text += (
                f"\nBuy: {cfg.buy_min} - {cfg.buy_max} SOL"
                f"\nInterval: {cfg.interval_min} - {cfg.interval_max} s"
                f"\nBuy Ratio: {cfg.buy_ratio:.0f}% / Sell {cfg.sell_ratio:.0f}%"
                f"\nSlippage: {cfg.buy_slippage_bps} / {cfg.sell_slippage_bps} bps"
                f"\nTrade Limit: {cfg.limit_trades}"
                f"\nBudget: {cfg.budget_mode.value}"
                + (f" ({cfg.budget} SOL)" if cfg.budget else "")
            )

        keys = list(SETTABLE)
        keyboard = [
            [InlineKeyboardButton(SETTABLE[k], callback_data=f"set_{k}|{mint}") for k in keys[i:i + 2]]
            for i in range(0, len(keys), 2)
        ]
        await update.message.reply_html(text, reply_markup=InlineKeyboardMarkup(keyboard))

    async def cmd_volume(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /volume <mint> - start a session for this chat."""
        mint = await self._require_mint(update, context, "/volume <mint>")
        if not mint:
            return
        await self.scheduler.start_session(update.effective_chat.id, update.effective_user.id, mint)

    async def cmd_stop(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /stop command."""
        if self.scheduler.stop_session(update.effective_chat.id):
            await update.message.reply_text("🛑 Stopping after the current trade...")
        else:
            await update.message.reply_text("No volume session is running.")

    async def cmd_withdraw(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /withdraw <mint> - ask for the destination address."""
        mint = await self._require_mint(update, context, "/withdraw <mint>")
        if not mint:
            return
        if self.store.get(update.effective_user.id, mint) is None:
            await update.message.reply_text("Project not found.")
            return

        self.conversation.expect(update.effective_chat.id, InputKind.WITHDRAW_ADDRESS, token_mint=mint)
        await update.message.reply_text("Send the address to withdraw all SOL from the project wallet to:")

    async def cmd_distribute(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /distribute <mint>."""
        mint = await self._require_mint(update, context, "/distribute <mint>")
        if not mint:
            return

        try:
            signature = await self.scheduler.distribute(update.effective_user.id, mint)
        except (LookupError, LedgerError) as e:
            await update.message.reply_text(f"❌ Distribution failed: {e}")
            return

        if signature:
            await update.message.reply_html(f'✅ SOL distributed to makers. <a href="{tx_url(signature)}">View Tx</a>')
        else:
            await update.message.reply_text("Not enough SOL in the project wallet to cover fees and rent.")

    async def cmd_sellall(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /sellall <mint>."""
        mint = await self._require_mint(update, context, "/sellall <mint>")
        if not mint:
            return

        await update.message.reply_text("Selling all maker wallets, this can take a while...")
        try:
            logs = await self.scheduler.sell_all(update.effective_user.id, mint)
        except LookupError as e:
            await update.message.reply_text(f"❌ {e}")
            return

        await update.message.reply_text("\n".join(logs) or "No maker wallets.", disable_web_page_preview=True)

    async def cmd_buymakers(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /buymakers <mint> - show maker packages."""
        mint = await self._require_mint(update, context, "/buymakers <mint>")
        if not mint:
            return

        keyboard = [
            [InlineKeyboardButton(f"{qty} More - {cost} SOL", callback_data=f"buy_makers|{mint}|{qty}")]
            for qty, cost in self.config.maker_packages
        ]
        await update.message.reply_html(
            "<b>Buy Market Maker wallets</b>\nMaker wallets are for life!",
            reply_markup=InlineKeyboardMarkup(keyboard),
        )

    async def cmd_cancel(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /cancel command."""
        if self.conversation.cancel(update.effective_chat.id):
            await update.message.reply_text("Cancelled.")
        else:
            await update.message.reply_text("Nothing to cancel.")

    # =========================
    # Callback Handlers
    # =========================

    async def stop_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle the Stop Bot button."""
        query = update.callback_query
        if self.scheduler.stop_session(update.effective_chat.id):
            await query.answer("Stopping after the current trade...")
        else:
            await query.answer("No volume session is running.")

    async def setting_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle set_<setting>|<mint> buttons."""
        query = update.callback_query
        setting, _, mint = query.data[len("set_"):].partition("|")
        if setting not in SETTABLE or not mint:
            await query.answer("Invalid callback")
            return

        await query.answer()
        self.conversation.expect(update.effective_chat.id, InputKind.SETTING, setting=setting, token_mint=mint)
        prompt = f"Send the new value for {SETTABLE[setting]}:"
        if setting == "budget":
            prompt += " (send off to trade until the wallets run dry)"
        await query.message.reply_text(prompt)

    async def buy_makers_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle buy_makers|<mint>|<qty> buttons. The price always comes from config."""
        query = update.callback_query
        parts = query.data.split("|")
        if len(parts) != 3 or not parts[2].isdigit():
            await query.answer("Invalid callback")
            return

        _, mint, qty = parts
        quantity = int(qty)
        cost = self.config.maker_package_cost(quantity)
        if cost is None:
            await query.answer("Unknown package")
            return
        await query.answer()

        try:
            await self.scheduler.watch_for_payment(
                requester_id=update.effective_user.id,
                channel_id=update.effective_chat.id,
                owner_id=update.effective_user.id,
                token_mint=mint,
                quantity=quantity,
                cost=cost,
            )
        except ValueError as e:
            await query.message.reply_text(f"❌ Cannot take payments right now: {e}")
            return

        await query.message.reply_html(
            f"To buy <b>{quantity}</b> more Market Makers for <b>{cost} SOL</b>:\n\n"
            f"Send <b>exactly</b> <code>{cost}</code> SOL to:\n<code>{self.config.dev_wallet}</code>\n\n"
            "<i>This payment will be detected automatically.</i>\n\n"
            "⏳ <b>Waiting for your payment...</b>"
        )

    # =========================
    # Text input
    # =========================

    async def handle_text(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Route a free-text message according to what the chat is waiting for."""
        chat_id = update.effective_chat.id
        awaiting = self.conversation.consume(chat_id)
        if awaiting is None:
            return

        text = update.message.text.strip()
        if awaiting.kind == InputKind.SETTING:
            await self._apply_setting(update, awaiting.context["token_mint"], awaiting.context["setting"], text)
        elif awaiting.kind == InputKind.WITHDRAW_ADDRESS:
            await self._withdraw_to(update, awaiting.context["token_mint"], text)

    async def _apply_setting(self, update: Update, mint: str, setting: str, text: str):
        owner_id = update.effective_user.id
        project = self.store.get(owner_id, mint)
        if project is None:
            await update.message.reply_text("Project not found.")
            return

        candidate = dict(project.volume_custom_settings)
        if setting == "budget" and text.lower() in BUDGET_OFF:
            candidate.pop("budget", None)
            candidate["budget_mode"] = "until_exhausted"
            value = "off"
        else:
            try:
                value = float(text)
            except ValueError:
                value = None
            if value is None or not math.isfinite(value):
                await update.message.reply_text("❌ Please send a number.")
                return
            if setting in INTEGER_SETTINGS:
                value = int(value)
            candidate[setting] = value
            if setting == "budget":
                candidate["budget_mode"] = "fixed"

        # range checks live in SessionConfig
        try:
            SessionConfig.build(mint, candidate, self.config.volume_defaults)
        except ConfigError as e:
            await update.message.reply_text(f"❌ {e}")
            return

        self.store.upsert(owner_id, mint, {"volume_custom_settings": candidate})
        await update.message.reply_text(f"✅ {SETTABLE[setting]} set to {value}. Applies to the next session.")

    async def _withdraw_to(self, update: Update, mint: str, address: str):
        try:
            Pubkey.from_string(address)
        except ValueError:
            await update.message.reply_text("❌ That is not a valid Solana address.")
            return

        try:
            signature = await self.scheduler.withdraw(update.effective_user.id, mint, address)
        except (LookupError, LedgerError) as e:
            await update.message.reply_text(f"❌ Withdrawal failed: {e}")
            return

        if signature:
            await update.message.reply_html(f'✅ Withdrawn. <a href="{tx_url(signature)}">View Tx</a>')
        else:
            await update.message.reply_text("Nothing to withdraw: balance does not cover the fee.")

    # =========================
    # Application Setup
    # =========================

    def build_application(self) -> Application:
        """Build and configure the Telegram application."""
        self.application = Application.builder().token(self.bot_token).build()

        # Command handlers
        self.application.add_handler(CommandHandler("start", self.cmd_start))
        self.application.add_handler(CommandHandler("help", self.cmd_start))
        self.application.add_handler(CommandHandler("project", self.cmd_project))
        self.application.add_handler(CommandHandler("wallets", self.cmd_wallets))
        self.application.add_handler(CommandHandler("settings", self.cmd_settings))
        self.application.add_handler(CommandHandler("volume", self.cmd_volume))
        self.application.add_handler(CommandHandler("stop", self.cmd_stop))
        self.application.add_handler(CommandHandler("withdraw", self.cmd_withdraw))
        self.application.add_handler(CommandHandler("distribute", self.cmd_distribute))
        self.application.add_handler(CommandHandler("sellall", self.cmd_sellall))
        self.application.add_handler(CommandHandler("buymakers", self.cmd_buymakers))
        self.application.add_handler(CommandHandler("cancel", self.cmd_cancel))

        # Callback handlers
        self.application.add_handler(
            CallbackQueryHandler(self.stop_callback, pattern="^stop_volume_")
        )
        self.application.add_handler(
            CallbackQueryHandler(self.setting_callback, pattern="^set_")
        )
        self.application.add_handler(
            CallbackQueryHandler(self.buy_makers_callback, pattern=r"^buy_makers\|")
        )

        # Single free-text handler
        self.application.add_handler(
            MessageHandler(filters.TEXT & ~filters.COMMAND, self.handle_text)
        )

        return self.application

    async def start_polling(self):
        """Start the bot with polling."""
        if not self.application:
            self.build_application()

        logger.info("Starting Telegram bot polling...")
        await self.application.initialize()
        await self.application.start()
        await self.application.updater.start_polling(drop_pending_updates=True)

    async def stop(self):
        """Stop the bot and every background task."""
        await self.scheduler.shutdown()
        if self.application:
            await self.application.updater.stop()
            await self.application.stop()
            await self.application.shutdown()
            logger.info("Telegram bot stopped")

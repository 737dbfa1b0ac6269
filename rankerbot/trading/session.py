"""
Volume session engine for RankerBot.

Runs one trading session for a project: picks a funded worker wallet,
draws a random direction and size, swaps through Jupiter and reports
each trade, until stopped, out of funds, or at the trade ceiling.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Hashable, List, Optional, Sequence, Tuple

from rankerbot.core.config import DEFAULT_VOLUME_SETTINGS, ConfigError
from rankerbot.core.utils import short_address, to_base_units, tx_url
from rankerbot.trading.jupiter import SOL_MINT, JupiterSwap
from rankerbot.trading.ledger import DEFAULT_TOKEN_DECIMALS, LedgerClient, LedgerError
from rankerbot.trading.pool import WalletPool
from rankerbot.trading.pricing import PriceService
from rankerbot.trading.wallet import Wallet

logger = logging.getLogger(__name__)

SOL_DECIMALS = 9

# Buy amounts are drawn at this precision
AMOUNT_PRECISION = 4


class BudgetMode(str, Enum):
    """How a session decides it has run out of money."""
    UNTIL_EXHAUSTED = "until_exhausted"
    FIXED = "fixed"


class Outcome(Enum):
    """Result of one session iteration."""
    TRADED = "traded"
    FAILED = "failed"
    SKIPPED = "skipped"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class SessionConfig:
    """Trade parameters for one session. Amounts in SOL, waits in seconds."""
    token_mint: str
    buy_min: float
    buy_max: float
    buy_slippage_bps: int
    sell_slippage_bps: int
    interval_min: float
    interval_max: float
    buy_ratio: float
    limit_trades: int
    min_sol_balance: float
    min_sell_balance: float
    fee_buffer: float = 0.001
    retry_delay: float = 1.0
    budget_mode: BudgetMode = BudgetMode.UNTIL_EXHAUSTED
    budget: Optional[float] = None

    @property
    def sell_ratio(self) -> float:
        return 100 - self.buy_ratio

    @classmethod
    def build(
        cls,
        token_mint: str,
        custom_settings: Optional[Dict[str, Any]] = None,
        defaults: Optional[Dict[str, Any]] = None,
    ) -> "SessionConfig":
        """
        Build a session config from defaults overridden by saved settings.

        Args:
            token_mint: Token traded against SOL
            custom_settings: Project's volume_custom_settings; unknown keys are ignored
            defaults: Template defaults (built-in defaults when omitted)

        Raises:
            ConfigError: a value is malformed or the combination is inconsistent
        """
        merged = dict(DEFAULT_VOLUME_SETTINGS)
        merged.update(defaults or {})
        for key, value in (custom_settings or {}).items():
            if key in merged:
                merged[key] = value

        try:
            budget = merged.get("budget")
            config = cls(
                token_mint=token_mint,
                buy_min=float(merged["buy_min"]),
                buy_max=float(merged["buy_max"]),
                buy_slippage_bps=int(merged["buy_slippage_bps"]),
                sell_slippage_bps=int(merged["sell_slippage_bps"]),
                interval_min=float(merged["interval_min"]),
                interval_max=float(merged["interval_max"]),
                buy_ratio=float(merged["buy_ratio"]),
                limit_trades=int(merged["limit_trades"]),
                min_sol_balance=float(merged["min_sol_balance"]),
                min_sell_balance=float(merged["min_sell_balance"]),
                fee_buffer=float(merged["fee_buffer"]),
                retry_delay=float(merged["retry_delay"]),
                budget_mode=BudgetMode(merged["budget_mode"]),
                budget=float(budget) if budget is not None else None,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid volume setting: {e}") from e

        config.validate()
        return config

    def validate(self) -> None:
        if self.buy_min <= 0 or self.buy_min > self.buy_max:
            raise ConfigError(f"Buy range invalid: {self.buy_min} - {self.buy_max}")
        if self.interval_min < 0 or self.interval_min > self.interval_max:
            raise ConfigError(f"Interval range invalid: {self.interval_min} - {self.interval_max}")
        if not 0 <= self.buy_ratio <= 100:
            raise ConfigError(f"Buy ratio must be between 0 and 100, got {self.buy_ratio}")
        if self.limit_trades < 0:
            raise ConfigError(f"Trade limit cannot be negative: {self.limit_trades}")
        if self.buy_slippage_bps < 0 or self.sell_slippage_bps < 0:
            raise ConfigError("Slippage cannot be negative")
        if self.budget_mode == BudgetMode.FIXED and not (self.budget and self.budget > 0):
            raise ConfigError("Fixed budget mode needs a positive budget")


@dataclass
class SessionState:
    """Live state of one running session."""
    session_id: Hashable
    token_mint: str
    trade_count: int = 0
    volume: float = 0.0
    last_index: int = -1
    last_address: Optional[str] = None
    budget_remaining: Optional[float] = None
    stop_requested: bool = False
    end_reason: Optional[str] = None
    stop_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def request_stop(self) -> None:
        """Ask the loop to stop before its next iteration."""
        self.stop_requested = True
        self.stop_event.set()


def stop_controls(token_mint: str) -> List[List[Tuple[str, str]]]:
    return [[("🛑 Stop Bot", f"stop_volume_{token_mint}")]]


class SessionEngine:
    """
    Drives one volume session.

    Trades are strictly sequential. A stop request is honored at the top
    of the next iteration; it cuts the wait between trades short but never
    interrupts a trade already in flight.
    """

    def __init__(
        self,
        state: SessionState,
        config: SessionConfig,
        workers: Sequence[Wallet],
        pool: WalletPool,
        swap: JupiterSwap,
        ledger: LedgerClient,
        notifier,
        price_service: Optional[PriceService] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize session engine.

        Args:
            state: Session state, shared with whoever may stop the session
            config: Frozen trade parameters
            workers: Worker wallets, in project order
            pool: Balance queries
            swap: Jupiter client
            ledger: Signs, submits and confirms swaps
            notifier: Anything with async send(chat_id, text, controls=None)
            price_service: SOL/USD price for the summary
            rng: Random source for direction, size and waits
        """
        self.state = state
        self.config = config
        self.workers = list(workers)
        self.pool = pool
        self.swap = swap
        self.ledger = ledger
        self.notifier = notifier
        self.price_service = price_service
        self.rng = rng or random.Random()
        self.token_decimals = DEFAULT_TOKEN_DECIMALS

        if config.budget_mode == BudgetMode.FIXED:
            self.state.budget_remaining = config.budget

    async def _notify(self, text: str, controls=None) -> None:
        await self.notifier.send(self.state.session_id, text, controls)

    async def _load_decimals(self) -> int:
        try:
            return await self.ledger.get_mint_decimals(self.config.token_mint)
        except LedgerError as e:
            logger.warning(f"Using {DEFAULT_TOKEN_DECIMALS} decimals for {self.config.token_mint}: {e}")
            return DEFAULT_TOKEN_DECIMALS

    async def _wait(self, seconds: float) -> None:
        """Sleep, waking early if a stop is requested."""
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self.state.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # =========================
    # Main loop
    # =========================

    async def run(self) -> SessionState:
        """Run until stopped, exhausted or at the trade ceiling. Never raises."""
        state = self.state
        cfg = self.config
        logger.info(
            f"Session {state.session_id} started for {cfg.token_mint} "
            f"with {len(self.workers)} workers ({cfg.budget_mode.value})"
        )

        try:
            await self._notify(
                "⏳ Volume bot is now running! You can stop at any time:",
                stop_controls(cfg.token_mint),
            )
            self.token_decimals = await self._load_decimals()

            while True:
                if state.stop_requested:
                    state.end_reason = "stopped"
                    break
                if state.trade_count >= cfg.limit_trades:
                    state.end_reason = "trade limit reached"
                    break

                try:
                    outcome = await self._iterate()
                except Exception as e:
                    logger.error(f"Session {state.session_id} iteration error: {e}")
                    outcome = Outcome.SKIPPED

                if outcome == Outcome.EXHAUSTED:
                    break
                if outcome == Outcome.SKIPPED:
                    await self._wait(cfg.retry_delay)
                else:
                    await self._wait(self.rng.uniform(cfg.interval_min, cfg.interval_max))
        except asyncio.CancelledError:
            state.end_reason = state.end_reason or "cancelled"
            raise
        except Exception as e:
            logger.error(f"Session {state.session_id} aborted: {e}")
            state.end_reason = f"error: {e}"
        finally:
            await self._send_summary()

        return state

    async def _eligible(self) -> List[Tuple[Wallet, Optional[float]]]:
        """Workers allowed to trade this iteration, with their SOL balance if known."""
        if self.config.budget_mode == BudgetMode.FIXED:
            return [(w, None) for w in self.workers]

        funded = []
        for wallet in self.workers:
            balance = await self.pool.balance_of(wallet.address)
            if balance >= self.config.min_sol_balance:
                funded.append((wallet, balance))
        return funded

    def _select(self, candidates: List[Tuple[Wallet, Optional[float]]]) -> Tuple[Wallet, Optional[float]]:
        """Round-robin over the candidates, never repeating the last wallet when there is a choice."""
        state = self.state
        idx = (state.last_index + 1) % len(candidates)
        if len(candidates) > 1 and candidates[idx][0].address == state.last_address:
            idx = (idx + 1) % len(candidates)

        state.last_index = idx
        state.last_address = candidates[idx][0].address
        return candidates[idx]

    async def _can_still_trade(self) -> bool:
        """Whether any worker could place a trade the session is configured to make."""
        cfg = self.config
        min_buy_balance = cfg.buy_min + cfg.min_sol_balance + cfg.fee_buffer
        for wallet in self.workers:
            if cfg.buy_ratio > 0 and await self.pool.balance_of(wallet.address) >= min_buy_balance:
                return True
            if cfg.sell_ratio > 0:
                units = await self.pool.token_units_of(wallet.address, cfg.token_mint)
                if units > 0 and units / 10 ** self.token_decimals >= cfg.min_sell_balance:
                    return True
        return False

    async def _skip(self) -> Outcome:
        """Skip this iteration, or end a fixed-budget session whose workers are all spent."""
        state = self.state
        if self.config.budget_mode == BudgetMode.FIXED and not await self._can_still_trade():
            state.end_reason = "no funded wallets"
            logger.info(f"Session {state.session_id}: no worker can cover a trade")
            return Outcome.EXHAUSTED
        return Outcome.SKIPPED

    async def _iterate(self) -> Outcome:
        state = self.state
        cfg = self.config

        if cfg.budget_mode == BudgetMode.FIXED and state.budget_remaining < cfg.buy_min:
            state.end_reason = "budget spent"
            return Outcome.EXHAUSTED

        candidates = await self._eligible()
        if not candidates:
            state.end_reason = "no funded wallets"
            logger.info(f"Session {state.session_id}: no worker above {cfg.min_sol_balance} SOL")
            return Outcome.EXHAUSTED

        wallet, balance = self._select(candidates)
        is_buy = self.rng.random() * 100 < cfg.buy_ratio

        if is_buy:
            amount = round(self.rng.uniform(cfg.buy_min, cfg.buy_max), AMOUNT_PRECISION)
            if state.budget_remaining is not None:
                amount = min(amount, round(state.budget_remaining, AMOUNT_PRECISION))
            if balance is None:
                balance = await self.pool.balance_of(wallet.address)
            if balance < amount + cfg.min_sol_balance + cfg.fee_buffer:
                logger.debug(f"Skip buy {amount} SOL: {short_address(wallet.address)} holds {balance} SOL")
                return await self._skip()
            amount_units = to_base_units(amount, SOL_DECIMALS)
        else:
            # raw units so a full-balance sell never asks for more than is held
            amount_units = await self.pool.token_units_of(wallet.address, cfg.token_mint)
            amount = amount_units / 10 ** self.token_decimals
            if amount_units <= 0 or amount < cfg.min_sell_balance:
                logger.debug(f"Skip sell: {short_address(wallet.address)} holds {amount} tokens")
                return await self._skip()

        try:
            signature = await self._trade(wallet, is_buy, amount_units)
        except Exception as e:
            logger.warning(f"Trade failed for {short_address(wallet.address)}: {e}")
            await self._notify(f"❌ Trade failed: {e}")
            return Outcome.FAILED

        state.trade_count += 1
        if is_buy:
            state.volume += amount
            if state.budget_remaining is not None:
                state.budget_remaining = round(state.budget_remaining - amount, SOL_DECIMALS)

        side = "BUY" if is_buy else "SELL"
        unit = "SOL" if is_buy else "Token"
        logger.info(f"Session {state.session_id}: {side} {amount} {unit} via {short_address(wallet.address)} ({signature})")
        await self._notify(
            f"{side} | Amount: {amount} {unit}\n"
            f'<a href="{tx_url(signature)}">View Tx</a>\n'
            f"Trades: {state.trade_count}",
            stop_controls(cfg.token_mint),
        )
        return Outcome.TRADED

    async def _trade(self, wallet: Wallet, is_buy: bool, amount_units: int) -> str:
        """
        Quote, build, sign and submit one swap of amount_units of the input asset.

        Raises:
            SwapError, LedgerError
        """
        cfg = self.config
        if is_buy:
            input_mint, output_mint = SOL_MINT, cfg.token_mint
            slippage_bps = cfg.buy_slippage_bps
        else:
            input_mint, output_mint = cfg.token_mint, SOL_MINT
            slippage_bps = cfg.sell_slippage_bps

        quote = await self.swap.quote(input_mint, output_mint, amount_units, slippage_bps)
        tx_bytes = await self.swap.build_swap_transaction(quote, wallet.address)
        result = await self.ledger.execute(tx_bytes, wallet.keypair)
        if not result.success:
            raise LedgerError(result.error or "Transaction failed")
        return result.signature

    async def _send_summary(self) -> None:
        state = self.state
        usd = ""
        if self.price_service is not None:
            try:
                price = await self.price_service.sol_price_usd()
            except Exception as e:
                logger.debug(f"SOL price unavailable: {e}")
                price = None
            if price:
                usd = f" (~${state.volume * price:,.2f} USD)"

        logger.info(
            f"Session {state.session_id} ended ({state.end_reason}): "
            f"{state.trade_count} trades, {state.volume:.4f} SOL"
        )
        await self._notify(
            "✅ Volume session complete!\n\n"
            f"Total trades: {state.trade_count}\n"
            f"Total volume generated: <b>{state.volume:.4f} SOL</b>{usd}"
        )

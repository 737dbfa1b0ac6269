"""
Payment detection for RankerBot.

Watches the dev wallet for an incoming SOL transfer of an expected
amount and fulfills the purchase exactly once.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Hashable, Optional, Set

from rankerbot.core.utils import LAMPORTS_PER_SOL, short_address
from rankerbot.trading.ledger import LedgerClient, LedgerTransaction, TransientLedgerError

logger = logging.getLogger(__name__)

# Reference-unit tolerance for fee and rounding noise
PAYMENT_TOLERANCE = 0.0001
HISTORY_LIMIT = 20


@dataclass
class PendingPayment:
    """A purchase waiting for its payment."""
    requester_id: Hashable
    token_mint: str
    quantity: int
    expected_amount: float  # SOL
    started_at: float
    checkpoint: Optional[int] = None
    fulfilled: bool = False


OnMatch = Callable[[PendingPayment, LedgerTransaction], Awaitable[Optional[str]]]


class PaymentWatcher:
    """
    Polls the monitored address until a matching deposit or timeout.

    Only transactions in slots after the checkpoint taken at start are
    eligible. Query errors never end the watch; they count as no match
    for that cycle.
    """

    def __init__(
        self,
        pending: PendingPayment,
        channel_id: Hashable,
        monitored_address: str,
        ledger: LedgerClient,
        notifier,
        on_match: OnMatch,
        poll_interval: float = 5.0,
        timeout: float = 600.0,
        tolerance: float = PAYMENT_TOLERANCE,
        history_limit: int = HISTORY_LIMIT,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize payment watcher.

        Args:
            pending: Purchase being paid for; started_at must come from clock
            channel_id: Where progress is reported
            monitored_address: Address receiving the payment
            ledger: History and transaction queries
            notifier: Anything with async send(chat_id, text, controls=None)
            on_match: Fulfillment, called at most once; may return a success message
            poll_interval: Seconds between polls
            timeout: Seconds from start until the watch expires
            tolerance: Accepted difference from the expected amount, in SOL
            history_limit: Transactions fetched per poll
            clock: Monotonic time source
        """
        self.pending = pending
        self.channel_id = channel_id
        self.monitored_address = monitored_address
        self.ledger = ledger
        self.notifier = notifier
        self.on_match = on_match
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.tolerance = tolerance
        self.history_limit = history_limit
        self.clock = clock
        self.stopped = False
        self._seen: Set[str] = set()

    def stop(self) -> None:
        self.stopped = True

    def matches(self, tx: LedgerTransaction) -> bool:
        """Whether a transaction credits the monitored address with the expected amount."""
        delta = tx.balance_delta(self.monitored_address)
        if delta is None or delta <= 0:
            return False
        received = delta / LAMPORTS_PER_SOL
        return abs(received - self.pending.expected_amount) < self.tolerance

    async def _take_checkpoint(self) -> None:
        self.pending.checkpoint = await self.ledger.current_checkpoint()
        logger.info(
            f"Watching {short_address(self.monitored_address)} for {self.pending.expected_amount} SOL "
            f"from {self.pending.requester_id} after slot {self.pending.checkpoint}"
        )

    async def poll_once(self) -> Optional[LedgerTransaction]:
        """
        One poll cycle.

        Returns:
            The matching transaction, or None

        Raises:
            LedgerError: history or transaction query failed
        """
        if self.pending.checkpoint is None:
            await self._take_checkpoint()
            return None

        refs = await self.ledger.get_recent_transaction_refs(self.monitored_address, limit=self.history_limit)
        for ref in refs:
            if ref.slot <= self.pending.checkpoint or ref.failed or ref.signature in self._seen:
                continue

            tx = await self.ledger.get_transaction(ref.signature)
            if tx is None:
                # not finalized yet, look again next cycle
                continue
            self._seen.add(ref.signature)

            if self.matches(tx):
                return tx
        return None

    async def run(self) -> bool:
        """
        Watch until fulfilled, expired or stopped.

        Returns:
            True if the payment was found
        """
        if self.pending.checkpoint is None:
            try:
                await self._take_checkpoint()
            except Exception as e:
                logger.warning(f"Checkpoint unavailable, retrying next cycle: {e}")

        while not self.stopped:
            await asyncio.sleep(self.poll_interval)
            if self.stopped:
                break

            if self.clock() - self.pending.started_at > self.timeout:
                logger.info(f"Payment window expired for {self.pending.requester_id}")
                self.stopped = True
                await self.notifier.send(self.channel_id, "❌ Payment window expired. Please try again.")
                return False

            try:
                tx = await self.poll_once()
            except TransientLedgerError as e:
                logger.debug(f"Payment poll: history not available yet: {e}")
                continue
            except Exception as e:
                logger.error(f"Payment poll error: {e}")
                continue

            if tx is not None:
                await self._fulfill(tx)
                return True

        return False

    async def _fulfill(self, tx: LedgerTransaction) -> None:
        pending = self.pending
        pending.fulfilled = True
        self.stopped = True
        logger.info(f"Payment {tx.signature} matched for {pending.requester_id} ({pending.expected_amount} SOL)")

        try:
            message: Any = await self.on_match(pending, tx)
        except Exception as e:
            logger.error(f"Fulfillment failed for payment {tx.signature}: {e}")
            await self.notifier.send(
                self.channel_id,
                f"⚠️ Payment received but fulfillment failed: {e}\nPlease contact support with tx {tx.signature}.",
            )
            return

        await self.notifier.send(self.channel_id, message or "✅ Payment received!")

"""
Unit tests for payment detection.

The ledger is mocked; polls run back to back and a counting clock
drives the payment window.
"""

import asyncio
import itertools
from unittest.mock import AsyncMock, MagicMock
import sys
from pathlib import Path

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from rankerbot.trading.ledger import LedgerError, LedgerTransaction, TransactionRef, TransientLedgerError
from rankerbot.trading.payments import PaymentWatcher, PendingPayment

DEV = "DevWallet1111111111111111111111111111111111"
MINT = "TokenMint111111111111111111111111111111111"


def deposit(signature, slot, lamports, to=DEV):
    """Transaction moving lamports from a payer to `to`."""
    return LedgerTransaction(
        signature=signature,
        slot=slot,
        account_keys=["Payer", to],
        pre_balances=[2_000_000_000, 1_000_000_000],
        post_balances=[2_000_000_000 - lamports - 5000, 1_000_000_000 + lamports],
    )


class Harness:
    """Payment watcher wired to a mocked ledger."""

    def __init__(self, txs=(), refs=None, expected=0.08, checkpoint=100, timeout=1000):
        self.txs = {tx.signature: tx for tx in txs}
        if refs is None:
            refs = [TransactionRef(signature=tx.signature, slot=tx.slot) for tx in txs]

        self.ledger = MagicMock()
        self.ledger.current_checkpoint = AsyncMock(return_value=100)
        self.ledger.get_recent_transaction_refs = AsyncMock(return_value=refs)
        self.ledger.get_transaction = AsyncMock(side_effect=lambda sig: self.txs.get(sig))

        self.notifier = MagicMock()
        self.notifier.send = AsyncMock(return_value=True)

        self.on_match = AsyncMock(return_value="✅ Payment received! 5 makers added.")

        self.pending = PendingPayment(
            requester_id=9,
            token_mint=MINT,
            quantity=5,
            expected_amount=expected,
            started_at=0,
            checkpoint=checkpoint,
        )
        counter = itertools.count()
        self.watcher = PaymentWatcher(
            pending=self.pending,
            channel_id=9,
            monitored_address=DEV,
            ledger=self.ledger,
            notifier=self.notifier,
            on_match=self.on_match,
            poll_interval=0,
            timeout=timeout,
            clock=lambda: next(counter),
        )

    def run(self):
        return asyncio.run(self.watcher.run())

    @property
    def messages(self):
        return [c.args[1] for c in self.notifier.send.call_args_list]


class TestAmountMatching:
    """Tolerance around the expected amount."""

    def test_just_outside_tolerance(self):
        """0.0799 against 0.08 does not match."""
        h = Harness()
        assert h.watcher.matches(deposit("a", 101, 79_900_000)) is False

    def test_within_tolerance(self):
        """0.08005 against 0.08 matches."""
        h = Harness()
        assert h.watcher.matches(deposit("a", 101, 80_050_000)) is True

    def test_exact_amount(self):
        h = Harness()
        assert h.watcher.matches(deposit("a", 101, 80_000_000)) is True

    def test_outgoing_transfer(self):
        """A debit of the same size is not a payment."""
        h = Harness()
        tx = LedgerTransaction(
            signature="out",
            slot=101,
            account_keys=[DEV, "Other"],
            pre_balances=[1_000_000_000, 0],
            post_balances=[920_000_000, 80_000_000],
        )
        assert h.watcher.matches(tx) is False

    def test_address_absent(self):
        h = Harness()
        assert h.watcher.matches(deposit("a", 101, 80_000_000, to="SomeoneElse")) is False

    def test_untouched_balance_never_matches(self):
        """A transaction that leaves the wallet unchanged is not a payment, even for a zero price."""
        h = Harness(expected=0.0)
        assert h.watcher.matches(deposit("a", 101, 0)) is False


class TestCheckpoint:
    """Only transactions after the checkpoint count."""

    def test_pre_checkpoint_payment_ignored(self):
        """Exact payments at or before the checkpoint never match."""
        h = Harness(txs=[deposit("old", 100, 80_000_000), deposit("older", 90, 80_000_000)], timeout=3)

        found = h.run()

        assert found is False
        h.on_match.assert_not_called()
        h.ledger.get_transaction.assert_not_called()
        assert h.messages == ["❌ Payment window expired. Please try again."]

    def test_checkpoint_taken_when_missing(self):
        """Without a checkpoint the watcher records the finalized slot first."""
        h = Harness(txs=[deposit("old", 100, 80_000_000), deposit("new", 101, 80_000_000)], checkpoint=None)

        found = h.run()

        assert found is True
        assert h.pending.checkpoint == 100
        h.on_match.assert_called_once()
        assert h.on_match.call_args.args[1].signature == "new"

    def test_checkpoint_retried_after_failure(self):
        """A failed checkpoint query is retried on the next cycle."""
        h = Harness(txs=[deposit("new", 101, 80_000_000)], checkpoint=None)
        h.ledger.current_checkpoint.side_effect = [LedgerError("getSlot: timeout"), 100]

        found = h.run()

        assert found is True
        assert h.pending.checkpoint == 100


class TestFulfillment:
    """Exactly-once fulfillment."""

    def test_single_fulfillment_with_two_matches(self):
        """Two matching transactions still fulfill once and polling stops."""
        h = Harness(txs=[deposit("p1", 105, 80_000_000), deposit("p2", 104, 80_000_000)])

        found = h.run()

        assert found is True
        assert h.on_match.call_count == 1
        assert h.ledger.get_recent_transaction_refs.call_count == 1
        assert h.pending.fulfilled is True
        assert h.messages == ["✅ Payment received! 5 makers added."]

    def test_mismatched_then_matching(self):
        """A wrong amount is skipped and the right one matched in the same cycle."""
        h = Harness(txs=[deposit("wrong", 106, 79_900_000), deposit("right", 105, 80_050_000)])

        found = h.run()

        assert found is True
        assert h.on_match.call_args.args[1].signature == "right"

    def test_fulfillment_failure_still_stops(self):
        """A failing callback is reported and never retried."""
        h = Harness(txs=[deposit("p1", 105, 80_000_000)])
        h.on_match.side_effect = RuntimeError("database locked")

        found = h.run()

        assert found is True
        assert h.on_match.call_count == 1
        assert "fulfillment failed: database locked" in h.messages[0]
        assert h.ledger.get_recent_transaction_refs.call_count == 1

    def test_default_success_message(self):
        h = Harness(txs=[deposit("p1", 105, 80_000_000)])
        h.on_match.return_value = None

        h.run()

        assert h.messages == ["✅ Payment received!"]


class TestPollingErrors:
    """Query failures never end the watch."""

    def test_transient_and_other_errors_swallowed(self):
        tx = deposit("p1", 105, 80_000_000)
        h = Harness(txs=[tx])
        h.ledger.get_recent_transaction_refs.side_effect = [
            TransientLedgerError("getSignaturesForAddress: Failed to query long-term storage"),
            LedgerError("getSignaturesForAddress: 503"),
            [TransactionRef(signature="p1", slot=105)],
        ]

        found = h.run()

        assert found is True
        assert h.on_match.call_count == 1
        assert h.ledger.get_recent_transaction_refs.call_count == 3

    def test_unavailable_transaction_fetched_again(self):
        """A transaction not yet finalized is looked up on the next cycle."""
        tx = deposit("p1", 105, 80_000_000)
        h = Harness(txs=[tx])
        h.ledger.get_transaction.side_effect = [None, tx]

        found = h.run()

        assert found is True
        assert h.ledger.get_transaction.call_count == 2

    def test_seen_transactions_not_refetched(self):
        h = Harness(txs=[deposit("small", 105, 1_000)], timeout=4)

        found = h.run()

        assert found is False
        assert h.ledger.get_recent_transaction_refs.call_count >= 2
        assert h.ledger.get_transaction.call_count == 1

    def test_failed_transactions_skipped(self):
        tx = deposit("p1", 105, 80_000_000)
        h = Harness(txs=[tx], refs=[TransactionRef(signature="p1", slot=105, failed=True)], timeout=2)

        found = h.run()

        assert found is False
        h.ledger.get_transaction.assert_not_called()


class TestStop:
    """Expiry and external stop."""

    def test_timeout_without_payment(self):
        h = Harness(txs=[], timeout=3)

        found = h.run()

        assert found is False
        h.on_match.assert_not_called()
        assert "expired" in h.messages[-1]

    def test_stop_ends_quietly(self):
        """A stopped watch ends after the current cycle with no message."""
        h = Harness(txs=[])

        def stop_watch(*args, **kwargs):
            h.watcher.stop()
            return []

        h.ledger.get_recent_transaction_refs.side_effect = stop_watch

        found = h.run()

        assert found is False
        assert h.ledger.get_recent_transaction_refs.call_count == 1
        h.notifier.send.assert_not_called()

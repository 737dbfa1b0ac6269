"""
Trading module for RankerBot.

Handles wallets, Jupiter swaps, volume sessions and payment detection.
"""

from rankerbot.trading.wallet import Wallet, WalletManager
from rankerbot.trading.ledger import LedgerClient, LedgerError, TransientLedgerError
from rankerbot.trading.jupiter import JupiterSwap, SwapError
from rankerbot.trading.pool import WalletPool
from rankerbot.trading.session import SessionConfig, SessionEngine, SessionState
from rankerbot.trading.payments import PaymentWatcher, PendingPayment
from rankerbot.trading.scheduler import Scheduler

__all__ = [
    "Wallet",
    "WalletManager",
    "LedgerClient",
    "LedgerError",
    "TransientLedgerError",
    "JupiterSwap",
    "SwapError",
    "WalletPool",
    "SessionConfig",
    "SessionEngine",
    "SessionState",
    "PaymentWatcher",
    "PendingPayment",
    "Scheduler",
]

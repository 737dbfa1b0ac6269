"""
Utility functions for RankerBot.
"""

from decimal import Decimal

LAMPORTS_PER_SOL = 1_000_000_000


def lamports_to_sol(lamports: int) -> float:
    """Convert lamports to SOL."""
    return lamports / LAMPORTS_PER_SOL


def to_base_units(amount: float, decimals: int) -> int:
    """
    Convert a UI amount to the asset's smallest integer unit.

    Rounds down so a trade never asks for more than the wallet holds.

    Examples:
        (0.006, 9) -> 6000000
        (12.5, 6) -> 12500000
    """
    return int(Decimal(str(amount)) * (10 ** decimals))


def short_address(address: str, size: int = 6) -> str:
    """Shorten an address like "AbC123...xYz789"."""
    if not address or len(address) <= size * 2:
        return address or ""
    return f"{address[:size]}...{address[-size:]}"


def tx_url(signature: str) -> str:
    """Explorer link for a transaction."""
    return f"https://solscan.io/tx/{signature}"

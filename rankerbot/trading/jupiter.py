"""
Jupiter V6 swap integration for RankerBot.

Fetches quotes and builds unsigned swap transactions. The HTTP calls
are blocking, so the async entry points run them in a worker thread.
"""

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Optional

import requests

logger = logging.getLogger(__name__)

# Jupiter API endpoints
JUPITER_QUOTE_API = "https://quote-api.jup.ag/v6/quote"
JUPITER_SWAP_API = "https://quote-api.jup.ag/v6/swap"

# Wrapped SOL mint address
SOL_MINT = "So11111111111111111111111111111111111111112"


class SwapError(Exception):
    """Quote or swap-build failure."""


@dataclass
class SwapQuote:
    """Quote from Jupiter for a swap."""
    input_mint: str
    output_mint: str
    in_amount: int  # smallest unit of input token
    out_amount: int  # smallest unit of output token
    price_impact_pct: float
    slippage_bps: int
    route_plan: list
    raw_quote: dict  # Full quote response for swap request


class JupiterSwap:
    """
    Jupiter V6 swap client.

    Handles quote fetching and swap transaction building.
    """

    def __init__(self, priority_fee: Optional[int] = None, timeout: int = 30):
        """
        Initialize Jupiter swap client.

        Args:
            priority_fee: Priority fee in lamports, None lets Jupiter decide
            timeout: HTTP timeout in seconds
        """
        self.priority_fee = priority_fee
        self.timeout = timeout
        self.session = requests.Session()

    def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> SwapQuote:
        """
        Get a swap quote from Jupiter.

        Args:
            input_mint: Input token mint address
            output_mint: Output token mint address
            amount: Amount in smallest unit (lamports for SOL)
            slippage_bps: Slippage tolerance in basis points (100 = 1%)

        Raises:
            SwapError: quote unavailable or malformed
        """
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": slippage_bps,
            "onlyDirectRoutes": "false",
            "asLegacyTransaction": "false",
        }

        try:
            response = self.session.get(JUPITER_QUOTE_API, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise SwapError(f"Jupiter quote request failed: {e}") from e

        if "error" in data:
            raise SwapError(f"Jupiter quote error: {data['error']}")

        try:
            in_amount = int(data["inAmount"])
            out_amount = int(data["outAmount"])
        except (KeyError, TypeError, ValueError) as e:
            raise SwapError(f"Malformed Jupiter quote: {e}") from e

        if in_amount == 0 or out_amount == 0:
            raise SwapError("Jupiter could not provide a quote.")

        return SwapQuote(
            input_mint=data["inputMint"],
            output_mint=data["outputMint"],
            in_amount=in_amount,
            out_amount=out_amount,
            price_impact_pct=float(data.get("priceImpactPct", 0)),
            slippage_bps=slippage_bps,
            route_plan=data.get("routePlan", []),
            raw_quote=data,
        )

    def get_swap_transaction(self, quote: SwapQuote, user_pubkey: str) -> bytes:
        """
        Get an unsigned swap transaction from Jupiter.

        Args:
            quote: Quote from get_quote()
            user_pubkey: Signer's wallet public key

        Returns:
            Serialized VersionedTransaction bytes

        Raises:
            SwapError: swap build failed
        """
        payload = {
            "quoteResponse": quote.raw_quote,
            "userPublicKey": user_pubkey,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
        }
        if self.priority_fee is not None:
            payload["prioritizationFeeLamports"] = self.priority_fee

        try:
            response = self.session.post(JUPITER_SWAP_API, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise SwapError(f"Jupiter swap request failed: {e}") from e

        if "error" in data:
            raise SwapError(f"Jupiter swap error: {data['error']}")

        try:
            return base64.b64decode(data["swapTransaction"])
        except (KeyError, TypeError, ValueError) as e:
            raise SwapError(f"Malformed Jupiter swap response: {e}") from e

    async def quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> SwapQuote:
        return await asyncio.to_thread(self.get_quote, input_mint, output_mint, amount, slippage_bps)

    async def build_swap_transaction(self, quote: SwapQuote, signer_address: str) -> bytes:
        return await asyncio.to_thread(self.get_swap_transaction, quote, signer_address)

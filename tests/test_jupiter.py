"""
Tests for the Jupiter client with the HTTP session mocked out.
"""

import asyncio
import base64
from unittest.mock import MagicMock
import sys
from pathlib import Path

import pytest
import requests

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from rankerbot.trading.jupiter import SOL_MINT, JupiterSwap, SwapError

MINT = "TokenMint111111111111111111111111111111111"


def quote_response(in_amount="6000000", out_amount="123456"):
    return {
        "inputMint": SOL_MINT,
        "outputMint": MINT,
        "inAmount": in_amount,
        "outAmount": out_amount,
        "priceImpactPct": "0.01",
        "routePlan": [{"swapInfo": {}}],
    }


def make_client(get_json=None, post_json=None):
    client = JupiterSwap(priority_fee=1000)
    client.session = MagicMock()
    client.session.get.return_value.json.return_value = get_json
    client.session.post.return_value.json.return_value = post_json
    return client


class TestQuote:
    """Quote parsing."""

    def test_quote_parsed(self):
        client = make_client(get_json=quote_response())

        quote = client.get_quote(SOL_MINT, MINT, 6_000_000, 50)

        assert quote.in_amount == 6_000_000
        assert quote.out_amount == 123456
        assert quote.slippage_bps == 50
        params = client.session.get.call_args.kwargs["params"]
        assert params["amount"] == "6000000"
        assert params["slippageBps"] == 50

    def test_zero_amount_is_no_quote(self):
        client = make_client(get_json=quote_response(out_amount="0"))

        with pytest.raises(SwapError):
            client.get_quote(SOL_MINT, MINT, 6_000_000, 50)

    def test_api_error(self):
        client = make_client(get_json={"error": "No routes found"})

        with pytest.raises(SwapError) as exc:
            client.get_quote(SOL_MINT, MINT, 6_000_000, 50)
        assert "No routes found" in str(exc.value)

    def test_http_failure(self):
        client = make_client()
        client.session.get.side_effect = requests.ConnectionError("refused")

        with pytest.raises(SwapError):
            client.get_quote(SOL_MINT, MINT, 6_000_000, 50)

    def test_async_quote(self):
        client = make_client(get_json=quote_response())

        quote = asyncio.run(client.quote(SOL_MINT, MINT, 6_000_000, 50))

        assert quote.output_mint == MINT


class TestSwapTransaction:
    """Swap transaction building."""

    def test_transaction_decoded(self):
        client = make_client(post_json={"swapTransaction": base64.b64encode(b"unsigned").decode()})
        quote = make_client(get_json=quote_response()).get_quote(SOL_MINT, MINT, 6_000_000, 50)

        tx = client.get_swap_transaction(quote, "Signer")

        assert tx == b"unsigned"
        payload = client.session.post.call_args.kwargs["json"]
        assert payload["userPublicKey"] == "Signer"
        assert payload["prioritizationFeeLamports"] == 1000
        assert payload["quoteResponse"] == quote.raw_quote

    def test_missing_transaction(self):
        client = make_client(post_json={})
        quote = make_client(get_json=quote_response()).get_quote(SOL_MINT, MINT, 6_000_000, 50)

        with pytest.raises(SwapError):
            client.get_swap_transaction(quote, "Signer")

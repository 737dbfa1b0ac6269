"""
SOL reference price for session summaries.
"""

import asyncio
import logging
import time
from typing import Optional

import requests

logger = logging.getLogger(__name__)


class PriceService:
    """
    SOL/USD price from CoinGecko, cached for a minute.

    Returns None when no price is available; summaries then omit USD.
    """

    def __init__(self, cache_ttl: float = 60.0):
        self.session = requests.Session()
        self._sol_price_cache: Optional[float] = None
        self._sol_price_time: float = 0
        self._cache_ttl = cache_ttl

    def get_sol_price_usd(self) -> Optional[float]:
        now = time.time()

        if self._sol_price_cache and (now - self._sol_price_time) < self._cache_ttl:
            return self._sol_price_cache

        try:
            response = self.session.get(
                "https://api.coingecko.com/api/v3/simple/price",
                params={"ids": "solana", "vs_currencies": "usd"},
                timeout=5,
            )
            response.raise_for_status()
            price = response.json().get("solana", {}).get("usd", 0)
            if price > 0:
                self._sol_price_cache = price
                self._sol_price_time = now
                return price
        except Exception as e:
            logger.debug(f"CoinGecko price API failed: {e}")

        return self._sol_price_cache

    async def sol_price_usd(self) -> Optional[float]:
        return await asyncio.to_thread(self.get_sol_price_usd)

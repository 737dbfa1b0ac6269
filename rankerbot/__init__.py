"""
RankerBot - Organic Volume Engine for Solana Tokens

Runs randomized buy/sell sessions across a pool of worker wallets
and detects maker-wallet purchase payments on a monitored address.
"""

__version__ = "0.1.0"

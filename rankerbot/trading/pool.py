"""
Wallet pool operations for RankerBot.

Balance lookups over a project's worker wallets, and SOL movements
between them: drain one wallet, split one wallet across many, and
liquidate every worker back into the project wallet.
"""

import logging
from typing import Dict, List, Optional, Sequence

from solders.pubkey import Pubkey

from rankerbot.core.utils import lamports_to_sol, short_address, tx_url
from rankerbot.trading.jupiter import SOL_MINT, JupiterSwap
from rankerbot.trading.ledger import LedgerClient, LedgerError
from rankerbot.trading.wallet import Wallet

logger = logging.getLogger(__name__)

# Slippage used when liquidating worker wallets
SELL_ALL_SLIPPAGE_BPS = 100


class WalletPool:
    """
    Read and move funds across a set of wallets.

    Balance queries fail soft so one unreachable wallet never halts a
    session. Transfers raise LedgerError; a None result means there was
    nothing to send.
    """

    def __init__(self, ledger: LedgerClient, swap: JupiterSwap):
        self.ledger = ledger
        self.swap = swap

    # =========================
    # Balances
    # =========================

    async def balance_of(self, address: str) -> float:
        """SOL balance, 0.0 on any query error."""
        try:
            return lamports_to_sol(await self.ledger.get_balance(address))
        except Exception as e:
            logger.warning(f"Balance query failed for {short_address(address)}: {e}")
            return 0.0

    async def token_balance_of(self, address: str, token_mint: str) -> float:
        """Token balance summed over all of the address's token accounts, 0.0 on error."""
        try:
            return await self.ledger.get_token_balance(address, token_mint)
        except Exception as e:
            logger.warning(f"Token balance query failed for {short_address(address)}: {e}")
            return 0.0

    async def token_units_of(self, address: str, token_mint: str) -> int:
        """Token balance in the mint's smallest unit, 0 on error."""
        try:
            return await self.ledger.get_token_balance_raw(address, token_mint)
        except Exception as e:
            logger.warning(f"Token balance query failed for {short_address(address)}: {e}")
            return 0

    async def balances(self, wallets: Sequence[Wallet]) -> Dict[str, float]:
        """SOL balance of every wallet, keyed by address."""
        return {w.address: await self.balance_of(w.address) for w in wallets}

    # =========================
    # Transfers
    # =========================

    async def drain_all_to(self, wallet: Wallet, dest_address: str) -> Optional[str]:
        """
        Send a wallet's entire SOL balance minus the network fee.

        The fee is priced by the network for a zero-lamport transfer to
        the same destination.

        Returns:
            Transaction signature, or None if balance does not exceed the fee
        """
        payer = Pubkey.from_string(wallet.address)
        balance = await self.ledger.get_balance(wallet.address)
        blockhash = await self.ledger.latest_blockhash()

        probe = self.ledger.build_transfer_message(payer, [(dest_address, 0)], blockhash)
        fee = await self.ledger.estimate_fee(probe)

        sendable = balance - fee
        if sendable <= 0:
            logger.info(f"Nothing to drain from {short_address(wallet.address)} (balance {balance}, fee {fee})")
            return None

        message = self.ledger.build_transfer_message(payer, [(dest_address, sendable)], blockhash)
        signature = await self.ledger.send_transfers(wallet.keypair, message, blockhash)
        logger.info(
            f"Drained {lamports_to_sol(sendable):.6f} SOL from {short_address(wallet.address)} "
            f"to {short_address(dest_address)}: {signature}"
        )
        return signature

    async def split_evenly_among(self, wallet: Wallet, dest_addresses: Sequence[str]) -> Optional[str]:
        """
        Split a wallet's SOL evenly across destinations in one transaction.

        Destinations that do not exist yet also receive the rent-exempt
        minimum; the division remainder goes to the first destination.

        Returns:
            Transaction signature, or None if fee and rent exceed the balance
        """
        if not dest_addresses:
            return None

        payer = Pubkey.from_string(wallet.address)
        balance = await self.ledger.get_balance(wallet.address)

        new_accounts = set()
        for addr in dest_addresses:
            if not await self.ledger.account_exists(addr):
                new_accounts.add(addr)
        rent = await self.ledger.minimum_existence_balance() if new_accounts else 0

        blockhash = await self.ledger.latest_blockhash()
        probe = self.ledger.build_transfer_message(payer, [(addr, 0) for addr in dest_addresses], blockhash)
        fee = await self.ledger.estimate_fee(probe)

        available = balance - fee - rent * len(new_accounts)
        if available <= 0:
            logger.warning(
                f"Not enough funds in {short_address(wallet.address)} to split: "
                f"balance {balance}, fee {fee}, rent {rent} x {len(new_accounts)}"
            )
            return None

        share, remainder = divmod(available, len(dest_addresses))
        transfers = []
        for idx, addr in enumerate(dest_addresses):
            lamports = share
            if addr in new_accounts:
                lamports += rent
            if idx == 0:
                lamports += remainder
            transfers.append((addr, lamports))

        message = self.ledger.build_transfer_message(payer, transfers, blockhash)
        signature = await self.ledger.send_transfers(wallet.keypair, message, blockhash)
        logger.info(
            f"Split {lamports_to_sol(available):.6f} SOL from {short_address(wallet.address)} "
            f"across {len(dest_addresses)} wallets: {signature}"
        )
        return signature

    # =========================
    # Liquidation
    # =========================

    async def sell_token(self, wallet: Wallet, token_mint: str) -> Optional[str]:
        """
        Swap a wallet's whole token balance to SOL.

        Returns:
            Swap signature, or None if the wallet holds no tokens

        Raises:
            SwapError, LedgerError
        """
        units = await self.ledger.get_token_balance_raw(wallet.address, token_mint)
        if units <= 0:
            return None

        quote = await self.swap.quote(token_mint, SOL_MINT, units, SELL_ALL_SLIPPAGE_BPS)
        tx_bytes = await self.swap.build_swap_transaction(quote, wallet.address)
        result = await self.ledger.execute(tx_bytes, wallet.keypair)
        if not result.success:
            raise LedgerError(result.error or "Swap not confirmed")
        return result.signature

    async def sell_all_to(self, workers: Sequence[Wallet], token_mint: str, dest_address: str) -> List[str]:
        """
        Sell every worker's tokens to SOL, then drain it to dest_address.

        Returns:
            One or more log lines per wallet; failures are reported, not raised
        """
        logs: List[str] = []

        for wallet in workers:
            label = short_address(wallet.address)
            try:
                swap_sig = await self.sell_token(wallet, token_mint)
                if swap_sig:
                    logs.append(f"Swapped tokens in {label}: {tx_url(swap_sig)}")
                else:
                    logs.append(f"No tokens to swap in {label}.")

                drain_sig = await self.drain_all_to(wallet, dest_address)
                if drain_sig:
                    logs.append(f"Drained SOL from {label} to project wallet: {tx_url(drain_sig)}")
                else:
                    logs.append(f"No SOL available to send from {label}.")
            except Exception as e:
                logger.error(f"Sell-all failed for {wallet.address}: {e}")
                logs.append(f"Error processing {label}: {e}")

        return logs

"""
Solana ledger client for RankerBot.

Balance and history queries, fee estimation, and transaction
signing, submission and confirmation over async RPC.
"""

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, TypeVar

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed, Finalized
from solana.rpc.types import TokenAccountOpts, TxOpts
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction, VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TOKEN_DECIMALS = 9

# RPC error text for history the node cannot serve yet
TRANSIENT_ERROR_MARKERS = (
    "Failed to query long-term storage",
    "not available for slot",
)


class LedgerError(Exception):
    """A ledger query or submission failed; the outcome is unknown."""


class TransientLedgerError(LedgerError):
    """The queried data is not yet available; retry on the next cycle."""


@dataclass(frozen=True)
class TransactionRef:
    """A transaction touching an address, as listed in its history."""
    signature: str
    slot: int
    failed: bool = False


@dataclass
class LedgerTransaction:
    """Balance view of one confirmed transaction."""
    signature: str
    slot: int
    account_keys: List[str]
    pre_balances: List[int]
    post_balances: List[int]

    def balance_delta(self, address: str) -> Optional[int]:
        """Post minus pre balance (lamports) for an address, None if absent."""
        try:
            idx = self.account_keys.index(address)
        except ValueError:
            return None
        if idx >= len(self.pre_balances) or idx >= len(self.post_balances):
            return None
        return self.post_balances[idx] - self.pre_balances[idx]


@dataclass
class ExecutionResult:
    """Result of transaction execution."""
    success: bool
    signature: Optional[str] = None
    error: Optional[str] = None
    retries: int = 0


class LedgerClient:
    """
    Async Solana RPC client.

    Calls rotate round-robin over the configured endpoints. Every query
    failure is raised as LedgerError so callers can treat it as unknown.
    """

    def __init__(
        self,
        rpc_urls: Sequence[str],
        max_retries: int = 3,
        confirm_timeout: float = 60.0,
        confirm_poll: float = 2.0,
    ):
        """
        Initialize ledger client.

        Args:
            rpc_urls: Solana RPC endpoints
            max_retries: Maximum send attempts
            confirm_timeout: Seconds to wait for confirmation
            confirm_poll: Seconds between status checks
        """
        if not rpc_urls:
            raise ValueError("At least one Solana RPC URL is required")

        self.clients = [AsyncClient(url) for url in rpc_urls]
        self._rotation = itertools.cycle(self.clients)
        self.max_retries = max_retries
        self.confirm_timeout = confirm_timeout
        self.confirm_poll = confirm_poll

    def _next_client(self) -> AsyncClient:
        return next(self._rotation)

    async def _rpc(self, method: str, call: Callable[[AsyncClient], Awaitable[T]]) -> T:
        client = self._next_client()
        try:
            return await call(client)
        except Exception as e:
            message = str(e)
            if any(marker in message for marker in TRANSIENT_ERROR_MARKERS):
                raise TransientLedgerError(f"{method}: {message}") from e
            raise LedgerError(f"{method}: {message}") from e

    async def close(self) -> None:
        for client in self.clients:
            await client.close()

    # =========================
    # Queries
    # =========================

    async def get_balance(self, address: str) -> int:
        """SOL balance in lamports."""
        resp = await self._rpc(
            "getBalance",
            lambda c: c.get_balance(Pubkey.from_string(address), commitment=Confirmed),
        )
        return resp.value

    async def _token_amounts(self, owner: str, mint: str) -> List[Tuple[int, int]]:
        """(raw amount, decimals) of each of the owner's token accounts for a mint."""
        resp = await self._rpc(
            "getTokenAccountsByOwner",
            lambda c: c.get_token_accounts_by_owner_json_parsed(
                Pubkey.from_string(owner),
                TokenAccountOpts(mint=Pubkey.from_string(mint)),
                commitment=Confirmed,
            ),
        )

        amounts = []
        for keyed in resp.value:
            token_amount = keyed.account.data.parsed["info"]["tokenAmount"]
            raw = int(token_amount.get("amount", 0) or 0)
            decimals = int(token_amount.get("decimals", DEFAULT_TOKEN_DECIMALS))
            amounts.append((raw, decimals))
        return amounts

    async def get_token_balance(self, owner: str, mint: str) -> float:
        """
        Total UI balance of a token across all of the owner's token accounts.

        Returns:
            Token amount, 0.0 if the owner holds no account for the mint
        """
        amounts = await self._token_amounts(owner, mint)
        return sum((raw / (10 ** decimals) for raw, decimals in amounts), 0.0)

    async def get_token_balance_raw(self, owner: str, mint: str) -> int:
        """Total token balance in the mint's smallest unit, exact."""
        return sum(raw for raw, _ in await self._token_amounts(owner, mint))

    async def get_mint_decimals(self, mint: str) -> int:
        """Decimal precision of a token mint."""
        resp = await self._rpc(
            "getAccountInfo",
            lambda c: c.get_account_info_json_parsed(Pubkey.from_string(mint)),
        )
        if resp.value is None:
            raise LedgerError(f"Mint account not found: {mint}")
        return int(resp.value.data.parsed["info"]["decimals"])

    async def get_recent_transaction_refs(self, address: str, limit: int = 20) -> List[TransactionRef]:
        """Most recent transactions touching an address, newest first."""
        resp = await self._rpc(
            "getSignaturesForAddress",
            lambda c: c.get_signatures_for_address(
                Pubkey.from_string(address), limit=limit, commitment=Confirmed
            ),
        )
        return [
            TransactionRef(signature=str(item.signature), slot=item.slot, failed=item.err is not None)
            for item in resp.value
        ]

    async def get_transaction(self, signature: str) -> Optional[LedgerTransaction]:
        """
        Fetch a finalized transaction.

        Returns:
            LedgerTransaction, or None if it is not available yet
        """
        resp = await self._rpc(
            "getTransaction",
            lambda c: c.get_transaction(
                Signature.from_string(signature),
                encoding="base64",
                commitment=Finalized,
                max_supported_transaction_version=0,
            ),
        )

        if resp.value is None:
            return None

        encoded = resp.value.transaction
        meta = encoded.meta
        if meta is None:
            return None

        account_keys = [str(k) for k in encoded.transaction.message.account_keys]
        # v0 transactions index balances over static keys then loaded addresses
        loaded = meta.loaded_addresses
        if loaded is not None:
            account_keys += [str(k) for k in loaded.writable]
            account_keys += [str(k) for k in loaded.readonly]

        return LedgerTransaction(
            signature=signature,
            slot=resp.value.slot,
            account_keys=account_keys,
            pre_balances=list(meta.pre_balances),
            post_balances=list(meta.post_balances),
        )

    async def current_checkpoint(self) -> int:
        """Latest finalized slot."""
        resp = await self._rpc("getSlot", lambda c: c.get_slot(commitment=Finalized))
        return resp.value

    async def account_exists(self, address: str) -> bool:
        resp = await self._rpc(
            "getAccountInfo",
            lambda c: c.get_account_info(Pubkey.from_string(address)),
        )
        return resp.value is not None

    async def minimum_existence_balance(self) -> int:
        """Rent-exempt minimum (lamports) for a zero-data account."""
        resp = await self._rpc(
            "getMinimumBalanceForRentExemption",
            lambda c: c.get_minimum_balance_for_rent_exemption(0),
        )
        return resp.value

    async def latest_blockhash(self) -> Hash:
        resp = await self._rpc(
            "getLatestBlockhash",
            lambda c: c.get_latest_blockhash(commitment=Confirmed),
        )
        return resp.value.blockhash

    async def estimate_fee(self, message: Message) -> int:
        """Network fee (lamports) for an unsigned message."""
        resp = await self._rpc("getFeeForMessage", lambda c: c.get_fee_for_message(message))
        return resp.value or 0

    # =========================
    # Submission
    # =========================

    async def submit(self, tx_bytes: bytes) -> str:
        """
        Send a signed transaction.

        Returns:
            Transaction signature

        Raises:
            LedgerError: every attempt failed
        """
        retries = 0
        last_error = "Max retries exceeded"

        while retries < self.max_retries:
            try:
                resp = await self._rpc(
                    "sendTransaction",
                    lambda c: c.send_raw_transaction(
                        tx_bytes,
                        opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed),
                    ),
                )
                if resp.value:
                    signature = str(resp.value)
                    logger.info(f"Transaction sent: {signature}")
                    return signature
                last_error = "Empty send response"
            except LedgerError as e:
                last_error = str(e)
                logger.warning(f"Send failed ({retries + 1}/{self.max_retries}): {e}")

            retries += 1
            if retries < self.max_retries:
                await asyncio.sleep(1)

        raise LedgerError(last_error)

    async def confirm(self, signature: str) -> bool:
        """
        Wait for transaction confirmation.

        Returns:
            True if confirmed, False on failure or timeout
        """
        start_time = time.monotonic()
        sig = Signature.from_string(signature)

        while time.monotonic() - start_time < self.confirm_timeout:
            try:
                resp = await self._rpc("getSignatureStatuses", lambda c: c.get_signature_statuses([sig]))
                status = resp.value[0] if resp.value else None
                if status is not None:
                    if status.err:
                        logger.error(f"Transaction failed: {status.err}")
                        return False
                    if status.confirmation_status in (
                        TransactionConfirmationStatus.Confirmed,
                        TransactionConfirmationStatus.Finalized,
                    ):
                        logger.info(f"Transaction confirmed: {signature}")
                        return True
            except LedgerError as e:
                logger.error(f"Confirmation error: {e}")

            await asyncio.sleep(self.confirm_poll)

        logger.error(f"Transaction confirmation timeout: {signature}")
        return False

    async def execute(self, tx_bytes: bytes, keypair: Keypair, wait_confirm: bool = True) -> ExecutionResult:
        """
        Sign a serialized swap transaction, send it and optionally confirm.

        Args:
            tx_bytes: Serialized unsigned VersionedTransaction
            keypair: Keypair for signing
            wait_confirm: Wait for confirmation

        Returns:
            ExecutionResult with final status
        """
        try:
            unsigned = VersionedTransaction.from_bytes(tx_bytes)
            signed = VersionedTransaction(unsigned.message, [keypair])
            signature = await self.submit(bytes(signed))
        except Exception as e:
            logger.error(f"Transaction error: {e}")
            return ExecutionResult(success=False, error=str(e), retries=self.max_retries)

        if wait_confirm and not await self.confirm(signature):
            return ExecutionResult(success=False, signature=signature, error="Confirmation failed")

        return ExecutionResult(success=True, signature=signature)

    # =========================
    # SOL transfers
    # =========================

    def build_transfer_message(
        self,
        payer: Pubkey,
        transfers: Sequence[Tuple[str, int]],
        blockhash: Hash,
    ) -> Message:
        """Build a message with one system transfer per (address, lamports)."""
        instructions = [
            transfer(TransferParams(from_pubkey=payer, to_pubkey=Pubkey.from_string(addr), lamports=lamports))
            for addr, lamports in transfers
        ]
        return Message.new_with_blockhash(instructions, payer, blockhash)

    async def send_transfers(self, keypair: Keypair, message: Message, blockhash: Hash) -> str:
        """Sign a transfer message, send it and wait for confirmation."""
        tx = Transaction([keypair], message, blockhash)
        signature = await self.submit(bytes(tx))
        if not await self.confirm(signature):
            raise LedgerError(f"Transfer not confirmed: {signature}")
        return signature

"""
Background task scheduler for RankerBot.

Owns every running volume session and payment watch. Sessions are keyed
by session id (the chat that started them), payment watches by
requester id. Each key has at most one live task.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Hashable, List, Optional, Tuple

from rankerbot.core.config import Config, ConfigError
from rankerbot.core.models import ProjectStatus
from rankerbot.core.registry import KeyedRegistry
from rankerbot.core.store import ProjectRecord, SqlProjectStore
from rankerbot.trading.jupiter import JupiterSwap
from rankerbot.trading.ledger import LedgerClient, LedgerError, LedgerTransaction
from rankerbot.trading.payments import OnMatch, PaymentWatcher, PendingPayment
from rankerbot.trading.pool import WalletPool
from rankerbot.trading.pricing import PriceService
from rankerbot.trading.session import SessionConfig, SessionEngine, SessionState
from rankerbot.trading.wallet import Wallet, WalletManager

logger = logging.getLogger(__name__)


@dataclass
class SessionHandle:
    state: SessionState
    task: asyncio.Task


@dataclass
class PaymentHandle:
    watcher: PaymentWatcher
    task: asyncio.Task


async def _wait_done(task: asyncio.Task) -> None:
    await asyncio.gather(task, return_exceptions=True)


class Scheduler:
    """
    Starts, stops and supersedes background sessions and payment watches.

    Must be used from a single event loop.
    """

    def __init__(
        self,
        config: Config,
        store: SqlProjectStore,
        wallet_manager: WalletManager,
        ledger: LedgerClient,
        swap: JupiterSwap,
        notifier,
        pool: Optional[WalletPool] = None,
        price_service: Optional[PriceService] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.store = store
        self.wallet_manager = wallet_manager
        self.ledger = ledger
        self.swap = swap
        self.notifier = notifier
        self.pool = pool or WalletPool(ledger, swap)
        self.price_service = price_service
        self.clock = clock

        self.sessions: KeyedRegistry[SessionHandle] = KeyedRegistry("sessions")
        self.payments: KeyedRegistry[PaymentHandle] = KeyedRegistry("payments")

    # =========================
    # Projects and wallets
    # =========================

    def onboard_project(
        self,
        owner_id: int,
        token_mint: str,
        token_name: Optional[str] = None,
        owner_username: Optional[str] = None,
    ) -> ProjectRecord:
        """
        Create a project with its project wallet and free worker wallets.

        Re-onboarding an existing project only fills in what is missing.

        Raises:
            ProjectOwnershipError: asset already onboarded by another owner
        """
        patch = {}
        if token_name:
            patch["token_name"] = token_name
        if owner_username:
            patch["owner_username"] = owner_username
        record = self.store.upsert(owner_id, token_mint, patch)

        if record.project_wallet is None:
            self.store.set_project_wallet(owner_id, token_mint, self.wallet_manager.create_wallet())
        if not record.worker_wallets and self.config.free_worker_wallets > 0:
            self.store.add_worker_wallets(
                owner_id, token_mint, self.wallet_manager.create_wallets(self.config.free_worker_wallets)
            )

        return self.store.get(owner_id, token_mint)

    def load_project(self, owner_id: int, token_mint: str) -> Tuple[ProjectRecord, Optional[Wallet], List[Wallet]]:
        """
        Load a project with its decrypted wallets.

        Raises:
            LookupError: owner has no such project
        """
        project = self.store.get(owner_id, token_mint)
        if project is None:
            raise LookupError(f"Project not found: {token_mint}")

        project_wallet = None
        if project.project_wallet is not None:
            project_wallet = self.wallet_manager.load_wallet(project.project_wallet)
        workers = self.wallet_manager.load_wallets(project.worker_wallets)
        return project, project_wallet, workers

    async def withdraw(self, owner_id: int, token_mint: str, dest_address: str) -> Optional[str]:
        """Drain the project wallet to an external address."""
        _, project_wallet, _ = self.load_project(owner_id, token_mint)
        if project_wallet is None:
            raise LookupError(f"{token_mint} has no usable project wallet")
        return await self.pool.drain_all_to(project_wallet, dest_address)

    async def distribute(self, owner_id: int, token_mint: str) -> Optional[str]:
        """Split the project wallet's SOL across all worker wallets."""
        _, project_wallet, workers = self.load_project(owner_id, token_mint)
        if project_wallet is None:
            raise LookupError(f"{token_mint} has no usable project wallet")
        return await self.pool.split_evenly_among(project_wallet, [w.address for w in workers])

    async def sell_all(self, owner_id: int, token_mint: str) -> List[str]:
        """Liquidate every worker into the project wallet."""
        project, _, workers = self.load_project(owner_id, token_mint)
        if project.project_wallet is None:
            raise LookupError(f"{token_mint} has no project wallet")
        return await self.pool.sell_all_to(workers, token_mint, project.project_wallet.pubkey)

    # =========================
    # Volume sessions
    # =========================

    async def start_session(self, session_id: Hashable, owner_id: int, token_mint: str) -> bool:
        """
        Start a volume session, replacing any session live under the same id.

        Returns:
            True if a session was started
        """
        project = self.store.get(owner_id, token_mint)
        if project is None:
            await self.notifier.send(session_id, "Project not found.")
            return False

        try:
            session_config = SessionConfig.build(
                token_mint, project.volume_custom_settings, self.config.volume_defaults
            )
        except ConfigError as e:
            await self.notifier.send(session_id, f"⚠️ Invalid volume settings: {e}")
            return False

        workers = self.wallet_manager.load_wallets(project.worker_wallets)
        if not workers:
            await self.notifier.send(session_id, "No worker wallets available. Buy or fund makers first.")
            return False

        async with self.sessions.lock(session_id):
            await self._stop_and_wait(session_id)

            state = SessionState(session_id=session_id, token_mint=token_mint)
            engine = SessionEngine(
                state=state,
                config=session_config,
                workers=workers,
                pool=self.pool,
                swap=self.swap,
                ledger=self.ledger,
                notifier=self.notifier,
                price_service=self.price_service,
            )
            task = asyncio.create_task(
                self._run_session(engine, owner_id, token_mint), name=f"session-{session_id}"
            )
            handle = SessionHandle(state=state, task=task)
            self.sessions.create(session_id, handle)
            task.add_done_callback(lambda _t: self.sessions.discard(session_id, handle))

        logger.info(f"Started session {session_id} for {token_mint} with {len(workers)} workers")
        return True

    async def _run_session(self, engine: SessionEngine, owner_id: int, token_mint: str) -> SessionState:
        self._set_status(owner_id, token_mint, ProjectStatus.ACTIVE)
        try:
            return await engine.run()
        finally:
            self._set_status(owner_id, token_mint, ProjectStatus.PAUSED)

    def _set_status(self, owner_id: int, token_mint: str, status: ProjectStatus) -> None:
        try:
            self.store.upsert(owner_id, token_mint, {"status": status})
        except Exception as e:
            logger.error(f"Could not set {token_mint} status to {status.value}: {e}")

    async def _stop_and_wait(self, session_id: Hashable) -> None:
        handle = self.sessions.get(session_id)
        if handle is None:
            return
        logger.info(f"Stopping live session {session_id} before restart")
        handle.state.request_stop()
        await _wait_done(handle.task)
        self.sessions.discard(session_id, handle)

    def stop_session(self, session_id: Hashable) -> bool:
        """
        Ask a live session to stop.

        Returns:
            True if a session was live under this id
        """
        handle = self.sessions.get(session_id)
        if handle is None:
            return False
        handle.state.request_stop()
        logger.info(f"Stop requested for session {session_id}")
        return True

    def session_state(self, session_id: Hashable) -> Optional[SessionState]:
        handle = self.sessions.get(session_id)
        return handle.state if handle else None

    # =========================
    # Payments
    # =========================

    async def watch_for_payment(
        self,
        requester_id: Hashable,
        channel_id: Hashable,
        owner_id: int,
        token_mint: str,
        quantity: int,
        cost: float,
    ) -> PendingPayment:
        """
        Watch the dev wallet for a maker-wallet purchase.

        A newer watch for the same requester supersedes the older one.

        Raises:
            ValueError: quantity or cost is not positive
            ConfigError: no dev wallet configured
        """
        if quantity <= 0 or cost <= 0:
            raise ValueError(f"Invalid maker package: {quantity} wallets for {cost} SOL")
        if not self.config.dev_wallet:
            raise ConfigError("DEV_WALLET is not configured")

        async with self.payments.lock(requester_id):
            await self._supersede_payment(requester_id)

            pending = PendingPayment(
                requester_id=requester_id,
                token_mint=token_mint,
                quantity=quantity,
                expected_amount=cost,
                started_at=self.clock(),
            )
            try:
                pending.checkpoint = await self.ledger.current_checkpoint()
            except LedgerError as e:
                logger.warning(f"Checkpoint unavailable for {requester_id}, watcher will retry: {e}")

            watcher = PaymentWatcher(
                pending=pending,
                channel_id=channel_id,
                monitored_address=self.config.dev_wallet,
                ledger=self.ledger,
                notifier=self.notifier,
                on_match=self._add_workers_on_payment(owner_id),
                poll_interval=self.config.payment_poll_seconds,
                timeout=self.config.payment_timeout_seconds,
                clock=self.clock,
            )
            task = asyncio.create_task(watcher.run(), name=f"payment-{requester_id}")
            handle = PaymentHandle(watcher=watcher, task=task)
            self.payments.create(requester_id, handle)
            task.add_done_callback(lambda _t: self.payments.discard(requester_id, handle))

        logger.info(f"Waiting for {cost} SOL from {requester_id} for {quantity} makers on {token_mint}")
        return pending

    async def _supersede_payment(self, requester_id: Hashable) -> None:
        handle = self.payments.get(requester_id)
        if handle is None:
            return
        logger.info(f"Superseding pending payment for {requester_id}")
        handle.watcher.stop()
        # let a fulfillment already under way finish
        if not handle.watcher.pending.fulfilled:
            handle.task.cancel()
        await _wait_done(handle.task)
        self.payments.discard(requester_id, handle)

    def pending_payment(self, requester_id: Hashable) -> Optional[PendingPayment]:
        handle = self.payments.get(requester_id)
        return handle.watcher.pending if handle else None

    def _add_workers_on_payment(self, owner_id: int) -> OnMatch:
        async def add_workers(pending: PendingPayment, tx: LedgerTransaction) -> str:
            wallets = self.wallet_manager.create_wallets(pending.quantity)
            total = self.store.add_worker_wallets(owner_id, pending.token_mint, wallets)
            logger.info(f"Payment {tx.signature}: added {pending.quantity} makers to {pending.token_mint}")
            return (
                f"✅ Payment received!\n\n<b>{pending.quantity}</b> new Market Maker wallets "
                f"have been added to your project ({total} total).\n"
                "<b>Important:</b> These wallets need to be funded with SOL to be used for trading."
            )
        return add_workers

    # =========================
    # Shutdown
    # =========================

    async def shutdown(self) -> None:
        """Stop every session and watch, and wait for them to end."""
        tasks = []
        for key in self.sessions.keys():
            handle = self.sessions.get(key)
            if handle is not None:
                handle.state.request_stop()
                tasks.append(handle.task)
        for key in self.payments.keys():
            handle = self.payments.get(key)
            if handle is not None:
                handle.watcher.stop()
                if not handle.watcher.pending.fulfilled:
                    handle.task.cancel()
                tasks.append(handle.task)

        if tasks:
            logger.info(f"Waiting for {len(tasks)} background tasks to finish")
            await asyncio.gather(*tasks, return_exceptions=True)

#!/usr/bin/env python3
"""
Wallet maintenance for RankerBot projects.

Check balances, fund makers, withdraw and liquidate from the command line.
"""

import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import asyncio
import logging

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from rankerbot.core.config import Config, ConfigError
from rankerbot.core.db import init_db
from rankerbot.core.store import SqlProjectStore
from rankerbot.core.utils import tx_url
from rankerbot.notify.telegram import TelegramNotifier
from rankerbot.trading.jupiter import JupiterSwap
from rankerbot.trading.ledger import LedgerClient, LedgerError
from rankerbot.trading.scheduler import Scheduler
from rankerbot.trading.wallet import WalletManager

app = typer.Typer(help="Project wallet maintenance")
console = Console()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


def _build_scheduler() -> Scheduler:
    load_dotenv()
    config = Config.from_env()
    try:
        config.require("wallet_encryption_key", "rpc_urls")
    except ConfigError as e:
        console.print(f"[red]ERROR: {e}[/red]")
        raise typer.Exit(1)

    ledger = LedgerClient(config.rpc_urls)
    return Scheduler(
        config=config,
        store=SqlProjectStore(init_db(config)),
        wallet_manager=WalletManager(config.wallet_encryption_key),
        ledger=ledger,
        swap=JupiterSwap(),
        notifier=TelegramNotifier(config),
    )


def _run(scheduler: Scheduler, coro):
    async def runner():
        try:
            return await coro
        finally:
            await scheduler.ledger.close()

    try:
        return asyncio.run(runner())
    except (LookupError, LedgerError) as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)


@app.command()
def balances(
    owner: int = typer.Option(..., "--owner", "-o", help="Owner (Telegram user) id"),
    mint: str = typer.Option(..., "--mint", "-m", help="Token mint"),
):
    """
    Show SOL and token balances of a project's wallets.
    """
    scheduler = _build_scheduler()
    project = scheduler.store.get(owner, mint)
    if project is None:
        console.print("[red]Project not found[/red]")
        raise typer.Exit(1)

    async def collect():
        rows = []
        if project.project_wallet:
            address = project.project_wallet.pubkey
            rows.append(("Project", address, await scheduler.pool.balance_of(address), None))
        for idx, wallet in enumerate(project.worker_wallets, 1):
            rows.append((
                f"Maker {idx}",
                wallet.pubkey,
                await scheduler.pool.balance_of(wallet.pubkey),
                await scheduler.pool.token_balance_of(wallet.pubkey, mint),
            ))
        return rows

    table = Table(title=f"Wallets for {project.token_name or mint}")
    table.add_column("Role", style="cyan")
    table.add_column("Address")
    table.add_column("SOL", justify="right", style="green")
    table.add_column("Tokens", justify="right")

    for role, address, sol, tokens in _run(scheduler, collect()):
        table.add_row(role, address, f"{sol:.4f}", "-" if tokens is None else f"{tokens:,.2f}")

    console.print(table)


@app.command()
def distribute(
    owner: int = typer.Option(..., "--owner", "-o", help="Owner (Telegram user) id"),
    mint: str = typer.Option(..., "--mint", "-m", help="Token mint"),
):
    """
    Split the project wallet's SOL evenly across the maker wallets.
    """
    scheduler = _build_scheduler()
    signature = _run(scheduler, scheduler.distribute(owner, mint))
    if signature:
        console.print(f"[green]✓ Distributed: {tx_url(signature)}[/green]")
    else:
        console.print("[yellow]Not enough SOL to cover fees and rent[/yellow]")


@app.command()
def withdraw(
    owner: int = typer.Option(..., "--owner", "-o", help="Owner (Telegram user) id"),
    mint: str = typer.Option(..., "--mint", "-m", help="Token mint"),
    to: str = typer.Option(..., "--to", help="Destination address"),
):
    """
    Drain the project wallet to an address.
    """
    scheduler = _build_scheduler()
    signature = _run(scheduler, scheduler.withdraw(owner, mint, to))
    if signature:
        console.print(f"[green]✓ Withdrawn: {tx_url(signature)}[/green]")
    else:
        console.print("[yellow]Nothing to withdraw[/yellow]")


@app.command("sell-all")
def sell_all(
    owner: int = typer.Option(..., "--owner", "-o", help="Owner (Telegram user) id"),
    mint: str = typer.Option(..., "--mint", "-m", help="Token mint"),
):
    """
    Sell every maker's tokens and sweep their SOL into the project wallet.
    """
    scheduler = _build_scheduler()
    for line in _run(scheduler, scheduler.sell_all(owner, mint)):
        console.print(line)


if __name__ == "__main__":
    app()

#!/usr/bin/env python3
"""
Run the RankerBot Telegram bot.

Starts the bot and the scheduler that owns volume sessions and
payment watches, and shuts both down on Ctrl+C.
"""

import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import asyncio
import logging
import signal

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel

from rankerbot.core.config import Config, ConfigError
from rankerbot.core.db import init_db
from rankerbot.core.store import SqlProjectStore
from rankerbot.notify.telegram import TelegramNotifier
from rankerbot.notify.telegram_bot import TelegramBotHandler
from rankerbot.trading.jupiter import JupiterSwap
from rankerbot.trading.ledger import LedgerClient
from rankerbot.trading.pricing import PriceService
from rankerbot.trading.scheduler import Scheduler
from rankerbot.trading.wallet import WalletManager

app = typer.Typer(help="RankerBot volume bot")
console = Console()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("run_bot")


@app.command()
def init():
    """
    Create the database schema.
    """
    load_dotenv()
    config = Config.from_env()
    init_db(config)
    console.print(f"[green]✓ Database initialized at {config.database_path}[/green]")


@app.command()
def run(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
):
    """
    Start the Telegram bot.

    Requires TELEGRAM_BOT_TOKEN, WALLET_ENCRYPTION_KEY and SOLANA_RPC_URLS in .env.
    DEV_WALLET is needed for maker purchases.
    """
    load_dotenv()
    config = Config.from_env()
    logging.getLogger().setLevel(logging.DEBUG if verbose else config.log_level)

    try:
        config.require("telegram_bot_token", "wallet_encryption_key", "rpc_urls")
    except ConfigError as e:
        console.print(f"[red]ERROR: {e}[/red]")
        raise typer.Exit(1)

    if not config.dev_wallet:
        console.print("[yellow]DEV_WALLET not set - maker purchases are disabled[/yellow]")

    store = SqlProjectStore(init_db(config))
    ledger = LedgerClient(config.rpc_urls)
    swap = JupiterSwap()
    scheduler = Scheduler(
        config=config,
        store=store,
        wallet_manager=WalletManager(config.wallet_encryption_key),
        ledger=ledger,
        swap=swap,
        notifier=TelegramNotifier(config),
        price_service=PriceService(),
    )
    bot = TelegramBotHandler(config, scheduler)

    console.print(Panel(
        "[bold]RankerBot - Organic Volume for Solana Tokens[/bold]\n\n"
        f"{config.get_summary()}",
        title="Starting",
        border_style="blue"
    ))

    async def run_all():
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        await bot.start_polling()
        try:
            await stop_event.wait()
        finally:
            console.print("\n[yellow]Shutting down...[/yellow]")
            await bot.stop()
            await ledger.close()

    try:
        asyncio.run(run_all())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    app()

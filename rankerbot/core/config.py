"""
Configuration management for RankerBot.

Loads settings from a JSON volume template and environment variables.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple


class ConfigError(ValueError):
    """Raised when configuration values are missing or inconsistent."""


# Built-in session defaults, used when no template file is present
DEFAULT_VOLUME_SETTINGS: Dict[str, Any] = {
    "buy_min": 0.006,
    "buy_max": 0.006,
    "buy_slippage_bps": 50,
    "sell_slippage_bps": 50,
    "interval_min": 15,
    "interval_max": 15,
    "buy_ratio": 50,
    "limit_trades": 999999,
    "min_sol_balance": 0.001,
    "min_sell_balance": 0.001,
    "fee_buffer": 0.001,
    "retry_delay": 1.0,
    "budget_mode": "until_exhausted",
    "budget": None,
}

DEFAULT_MAKER_PACKAGES: List[Tuple[int, float]] = [
    (5, 0.08),
    (10, 0.15),
    (15, 0.23),
    (20, 0.29),
    (25, 0.35),
]


@dataclass
class Config:
    """Application configuration."""

    # Database
    database_path: str = "data/rankerbot.db"

    # Solana RPC (rotated round-robin)
    rpc_urls: List[str] = field(default_factory=list)

    # Telegram
    telegram_bot_token: Optional[str] = None

    # Payments
    dev_wallet: Optional[str] = None
    payment_timeout_seconds: float = 600.0
    payment_poll_seconds: float = 5.0

    # Wallet custody
    wallet_encryption_key: Optional[str] = None

    # Volume template
    volume_template: str = "organic"
    volume_defaults: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_VOLUME_SETTINGS))
    maker_packages: List[Tuple[int, float]] = field(default_factory=lambda: list(DEFAULT_MAKER_PACKAGES))
    free_worker_wallets: int = 5

    # Mode: LIVE or TEST
    mode: str = "TEST"
    log_level: str = "INFO"

    @classmethod
    def _load_json(cls, json_path: Path) -> Dict[str, Any]:
        """Load JSON configuration file."""
        if not json_path.exists():
            raise FileNotFoundError(f"Config file not found: {json_path}")

        with open(json_path, 'r') as f:
            return json.load(f)

    @staticmethod
    def _parse_rpc_urls() -> List[str]:
        """Collect RPC endpoints from SOLANA_RPC_URLS, falling back to SOLANA_RPC_URL."""
        raw = os.getenv("SOLANA_RPC_URLS", "")
        urls = [u.strip() for u in raw.split(",") if u.strip()]
        if not urls:
            single = os.getenv("SOLANA_RPC_URL", "").strip()
            if single:
                urls = [single]
        return urls

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from the volume template + environment variables."""
        template_name = os.getenv("VOLUME_TEMPLATE", "organic")
        template_path = Path(f"config/volume/{template_name}.json")

        # Missing template is not fatal: built-in defaults cover every field
        template: Dict[str, Any] = {}
        if template_path.exists():
            template = cls._load_json(template_path)

        volume_defaults = dict(DEFAULT_VOLUME_SETTINGS)
        volume_defaults.update(template.get("session", {}))

        packages = [
            (int(qty), float(cost))
            for qty, cost in template.get("maker_packages", DEFAULT_MAKER_PACKAGES)
        ]

        return cls(
            database_path=os.getenv("RANKERBOT_DB_PATH", "data/rankerbot.db"),
            rpc_urls=cls._parse_rpc_urls(),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN"),
            dev_wallet=os.getenv("DEV_WALLET"),
            payment_timeout_seconds=float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "600")),
            payment_poll_seconds=float(os.getenv("PAYMENT_POLL_SECONDS", "5")),
            wallet_encryption_key=os.getenv("WALLET_ENCRYPTION_KEY"),
            volume_template=template_name,
            volume_defaults=volume_defaults,
            maker_packages=packages,
            free_worker_wallets=int(template.get("free_worker_wallets", 5)),
            mode=os.getenv("MODE", "TEST").upper(),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def require(self, *names: str) -> None:
        """Raise ConfigError if any of the named settings is empty."""
        missing = [name for name in names if not getattr(self, name)]
        if missing:
            raise ConfigError(f"Missing required settings: {', '.join(missing)}")

    def maker_package_cost(self, quantity: int) -> Optional[float]:
        """Price in SOL of the maker package with this many wallets, None if not offered."""
        for qty, cost in self.maker_packages:
            if qty == quantity:
                return cost
        return None

    def get_summary(self) -> str:
        """Get a summary of current settings."""
        d = self.volume_defaults
        return f"""Template: {self.volume_template}
Mode: {self.mode}
RPC endpoints: {len(self.rpc_urls)}
Dev wallet: {self.dev_wallet or 'Not configured'}

Session Defaults:
  Buy Size: {d['buy_min']} - {d['buy_max']} SOL
  Interval: {d['interval_min']} - {d['interval_max']} sec
  Buy Ratio: {d['buy_ratio']}%
  Slippage: buy {d['buy_slippage_bps']} bps / sell {d['sell_slippage_bps']} bps
  Min SOL Balance: {d['min_sol_balance']} SOL
  Budget Mode: {d['budget_mode']}

Payments:
  Poll Every: {self.payment_poll_seconds:.0f}s
  Timeout: {self.payment_timeout_seconds:.0f}s
  Maker Packages: {len(self.maker_packages)}
"""

"""Configuration loading - settings from environment variables and a .env file."""

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RunMode(str, Enum):
    """Run mode."""

    PAPER = "paper"  # simulated fills from live quotes
    LIVE = "live"  # signed and submitted on-chain


class LogFormat(str, Enum):
    """Log output format."""

    JSON = "json"
    CONSOLE = "console"


class Settings(BaseSettings):
    """Engine settings.

    One instance is built at startup and handed to every adapter; nothing
    below reads the process environment on its own.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== Run mode ====================
    mode: RunMode = Field(default=RunMode.PAPER, description="paper or live")

    # ==================== Market data ====================
    birdeye_api_key: str = Field(default="", description="Birdeye API key")
    birdeye_base_url: str = Field(
        default="https://public-api.birdeye.so",
        description="Birdeye REST base URL",
    )
    dexscreener_base_url: str = Field(
        default="https://api.dexscreener.com/latest",
        description="DexScreener REST base URL",
    )
    market_data_timeout: float = Field(
        default=10.0,
        ge=1.0,
        le=60.0,
        description="Market data request timeout (seconds)",
    )
    new_pairs_limit: int = Field(default=20, ge=1, le=100, description="New listings per fetch")

    # ==================== Swap / RPC ====================
    jupiter_base_url: str = Field(
        default="https://quote-api.jup.ag/v6",
        description="Jupiter aggregator base URL",
    )
    swap_timeout: float = Field(
        default=15.0,
        ge=1.0,
        le=60.0,
        description="Quote/swap build request timeout (seconds)",
    )
    rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com",
        description="Solana JSON-RPC endpoint",
    )
    confirmation_timeout: float = Field(
        default=60.0,
        ge=5.0,
        le=300.0,
        description="Max wait for transaction confirmation (seconds)",
    )
    confirmation_poll_interval: float = Field(
        default=2.0,
        ge=0.0,
        le=10.0,
        description="Signature status polling interval (seconds)",
    )
    max_price_impact_pct: float = Field(
        default=15.0,
        gt=0.0,
        le=100.0,
        description="Quotes with a larger price impact are rejected",
    )
    max_slippage_bps: int = Field(
        default=5000,
        ge=1,
        le=10_000,
        description="Upper bound on strategy slippage (bps)",
    )
    signer_provider: str = Field(
        default="",
        description="Wallet signer factory for live mode, as 'module:callable' taking a user id",
    )

    # ==================== Risk controls ====================
    daily_trade_cap: int = Field(
        default=20,
        ge=1,
        le=1000,
        description="Max non-failed trades per user since local midnight",
    )
    strategy_cooldown_seconds: int = Field(
        default=60,
        ge=0,
        le=86_400,
        description="Min seconds between two trades of the same strategy",
    )
    rate_limit_per_minute: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Per-user polls allowed per minute",
    )
    strategy_time_budget: float = Field(
        default=30.0,
        ge=1.0,
        le=300.0,
        description="Time budget for one strategy evaluation (seconds)",
    )
    batch_time_budget: float = Field(
        default=120.0,
        ge=1.0,
        le=900.0,
        description="Time budget for one whole poll (seconds)",
    )
    evaluation_workers: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Concurrent read-only strategy evaluations",
    )
    rebuy_window_hours: int = Field(
        default=24,
        ge=0,
        le=720,
        description="SNIPER skips tokens bought within this window",
    )
    spot_one_shot: bool = Field(
        default=True,
        description="Deactivate SPOT strategies after their first confirmed trade",
    )
    conditional_one_shot: bool = Field(
        default=True,
        description="Deactivate CONDITIONAL strategies after their first confirmed trade",
    )

    # ==================== Withdrawals ====================
    max_daily_withdrawals: int = Field(default=10, ge=1, le=100)
    min_withdrawal_sol: float = Field(default=0.01, gt=0.0)
    withdrawal_fee_sol: float = Field(default=0.001, ge=0.0)
    network_fee_sol: float = Field(default=0.000005, ge=0.0)

    # ==================== Logging ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="Log output format",
    )

    # ==================== Storage ====================
    data_dir: Path = Field(
        default=Path("data/store"),
        description="Strategy/trade store directory",
    )
    journal_dir: Path = Field(
        default=Path("data/journal"),
        description="Execution journal directory",
    )

    @field_validator("data_dir", "journal_dir", mode="before")
    @classmethod
    def parse_dir(cls, v: str | Path) -> Path:
        """Convert strings to Path objects."""
        return Path(v) if isinstance(v, str) else v

    def ensure_directories(self) -> None:
        """Create storage directories if missing."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.journal_dir.mkdir(parents=True, exist_ok=True)

    @property
    def is_paper_mode(self) -> bool:
        return self.mode == RunMode.PAPER

    @property
    def is_live_mode(self) -> bool:
        return self.mode == RunMode.LIVE

    def validate_for_live(self) -> list[str]:
        """Return the keys required for live mode that are missing."""
        missing = []
        if not self.birdeye_api_key:
            missing.append("BIRDEYE_API_KEY")
        if not self.rpc_url:
            missing.append("RPC_URL")
        if not self.signer_provider:
            missing.append("SIGNER_PROVIDER")
        return missing


# Process default (lazy), used by the CLI only.
_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the process default settings."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload the process default settings."""
    global _settings
    _settings = Settings()
    return _settings

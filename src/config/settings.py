"""
Configuration management with Pydantic validation.

Loads settings from YAML config file and environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

LIVE_CONFIRM_PHRASE = "YES_I_UNDERSTAND"


class OKXConfig(BaseModel):
    """OKX REST API configuration."""

    base_url: str = "https://www.okx.com"
    request_timeout_sec: float = Field(default=10.0, ge=1.0, le=60.0)


class RunConfig(BaseModel):
    """Runtime trading mode configuration."""

    mode: Literal["demo", "live"] = Field(default="demo", validation_alias="RUN_MODE")
    enable_trading: bool = Field(default=False, validation_alias="RUN_ENABLE_TRADING")
    live_confirm: str = Field(default="", validation_alias="RUN_LIVE_CONFIRM")

    model_config = {
        "populate_by_name": True,
    }


class TradingConfig(BaseModel):
    """Order defaults and protective order settings."""

    default_coin: str = "DOGE"
    quote_asset: str = "USDT"
    default_buy_amount_usdt: float = Field(default=1000.0, gt=0)
    test_buy_amount_usdt: float = Field(default=10.0, gt=0)
    stop_loss_pct: float = Field(default=2.0, gt=0.0, le=50.0)
    take_profit_pct: float = Field(default=5.0, gt=0.0, le=500.0)
    attach_protective_orders: bool = True
    # "conditional" attaches the stop only, "oco" also carries the take-profit trigger
    protective_order_type: Literal["conditional", "oco"] = "conditional"

    @field_validator("default_coin", "quote_asset")
    @classmethod
    def upper_asset(cls, v: str) -> str:
        return v.strip().upper()

    @property
    def default_symbol(self) -> str:
        return f"{self.default_coin}-{self.quote_asset}"


class RiskConfig(BaseModel):
    """Duplicate-signal and daily activity limits."""

    cooldown_seconds: int = Field(default=60, ge=0, le=86_400)
    max_daily_trades: int = Field(default=500, ge=1, le=100_000)
    min_balance_usdt: float = Field(default=50.0, ge=0.0)


class LedgerConfig(BaseModel):
    """Strategy position ledger backing store."""

    backend: Literal["file", "redis", "memory"] = "file"
    path: str = "./data/ledger/strategies.json"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "okx:"


class StorageConfig(BaseModel):
    """Storage paths configuration."""

    journal_path: str = "./data/journal"
    logs_path: str = "./logs"


class MonitoringConfig(BaseModel):
    """Monitoring and HTTP server configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_http: bool = False
    log_http_max_body_chars: int = Field(default=500, ge=0, le=5000)
    error_log_max_bytes: int = Field(default=5_000_000, ge=100_000, le=50_000_000)
    error_log_backup_count: int = Field(default=3, ge=1, le=20)
    metrics_enabled: bool = True
    metrics_port: int = Field(default=9090, ge=1024, le=65535)
    api_host: str = "0.0.0.0"
    api_port: int = Field(default=3000, ge=1024, le=65535)


class Settings(BaseSettings):
    """Main application settings."""

    run: RunConfig = Field(default_factory=RunConfig)

    # API credentials from environment
    okx_api_key: str = Field(default="", alias="OKX_API_KEY")
    okx_secret_key: str = Field(default="", alias="OKX_SECRET_KEY")
    okx_passphrase: str = Field(default="", alias="OKX_PASSPHRASE")

    # Sub-configurations
    okx: OKXConfig = Field(default_factory=OKXConfig)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "env_nested_delimiter": "__",
        "populate_by_name": True,
    }

    @property
    def simulated_trading(self) -> bool:
        """OKX demo trading is selected with a request header, not a separate host."""
        return self.run.mode == "demo"

    def trading_gate(self) -> tuple[bool, list[str]]:
        """Whether real orders may be sent, and if not, every reason why."""
        reasons: list[str] = []
        if not self.run.enable_trading:
            reasons.append("RUN_ENABLE_TRADING_FALSE")
        credentials = {
            "OKX_API_KEY": self.okx_api_key,
            "OKX_SECRET_KEY": self.okx_secret_key,
            "OKX_PASSPHRASE": self.okx_passphrase,
        }
        reasons.extend(f"{name} not set" for name, value in credentials.items() if not value)
        if self.run.mode == "live" and self.run.live_confirm != LIVE_CONFIRM_PHRASE:
            reasons.append("RUN_LIVE_CONFIRM missing/invalid")
        return not reasons, reasons


# The run block is nested in YAML but its switches are flat env vars.
_RUN_ENV = {
    "RUN_MODE": "mode",
    "RUN_ENABLE_TRADING": "enable_trading",
    "RUN_LIVE_CONFIRM": "live_confirm",
}

# Never written to a generated config file; credentials belong in .env.
_SECRET_FIELDS = {"okx_api_key", "okx_secret_key", "okx_passphrase"}


def load_settings(config_path: str | Path | None = None) -> Settings:
    """
    Build settings from `config.yaml` (or CONFIG_PATH) and the environment.

    Environment variables win over the file, the file wins over defaults. The
    `.env` beside the config file is read for credentials.
    """
    config_file = Path(config_path or os.environ.get("CONFIG_PATH", "config.yaml"))
    data: dict[str, Any] = {}
    if config_file.exists():
        with open(config_file) as f:
            data = yaml.safe_load(f) or {}

    run_env = {field: os.environ[name] for name, field in _RUN_ENV.items() if name in os.environ}
    if run_env:
        data["run"] = {**(data.get("run") or {}), **run_env}

    return Settings(**data, _env_file=config_file.parent / ".env")


def create_default_config(path: str | Path = "config.yaml") -> None:
    """Write every non-secret setting with its default value to `path`."""
    defaults = Settings(_env_file=None).model_dump(exclude=_SECRET_FIELDS)
    with open(path, "w") as f:
        yaml.safe_dump(defaults, f, default_flow_style=False, sort_keys=False)

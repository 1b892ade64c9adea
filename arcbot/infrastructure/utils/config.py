"""Configuration management for the trading agent.

Rules:
- YAML provides defaults for non-secret config.
- Secrets (Binance API key/secret) come from .env / environment variables and
  override YAML.
- The trading, stream and indicators sections are closed: unknown keys are
  rejected instead of silently ignored.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_INTERVALS = {
    "1m", "3m", "5m", "15m", "30m",
    "1h", "2h", "4h", "6h", "8h", "12h",
    "1d", "3d", "1w", "1M",
}


def _normalize_log_level(v: str) -> str:
    valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if str(v).upper() not in valid:
        raise ValueError(f"Log level must be one of: {sorted(valid)}")
    return str(v).upper()


class TradingConfig(BaseModel):
    """Signal and position parameters."""

    model_config = ConfigDict(extra="forbid")

    symbol: str = Field(default="BTCUSDT")
    interval: str = Field(default="1h")
    leverage: int = Field(default=50, ge=1, le=125)
    position_size_fraction: float = Field(default=0.05, gt=0, le=1.0)
    min_ema_diff: float = Field(default=1000.0, ge=0)
    stop_loss: float = Field(default=0.02, gt=0, le=1.0)
    take_profit: float = Field(default=0.05, gt=0)
    max_price_diff: float = Field(default=100.0, ge=0)
    max_extreme_diff: float = Field(default=50.0, ge=0)

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        s = str(v).strip().upper()
        if not s.isalnum():
            raise ValueError("symbol must be alphanumeric (e.g. BTCUSDT)")
        return s

    @field_validator("interval")
    @classmethod
    def validate_interval(cls, v: str) -> str:
        if v not in _INTERVALS:
            raise ValueError(f"interval must be one of: {sorted(_INTERVALS)}")
        return v


class StreamConfig(BaseModel):
    """Heartbeat, idle detection and reconnect timing (seconds)."""

    model_config = ConfigDict(extra="forbid")

    ping_interval: float = Field(default=30.0, gt=0)
    pong_timeout: float = Field(default=5.0, gt=0)
    idle_threshold: float = Field(default=120.0, gt=0)
    base_delay: float = Field(default=5.0, gt=0)
    max_delay: float = Field(default=30.0, gt=0)
    max_reconnect_attempts: int = Field(default=5, ge=0, le=1000)

    @field_validator("max_delay")
    @classmethod
    def validate_max_delay(cls, v: float, info) -> float:
        if "base_delay" in info.data and v < info.data["base_delay"]:
            raise ValueError("max_delay must be >= base_delay")
        return v


class IndicatorsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    closing_price_window: int = Field(default=200, ge=50, le=5000)
    ema_history_window: int = Field(default=20, ge=5, le=1000)


class BinanceConfig(BaseModel):
    api_key: str = Field(default="", description="Binance futures API key")
    api_secret: str = Field(default="", description="Binance futures API secret")
    base_url: str = Field(default="https://fapi.binance.com")
    ws_url: str = Field(default="wss://fstream.binance.com/ws")
    recv_window: int = Field(default=5000, ge=1, le=60000)


class SignalSinkConfig(BaseModel):
    url: Optional[str] = Field(default=None, description="HTTP endpoint receiving trade notifications")
    timeout: float = Field(default=5.0, gt=0)


class AgentConfig(BaseSettings):
    """Main configuration.

    YAML is parsed as the base config, env overrides for secrets and a few
    operational keys are applied on top.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True)
    metrics_path: str = Field(default="data/metrics.json")

    trading: TradingConfig = Field(default_factory=TradingConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    indicators: IndicatorsConfig = Field(default_factory=IndicatorsConfig)
    binance: BinanceConfig = Field(default_factory=BinanceConfig)
    signal_sink: SignalSinkConfig = Field(default_factory=SignalSinkConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        return _normalize_log_level(v)

    @property
    def kline_channel(self) -> str:
        return f"{self.trading.symbol.lower()}@kline_{self.trading.interval}"

    @classmethod
    def from_yaml(cls, yaml_path: Path) -> "AgentConfig":
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        try:
            with open(yaml_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}") from e

        try:
            base = cls.model_validate(data)
        except ValidationError as e:
            raise ValueError(f"Configuration validation error: {e}") from e

        return apply_env_overrides(base)


def apply_env_overrides(config: AgentConfig) -> AgentConfig:
    if os.getenv("BINANCE__API_KEY"):
        config.binance.api_key = os.environ["BINANCE__API_KEY"]
    if os.getenv("BINANCE__API_SECRET"):
        config.binance.api_secret = os.environ["BINANCE__API_SECRET"]
    if os.getenv("SIGNAL_SINK__URL"):
        config.signal_sink.url = os.environ["SIGNAL_SINK__URL"]
    if os.getenv("LOG_LEVEL"):
        config.log_level = _normalize_log_level(os.environ["LOG_LEVEL"])
    return config


def load_config(config_path: Optional[Path] = None) -> AgentConfig:
    """Load configuration from YAML + .env (env wins for secrets)."""
    load_dotenv(dotenv_path=Path(".env"))

    if config_path is None:
        possible_paths = [Path("config/default.yaml"), Path("config/config.yaml"), Path("config.yaml")]
        for path in possible_paths:
            if path.exists():
                config_path = path
                break
        else:
            raise FileNotFoundError("No configuration file found. Create config/default.yaml or specify config path.")

    return AgentConfig.from_yaml(config_path)

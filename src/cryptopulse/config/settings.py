"""Engine settings loaded from YAML with per-environment overrides."""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from cryptopulse.strategies.base import ConfigurationError

ENV_VAR = "CRYPTOPULSE_ENV"
DEFAULT_ENVIRONMENT = "production"


class BacktestSettings(BaseModel):
    """Simulation costs and resource bounds for backtests."""

    slippage: float = Field(default=0.001, ge=0, lt=1)
    commission: float = Field(default=0.001, ge=0, lt=1)
    spread: float = Field(default=0.0005, ge=0, lt=1)
    starting_balance: float = Field(default=10_000.0, gt=0)
    risk_free_rate: float = 0.0
    max_concurrent_backtests: int = Field(default=3, ge=1)
    max_backtest_duration: float = Field(default=3600.0, gt=0, description="Seconds")
    max_parameter_combinations: int = Field(default=250, ge=1)
    walk_forward_max_periods: int = Field(default=12, ge=1)


class RiskSettings(BaseModel):
    """Engine-wide risk limits."""

    min_confidence: float = Field(default=0.0, ge=0, le=1)
    max_daily_loss: float = Field(default=0.10, gt=0, le=1)
    max_daily_trades: int = Field(default=50, ge=1)


class FeedSettings(BaseModel):
    """Market data feed behaviour."""

    backoff_base: float = Field(default=1.0, gt=0)
    backoff_cap: float = Field(default=30.0, gt=0)
    max_queue_depth: int = Field(default=1000, ge=1)
    poll_interval: float = Field(default=5.0, gt=0)
    stale_after: float = Field(default=120.0, gt=0)
    interval: str = "1m"


class DispatcherSettings(BaseModel):
    """Signal delivery behaviour."""

    bucket_seconds: int = Field(default=60, ge=1)
    dedup_window_seconds: float = Field(default=300.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_backoff: float = Field(default=0.5, ge=0)
    dead_letter_dir: Path = Path("logs")


class ExchangeSettings(BaseModel):
    """Per-exchange connection settings."""

    rate_limit_per_minute: int = Field(default=60, ge=1)
    base_url: str | None = None
    timeout: float = Field(default=30.0, gt=0)


def _default_exchanges() -> dict[str, ExchangeSettings]:
    return {
        "binance": ExchangeSettings(rate_limit_per_minute=1200),
        "coindcx": ExchangeSettings(rate_limit_per_minute=100),
    }


class EngineSettings(BaseModel):
    """Top-level engine configuration."""

    environment: str = DEFAULT_ENVIRONMENT
    database_path: Path = Path("data/cryptopulse.db")
    backtesting: BacktestSettings = Field(default_factory=BacktestSettings)
    risk: RiskSettings = Field(default_factory=RiskSettings)
    feed: FeedSettings = Field(default_factory=FeedSettings)
    dispatcher: DispatcherSettings = Field(default_factory=DispatcherSettings)
    exchanges: dict[str, ExchangeSettings] = Field(default_factory=_default_exchanges)

    def exchange(self, name: str) -> ExchangeSettings:
        return self.exchanges.get(name, ExchangeSettings())


def load_yaml_config(path: Path) -> dict[str, Any]:
    """
    Load YAML configuration file.

    Args:
        path: Path to YAML file

    Returns:
        Parsed configuration dict

    Raises:
        ConfigurationError: If file doesn't exist or is invalid
    """
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}")

    if not isinstance(config, dict):
        raise ConfigurationError(f"Config must be a dict, got {type(config)}")

    return config


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def build_settings(raw: dict[str, Any], environment: str | None = None) -> EngineSettings:
    """
    Build settings from a raw dict, applying an environment profile.

    The profile is chosen from ``environment``, else ``CRYPTOPULSE_ENV``,
    else production. Profiles live under an ``environments`` key and are
    deep-merged over the base settings.

    Raises:
        ConfigurationError: If the settings or the profile are invalid
    """
    environment = environment or os.environ.get(ENV_VAR) or DEFAULT_ENVIRONMENT
    raw = dict(raw)
    profiles = raw.pop("environments", None) or {}

    if profiles and environment not in profiles:
        available = ", ".join(profiles)
        raise ConfigurationError(f"Unknown environment '{environment}'. Available: {available}")

    merged = _deep_merge(raw, profiles.get(environment) or {})
    merged["environment"] = environment

    if "exchanges" in merged:
        merged["exchanges"] = _deep_merge(
            {name: s.model_dump() for name, s in _default_exchanges().items()},
            merged["exchanges"],
        )

    try:
        return EngineSettings.model_validate(merged)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid engine settings: {e}")


def load_settings(path: Path | None = None, environment: str | None = None) -> EngineSettings:
    """
    Load engine settings from a YAML file.

    A missing default path yields default settings; an explicit path must exist.
    """
    if path is None:
        default = Path("config/engine.yaml")
        raw = load_yaml_config(default) if default.exists() else {}
    else:
        raw = load_yaml_config(path)
    return build_settings(raw, environment)

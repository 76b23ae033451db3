"""Configuration loading and management."""

from cryptopulse.strategies.base import ConfigurationError

from .loader import create_strategy_from_config, load_all_strategies, load_strategy_from_file
from .settings import (
    BacktestSettings,
    DispatcherSettings,
    EngineSettings,
    ExchangeSettings,
    FeedSettings,
    RiskSettings,
    build_settings,
    load_settings,
    load_yaml_config,
)

__all__ = [
    "ConfigurationError",
    "load_yaml_config",
    "create_strategy_from_config",
    "load_strategy_from_file",
    "load_all_strategies",
    "EngineSettings",
    "BacktestSettings",
    "RiskSettings",
    "FeedSettings",
    "DispatcherSettings",
    "ExchangeSettings",
    "build_settings",
    "load_settings",
]

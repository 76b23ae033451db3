"""Strategy configuration loading and template defaults."""

from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from cryptopulse.strategies.base import (
    ConfigurationError,
    RiskParameters,
    StrategyConfig,
    StrategyType,
)
from cryptopulse.strategies.evaluator import StrategyEvaluator
from cryptopulse.strategies.rules import get_rule

from .settings import load_yaml_config

logger = structlog.get_logger()


def create_strategy_from_config(config: dict[str, Any], default_id: str | None = None) -> StrategyConfig:
    """
    Create a validated strategy configuration from a raw dict.

    Missing risk parameters are filled from the strategy type's template.

    Args:
        config: Dict with 'type', 'params' and optional 'id', 'name',
            'revision', 'risk' and 'user_id'
        default_id: Id used when the dict has none

    Returns:
        Validated StrategyConfig

    Raises:
        ConfigurationError: If configuration is invalid
    """
    strategy_type = config.get("type")
    if not strategy_type:
        raise ConfigurationError("Strategy config must have 'type' field")

    try:
        resolved_type = StrategyType(strategy_type)
    except ValueError:
        available = ", ".join(t.value for t in StrategyType)
        raise ConfigurationError(f"Unknown strategy type '{strategy_type}'. Available: {available}")

    strategy_id = config.get("id") or default_id
    if not strategy_id:
        raise ConfigurationError("Strategy config must have 'id' field")

    try:
        overrides = RiskParameters.model_validate(config.get("risk") or {})
        risk = {
            **get_rule(resolved_type).default_risk.model_dump(),
            **overrides.model_dump(exclude_unset=True),
        }
        strategy = StrategyConfig.model_validate(
            {
                "id": strategy_id,
                "revision": config.get("revision", 1),
                "type": resolved_type,
                "name": config.get("name", strategy_id),
                "parameters": config.get("params") or {},
                "riskParameters": risk,
                "userId": config.get("user_id"),
            }
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid strategy config '{strategy_id}': {e}")

    StrategyEvaluator().validate(strategy)
    return strategy


def load_strategy_from_file(path: Path) -> StrategyConfig:
    """
    Load a strategy from a YAML file.

    Args:
        path: Path to strategy YAML file

    Returns:
        Validated StrategyConfig

    Raises:
        ConfigurationError: If file is invalid or the strategy is disabled
    """
    config = load_yaml_config(path)

    if not config.get("enabled", True):
        raise ConfigurationError(f"Strategy '{config.get('name', path.stem)}' is disabled")

    return create_strategy_from_config(config, default_id=path.stem)


def load_all_strategies(directory: Path) -> list[StrategyConfig]:
    """
    Load all enabled strategies from a directory.

    Disabled files are skipped; an invalid file aborts loading.

    Args:
        directory: Path to strategies directory

    Returns:
        List of strategy configurations, ordered by file name

    Raises:
        ConfigurationError: If any enabled file is invalid
    """
    strategies: list[StrategyConfig] = []

    if not directory.exists():
        return strategies

    for path in sorted(directory.glob("*.yaml")):
        raw = load_yaml_config(path)
        if not raw.get("enabled", True):
            logger.info("Skipping disabled strategy", path=str(path))
            continue
        strategies.append(create_strategy_from_config(raw, default_id=path.stem))

    return strategies

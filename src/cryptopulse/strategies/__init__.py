"""Trading strategy configuration and evaluation."""

from .base import (
    FLAT,
    ConfigurationError,
    MarketWindow,
    PositionContext,
    RiskParameters,
    Signal,
    SignalAction,
    StrategyConfig,
    StrategyType,
)
from .evaluator import StrategyEvaluator
from .rules import STRATEGY_RULES, RuleDecision, StrategyRule, get_rule

__all__ = [
    "FLAT",
    "ConfigurationError",
    "MarketWindow",
    "PositionContext",
    "RiskParameters",
    "RuleDecision",
    "STRATEGY_RULES",
    "Signal",
    "SignalAction",
    "StrategyConfig",
    "StrategyEvaluator",
    "StrategyRule",
    "StrategyType",
    "get_rule",
]

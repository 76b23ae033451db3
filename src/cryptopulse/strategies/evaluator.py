"""Stateless strategy evaluation shared by the live engine and the backtester."""

import math
from typing import Any

from cryptopulse.indicators import IndicatorSet, IndicatorSpec

from .base import (
    FLAT,
    ConfigurationError,
    MarketWindow,
    PositionContext,
    Signal,
    SignalAction,
    StrategyConfig,
)
from .rules import RuleDecision, get_rule


def _finite(basis: dict[str, float]) -> dict[str, float]:
    return {k: v for k, v in basis.items() if isinstance(v, (int, float)) and math.isfinite(v)}


class StrategyEvaluator:
    """
    Turns a strategy configuration plus current market data into a Signal.

    The evaluator keeps no state between calls. Whether the strategy holds a
    position is passed in by the caller, so one instance can serve any
    number of symbols and strategies concurrently.

    Example:
        evaluator = StrategyEvaluator()
        evaluator.validate(config)
        engine = IndicatorEngine(evaluator.required_indicators(config))
        for candle in candles:
            window = MarketWindow(candles=(previous, candle))
            signal = evaluator.evaluate(config, window, engine.update(candle))
    """

    def validate(self, config: StrategyConfig) -> None:
        """
        Validate a configuration before any evaluation.

        Raises:
            ConfigurationError: If parameters are invalid for the strategy type
        """
        rule = get_rule(config.type)
        params = rule.params(config.parameters)
        rule.validate(params)
        try:
            for spec in rule.indicators(params).values():
                spec.build()
        except ValueError as e:
            raise ConfigurationError(f"Invalid indicator parameters for {config.version}: {e}")

    def params(self, config: StrategyConfig) -> dict[str, Any]:
        """Effective parameters (template defaults merged with configured values)."""
        return get_rule(config.type).params(config.parameters)

    def required_indicators(self, config: StrategyConfig) -> list[IndicatorSpec]:
        """Indicators the caller must maintain for this configuration."""
        rule = get_rule(config.type)
        return list(rule.indicators(rule.params(config.parameters)).values())

    def evaluate(
        self,
        config: StrategyConfig,
        window: MarketWindow,
        indicators: IndicatorSet,
        context: PositionContext | None = None,
    ) -> Signal | None:
        """
        Evaluate one candle.

        Args:
            config: Strategy configuration
            window: Recent candles for the stream, current candle last
            indicators: Indicator values after the current candle
            context: Open position for this strategy and symbol

        Returns:
            A buy or sell Signal, or None. Indicators that are not warmed up
            yield None rather than an error.
        """
        context = context or FLAT
        rule = get_rule(config.type)
        params = rule.params(config.parameters)

        exit_signal = self._check_hold_time(config, params, window, context)
        if exit_signal is not None:
            return exit_signal

        if not indicators.is_ready(*rule.required(params)):
            return None

        decision = rule.evaluate(params, window, indicators, context)
        if decision is None:
            return None
        if decision.action == SignalAction.SELL and not context.in_position:
            return None

        return self._to_signal(config, params, window, decision)

    def _check_hold_time(
        self,
        config: StrategyConfig,
        params: dict[str, Any],
        window: MarketWindow,
        context: PositionContext,
    ) -> Signal | None:
        max_hold = params.get("maxHoldTime")
        if not max_hold or not context.in_position or context.opened_at is None:
            return None

        held = (window.current.timestamp - context.opened_at).total_seconds()
        if held < max_hold:
            return None

        decision = RuleDecision(
            SignalAction.SELL, 1.0, "max hold time exceeded", {"held_seconds": held}
        )
        return self._to_signal(config, params, window, decision)

    def _to_signal(
        self,
        config: StrategyConfig,
        params: dict[str, Any],
        window: MarketWindow,
        decision: RuleDecision,
    ) -> Signal:
        candle = window.current
        price = candle.close
        stop_loss_price = None
        take_profit_price = None

        if decision.action == SignalAction.BUY:
            stop_loss = params.get("stopLoss")
            take_profit = params.get("takeProfit") or params.get("profitTarget")
            if stop_loss:
                stop_loss_price = price * (1 - stop_loss)
            if take_profit:
                take_profit_price = price * (1 + take_profit)

        return Signal(
            strategy_id=config.id,
            strategy_revision=config.revision,
            symbol=candle.symbol,
            exchange=candle.exchange,
            action=decision.action,
            confidence=decision.confidence,
            suggested_price=price,
            generated_at=candle.timestamp,
            stop_loss_price=stop_loss_price,
            take_profit_price=take_profit_price,
            basis=_finite(decision.basis),
            reason=decision.reason,
            user_id=config.user_id,
        )

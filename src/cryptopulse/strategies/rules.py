"""Entry and exit rules, one per strategy type.

Rules are stateless. Each rule declares the indicators it reads, its
parameter defaults (the strategy template) and a single ``evaluate`` that
turns the current indicator values into a decision. Strategies are long-only:
a sell closes the open position for the symbol.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from cryptopulse.indicators import IndicatorSet, IndicatorSpec

from .base import (
    ConfigurationError,
    MarketWindow,
    PositionContext,
    RiskParameters,
    SignalAction,
    StrategyType,
)


@dataclass(frozen=True)
class RuleDecision:
    """Outcome of a rule before it is turned into a Signal."""

    action: SignalAction
    confidence: float
    reason: str
    basis: dict[str, float] = field(default_factory=dict, hash=False)


def _clip(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))


def _ratio(excess: float, scale: float) -> float:
    """How far a value exceeds its threshold, as a fraction of ``scale``, clipped to [0, 1]."""
    if scale <= 0:
        return 1.0 if excess > 0 else 0.0
    return _clip(excess / scale)


def _buy(confidence: float, reason: str, **basis: float) -> RuleDecision:
    return RuleDecision(SignalAction.BUY, _clip(confidence), reason, basis)


def _sell(confidence: float, reason: str, **basis: float) -> RuleDecision:
    return RuleDecision(SignalAction.SELL, _clip(confidence), reason, basis)


class StrategyRule(ABC):
    """
    Base class for strategy rules.

    Subclasses set ``type``, ``defaults`` and ``default_risk`` and implement
    ``indicators`` and ``evaluate``.
    """

    type: StrategyType
    defaults: dict[str, Any] = {}
    default_risk: RiskParameters = RiskParameters()

    def params(self, parameters: dict[str, Any]) -> dict[str, Any]:
        """Merge configured parameters over the template defaults."""
        return {**self.defaults, **parameters}

    def validate(self, params: dict[str, Any]) -> None:
        """
        Check merged parameters.

        Raises:
            ConfigurationError: If a parameter is invalid
        """
        unknown = set(params) - set(self.defaults)
        if unknown:
            raise ConfigurationError(
                f"Unknown parameters for {self.type.value}: {sorted(unknown)}"
            )
        for name in ("stopLoss", "takeProfit", "profitTarget"):
            value = params.get(name)
            if value is not None and not 0 < value < 1:
                raise ConfigurationError(f"{name} must be between 0 and 1, got {value}")
        hold = params.get("maxHoldTime")
        if hold is not None and hold <= 0:
            raise ConfigurationError("maxHoldTime must be positive")

    @staticmethod
    def _require_periods(params: dict[str, Any], *names: str) -> None:
        for name in names:
            value = params.get(name)
            if value is None:
                continue
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")

    @abstractmethod
    def indicators(self, params: dict[str, Any]) -> dict[str, IndicatorSpec]:
        """Indicators this rule reads, keyed by role."""

    def required(self, params: dict[str, Any]) -> list[IndicatorSpec]:
        """Indicators that must be warmed up before the rule can decide."""
        return list(self.indicators(params).values())

    @abstractmethod
    def evaluate(
        self,
        params: dict[str, Any],
        window: MarketWindow,
        indicators: IndicatorSet,
        context: PositionContext,
    ) -> RuleDecision | None:
        """Decide on the current candle, or return None for no signal."""


class MomentumRule(StrategyRule):
    """
    Buy momentum breakouts, sell reversals.

    Entry requires the rate of change over ``lookbackPeriod`` to reach
    ``momentumThreshold`` and be no weaker than on the previous candle,
    with price above its SMA, RSI above 50 and volume above average.

    The "not fading" check (rate of change at least its previous value) is
    part of the entry rule: a breakout whose rate of change is already
    falling produces no buy, and the first candle with a rate of change has
    no previous value, so it never buys.
    """

    type = StrategyType.MOMENTUM
    defaults = {
        "lookbackPeriod": 20,
        "momentumThreshold": 0.02,
        "smaPeriod": None,
        "rsiPeriod": None,
        "volumePeriod": None,
        "stopLoss": 0.02,
        "takeProfit": 0.04,
        "maxHoldTime": 24 * 60 * 60,
    }
    default_risk = RiskParameters(
        max_risk_per_trade=0.02, max_position_size=0.1, max_concurrent_trades=3
    )

    def validate(self, params: dict[str, Any]) -> None:
        super().validate(params)
        self._require_periods(params, "lookbackPeriod", "smaPeriod", "rsiPeriod", "volumePeriod")
        if params["momentumThreshold"] <= 0:
            raise ConfigurationError("momentumThreshold must be positive")

    def indicators(self, params: dict[str, Any]) -> dict[str, IndicatorSpec]:
        lookback = params["lookbackPeriod"]
        return {
            "roc": IndicatorSpec.of("roc", period=lookback),
            "sma": IndicatorSpec.of("sma", period=params["smaPeriod"] or lookback),
            "rsi": IndicatorSpec.of("rsi", period=params["rsiPeriod"] or min(14, lookback)),
            "volume": IndicatorSpec.of("volume_sma", period=params["volumePeriod"] or lookback),
        }

    def evaluate(self, params, window, indicators, context):
        specs = self.indicators(params)
        close = window.current.close
        volume = window.current.volume
        threshold = params["momentumThreshold"]
        roc = indicators.get(specs["roc"])
        sma = indicators.get(specs["sma"])
        rsi = indicators.get(specs["rsi"])
        avg_volume = indicators.get(specs["volume"])
        basis = {"roc": roc, "sma": sma, "rsi": rsi, "avg_volume": avg_volume}

        if context.in_position:
            if roc <= -threshold:
                return _sell(_ratio(-roc - threshold, threshold) * 0.5 + 0.5, "momentum reversed", **basis)
            if close < sma:
                return _sell(0.5 + _ratio(sma - close, sma * threshold) * 0.5, "price below sma", **basis)
            if rsi < 30:
                return _sell(0.5 + _ratio(30 - rsi, 30) * 0.5, "rsi collapsed", **basis)

        previous_roc = indicators.previous(specs["roc"])
        if math.isnan(previous_roc):
            return None

        if (
            roc >= threshold
            and roc >= previous_roc
            and close > sma
            and rsi > 50
            and volume > avg_volume
        ):
            confidence = (
                0.5 * _ratio(roc - threshold, 2 * threshold)
                + 0.25 * _ratio(rsi - 50, 50)
                + 0.25 * _ratio(volume - avg_volume, avg_volume)
            )
            return _buy(confidence, "momentum breakout", previous_roc=previous_roc, **basis)
        return None


class MeanReversionRule(StrategyRule):
    """Buy oversold dips below the lower Bollinger band, sell on recovery."""

    type = StrategyType.MEAN_REVERSION
    defaults = {
        "lookbackPeriod": 14,
        "oversoldLevel": 30,
        "overboughtLevel": 70,
        "exitRsi": 50,
        "bollingerPeriod": 20,
        "bollingerStdDev": 2.0,
        "volumePeriod": 14,
        "stopLoss": 0.03,
        "takeProfit": 0.02,
        "maxHoldTime": 12 * 60 * 60,
    }
    default_risk = RiskParameters(
        max_risk_per_trade=0.015, max_position_size=0.08, max_concurrent_trades=5
    )

    def validate(self, params: dict[str, Any]) -> None:
        super().validate(params)
        self._require_periods(params, "lookbackPeriod", "bollingerPeriod", "volumePeriod")
        if not 0 < params["oversoldLevel"] < params["overboughtLevel"] < 100:
            raise ConfigurationError("Require 0 < oversoldLevel < overboughtLevel < 100")
        if params["bollingerStdDev"] <= 0:
            raise ConfigurationError("bollingerStdDev must be positive")

    def indicators(self, params: dict[str, Any]) -> dict[str, IndicatorSpec]:
        return {
            "rsi": IndicatorSpec.of("rsi", period=params["lookbackPeriod"]),
            "bands": IndicatorSpec.of(
                "bollinger",
                period=params["bollingerPeriod"],
                std_dev=params["bollingerStdDev"],
            ),
            "volume": IndicatorSpec.of("volume_sma", period=params["volumePeriod"]),
        }

    def evaluate(self, params, window, indicators, context):
        specs = self.indicators(params)
        close = window.current.close
        rsi = indicators.get(specs["rsi"])
        upper = indicators.get(specs["bands"], "upper")
        lower = indicators.get(specs["bands"], "lower")
        avg_volume = indicators.get(specs["volume"])
        basis = {"rsi": rsi, "upper": upper, "lower": lower, "avg_volume": avg_volume}
        oversold = params["oversoldLevel"]
        overbought = params["overboughtLevel"]

        if context.in_position:
            if rsi > params["exitRsi"] or close > upper:
                confidence = 0.5 + 0.5 * _ratio(rsi - params["exitRsi"], overbought - params["exitRsi"])
                return _sell(confidence, "reverted to mean", **basis)

        if rsi < oversold and close < lower and window.current.volume > avg_volume:
            band_width = upper - lower
            confidence = 0.6 * _ratio(oversold - rsi, oversold) + 0.4 * _ratio(lower - close, band_width / 2)
            return _buy(confidence, "oversold below lower band", **basis)
        return None


class TrendFollowingRule(StrategyRule):
    """Follow SMA crossovers confirmed by a positive MACD histogram."""

    type = StrategyType.TREND_FOLLOWING
    defaults = {
        "fastPeriod": 10,
        "slowPeriod": 30,
        "macdFast": 12,
        "macdSlow": 26,
        "macdSignal": 9,
        "volumePeriod": 20,
        "stopLoss": 0.025,
        "takeProfit": 0.05,
        "maxHoldTime": 48 * 60 * 60,
    }
    default_risk = RiskParameters(
        max_risk_per_trade=0.025, max_position_size=0.12, max_concurrent_trades=2
    )

    def validate(self, params: dict[str, Any]) -> None:
        super().validate(params)
        self._require_periods(
            params, "fastPeriod", "slowPeriod", "macdFast", "macdSlow", "macdSignal", "volumePeriod"
        )
        if params["fastPeriod"] >= params["slowPeriod"]:
            raise ConfigurationError("fastPeriod must be shorter than slowPeriod")
        if params["macdFast"] >= params["macdSlow"]:
            raise ConfigurationError("macdFast must be shorter than macdSlow")

    def indicators(self, params: dict[str, Any]) -> dict[str, IndicatorSpec]:
        return {
            "fast": IndicatorSpec.of("sma", period=params["fastPeriod"]),
            "slow": IndicatorSpec.of("sma", period=params["slowPeriod"]),
            "macd": IndicatorSpec.of(
                "macd",
                fast=params["macdFast"],
                slow=params["macdSlow"],
                signal=params["macdSignal"],
            ),
            "volume": IndicatorSpec.of("volume_sma", period=params["volumePeriod"]),
        }

    def evaluate(self, params, window, indicators, context):
        specs = self.indicators(params)
        close = window.current.close
        fast = indicators.get(specs["fast"])
        slow = indicators.get(specs["slow"])
        histogram = indicators.get(specs["macd"], "histogram")
        avg_volume = indicators.get(specs["volume"])
        basis = {"sma_fast": fast, "sma_slow": slow, "macd_histogram": histogram, "avg_volume": avg_volume}

        if context.in_position:
            if fast < slow or histogram < 0 or close < fast:
                return _sell(0.5 + 0.5 * _ratio(slow - fast, slow * 0.01), "trend reversed", **basis)

        if fast > slow and histogram > 0 and close > fast and window.current.volume > avg_volume:
            confidence = (
                0.5 * _ratio(fast - slow, slow * 0.02)
                + 0.25 * _ratio(histogram, close * 0.005)
                + 0.25 * _ratio(window.current.volume - avg_volume, avg_volume)
            )
            return _buy(confidence, "uptrend confirmed", **basis)
        return None


class ScalpingRule(StrategyRule):
    """Enter on bullish volume spikes in volatile candles, exit on bearish spikes."""

    type = StrategyType.SCALPING
    defaults = {
        "profitTarget": 0.005,
        "stopLoss": 0.003,
        "maxHoldTime": 5 * 60,
        "volumeThreshold": 2.0,
        "volumePeriod": 20,
        "minVolatility": 0.001,
        "rsiPeriod": 14,
        "overboughtLevel": 70,
    }
    default_risk = RiskParameters(
        max_risk_per_trade=0.01, max_position_size=0.05, max_concurrent_trades=10
    )

    def validate(self, params: dict[str, Any]) -> None:
        super().validate(params)
        self._require_periods(params, "volumePeriod", "rsiPeriod")
        if params["volumeThreshold"] <= 1:
            raise ConfigurationError("volumeThreshold must be greater than 1")

    def indicators(self, params: dict[str, Any]) -> dict[str, IndicatorSpec]:
        return {
            "volume": IndicatorSpec.of("volume_sma", period=params["volumePeriod"]),
            "rsi": IndicatorSpec.of("rsi", period=params["rsiPeriod"]),
        }

    def evaluate(self, params, window, indicators, context):
        specs = self.indicators(params)
        candle = window.current
        avg_volume = indicators.get(specs["volume"])
        rsi = indicators.get(specs["rsi"])
        if avg_volume <= 0:
            return None

        spike = candle.volume / avg_volume
        volatility = (candle.high - candle.low) / candle.close
        basis = {"volume_spike": spike, "volatility": volatility, "rsi": rsi}
        threshold = params["volumeThreshold"]

        if context.in_position and spike >= threshold and candle.close < candle.open:
            return _sell(0.5 + 0.5 * _ratio(spike - threshold, threshold), "bearish volume spike", **basis)

        if (
            spike >= threshold
            and volatility > params["minVolatility"]
            and candle.is_bullish
            and rsi < params["overboughtLevel"]
        ):
            confidence = 0.6 * _ratio(spike - threshold, threshold) + 0.4 * _ratio(
                volatility - params["minVolatility"], params["minVolatility"] * 4
            )
            return _buy(confidence, "bullish volume spike", **basis)
        return None


class ArbitrageRule(StrategyRule):
    """
    Buy when another exchange quotes the symbol higher by at least ``minSpread``.

    ``volumeThreshold`` is the minimum candle volume in quote currency.
    """

    type = StrategyType.ARBITRAGE
    defaults = {
        "minSpread": 0.01,
        "maxHoldTime": 10 * 60,
        "volumeThreshold": 1000,
        "stopLoss": 0.01,
        "takeProfit": None,
    }
    default_risk = RiskParameters(
        max_risk_per_trade=0.005, max_position_size=0.03, max_concurrent_trades=15
    )

    def params(self, parameters: dict[str, Any]) -> dict[str, Any]:
        params = super().params(parameters)
        if params["takeProfit"] is None:
            params["takeProfit"] = params["minSpread"]
        return params

    def validate(self, params: dict[str, Any]) -> None:
        super().validate(params)
        if not 0 < params["minSpread"] < 1:
            raise ConfigurationError("minSpread must be between 0 and 1")

    def indicators(self, params: dict[str, Any]) -> dict[str, IndicatorSpec]:
        return {}

    def evaluate(self, params, window, indicators, context):
        if not window.reference_prices:
            return None

        candle = window.current
        exchange, best = max(window.reference_prices.items(), key=lambda item: item[1])
        spread = (best - candle.close) / candle.close
        basis = {"spread": spread, "reference_price": best}

        if context.in_position and spread <= 0:
            return _sell(1.0, f"spread vs {exchange} closed", **basis)

        min_spread = params["minSpread"]
        if spread >= min_spread and candle.volume * candle.close >= params["volumeThreshold"]:
            return _buy(0.5 + 0.5 * _ratio(spread - min_spread, min_spread), f"spread vs {exchange}", **basis)
        return None


class GridRule(StrategyRule):
    """
    Trade level crossings of a price grid around an anchor.

    The anchor is ``basePrice`` when set, else the SMA over ``anchorPeriod``.
    Levels sit at ``anchor * (1 +/- k * gridSpacing)`` for k = 1..gridLevels.
    A downward crossing of a lower level buys; an upward crossing of an
    upper level sells.
    """

    type = StrategyType.GRID
    defaults = {
        "gridSpacing": 0.01,
        "gridLevels": 5,
        "anchorPeriod": 50,
        "basePrice": None,
        "stopLoss": 0.05,
        "takeProfit": None,
        "maxHoldTime": None,
    }
    default_risk = RiskParameters(
        max_risk_per_trade=0.01, max_position_size=0.05, max_concurrent_trades=5
    )

    def params(self, parameters: dict[str, Any]) -> dict[str, Any]:
        params = super().params(parameters)
        if params["takeProfit"] is None:
            params["takeProfit"] = params["gridSpacing"]
        return params

    def validate(self, params: dict[str, Any]) -> None:
        super().validate(params)
        self._require_periods(params, "gridLevels", "anchorPeriod")
        if not 0 < params["gridSpacing"] < 1 / params["gridLevels"]:
            raise ConfigurationError("gridSpacing must be positive and keep every level above zero")
        if params["basePrice"] is not None and params["basePrice"] <= 0:
            raise ConfigurationError("basePrice must be positive")

    def indicators(self, params: dict[str, Any]) -> dict[str, IndicatorSpec]:
        if params["basePrice"] is not None:
            return {}
        return {"anchor": IndicatorSpec.of("sma", period=params["anchorPeriod"])}

    def evaluate(self, params, window, indicators, context):
        previous = window.previous
        if previous is None:
            return None

        specs = self.indicators(params)
        anchor = params["basePrice"] or indicators.get(specs["anchor"])
        close = window.current.close
        spacing = params["gridSpacing"]
        levels = params["gridLevels"]

        if context.in_position:
            for k in range(levels, 0, -1):
                level = anchor * (1 + k * spacing)
                if previous.close < level <= close:
                    return _sell(k / levels, f"crossed grid level +{k}", anchor=anchor, level=level)

        for k in range(levels, 0, -1):
            level = anchor * (1 - k * spacing)
            if previous.close > level >= close:
                return _buy(k / levels, f"crossed grid level -{k}", anchor=anchor, level=level)
        return None


class DCARule(StrategyRule):
    """
    Dollar-cost averaging: buy on the first candle of every ``intervalSeconds`` bucket.

    Buying below the SMA raises confidence. Never sells; positions close only
    through stop-loss or take-profit.
    """

    type = StrategyType.DCA
    defaults = {
        "intervalSeconds": 24 * 60 * 60,
        "smaPeriod": 20,
        "dipScale": 0.05,
        "stopLoss": 0.1,
        "takeProfit": None,
        "maxHoldTime": None,
    }
    default_risk = RiskParameters(
        max_risk_per_trade=0.01, max_position_size=0.05, max_concurrent_trades=10
    )

    def validate(self, params: dict[str, Any]) -> None:
        super().validate(params)
        self._require_periods(params, "intervalSeconds", "smaPeriod")
        if params["dipScale"] <= 0:
            raise ConfigurationError("dipScale must be positive")

    def indicators(self, params: dict[str, Any]) -> dict[str, IndicatorSpec]:
        return {"sma": IndicatorSpec.of("sma", period=params["smaPeriod"])}

    def required(self, params: dict[str, Any]) -> list[IndicatorSpec]:
        return []

    def evaluate(self, params, window, indicators, context):
        interval = params["intervalSeconds"]
        bucket = int(window.current.timestamp.timestamp()) // interval
        previous = window.previous
        if previous is not None and int(previous.timestamp.timestamp()) // interval == bucket:
            return None

        sma = indicators.get(self.indicators(params)["sma"])
        close = window.current.close
        dip = 0.0 if math.isnan(sma) else (sma - close) / sma
        confidence = 0.5 + 0.5 * _ratio(dip, params["dipScale"])
        return _buy(confidence, "scheduled buy", sma=sma, dip=dip)


STRATEGY_RULES: dict[StrategyType, StrategyRule] = {
    rule.type: rule
    for rule in (
        MomentumRule(),
        MeanReversionRule(),
        TrendFollowingRule(),
        ScalpingRule(),
        ArbitrageRule(),
        GridRule(),
        DCARule(),
    )
}

_missing = set(StrategyType) - set(STRATEGY_RULES)
if _missing:
    raise RuntimeError(f"No rule registered for strategy types: {sorted(t.value for t in _missing)}")


def get_rule(strategy_type: StrategyType) -> StrategyRule:
    return STRATEGY_RULES[strategy_type]

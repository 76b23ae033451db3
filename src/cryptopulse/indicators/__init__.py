"""Technical indicators."""

from .engine import (
    INDICATORS,
    IndicatorEngine,
    IndicatorSeries,
    IndicatorSet,
    IndicatorSpec,
    InsufficientDataError,
    bollinger_bands,
    compute,
    ema,
    macd,
    required_lookback,
    roc,
    rsi,
    sma,
)
from .rolling import ExactRollingSum

__all__ = [
    "INDICATORS",
    "ExactRollingSum",
    "IndicatorEngine",
    "IndicatorSeries",
    "IndicatorSet",
    "IndicatorSpec",
    "InsufficientDataError",
    "bollinger_bands",
    "compute",
    "ema",
    "macd",
    "required_lookback",
    "roc",
    "rsi",
    "sma",
]

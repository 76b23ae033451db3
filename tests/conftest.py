"""Shared test fixtures and configuration."""

import pytest

from typing import Callable
from unittest.mock import AsyncMock

from cryptopulse.clients.models import Candle
from cryptopulse.strategies.base import RiskParameters, StrategyConfig, StrategyType
from factories import T0, make_candle, make_series

CandleFactory = Callable[..., Candle]


# -- Sample Data Fixtures --


@pytest.fixture
def candle_factory() -> CandleFactory:
    """Factory for single candles."""
    return make_candle


@pytest.fixture
def momentum_candles() -> list[Candle]:
    """
    Flat prices followed by a breakout on rising volume.

    With lookbackPeriod 4 the breakout candle (index 5) triggers a momentum buy.
    """
    closes = [100.0, 100.0, 100.0, 100.0, 100.0, 104.0, 110.0]
    volumes = [100.0, 100.0, 100.0, 100.0, 100.0, 150.0, 200.0]
    return make_series(closes, volumes)


@pytest.fixture
def momentum_config() -> StrategyConfig:
    """Short-lookback momentum strategy with room in its position cap."""
    return StrategyConfig(
        id="btc-momentum",
        type=StrategyType.MOMENTUM,
        name="BTC Momentum",
        parameters={"lookbackPeriod": 4, "momentumThreshold": 0.02},
        risk_parameters=RiskParameters(
            max_risk_per_trade=0.002,
            max_position_size=0.5,
            max_concurrent_trades=1,
        ),
    )


@pytest.fixture
def sample_binance_klines():
    """Sample Binance /api/v3/klines response."""
    open_ms = int(T0.timestamp() * 1000)
    return [
        [open_ms, "42000.0", "42100.0", "41950.0", "42050.0", "12.5", open_ms + 59_999, "0", 100],
        [open_ms + 60_000, "42050.0", "42200.0", "42000.0", "42150.0", "8.25", open_ms + 119_999, "0", 80],
    ]


@pytest.fixture
def sample_binance_account():
    """Sample Binance /api/v3/account response."""
    return {
        "balances": [
            {"asset": "BTC", "free": "0.5", "locked": "0.1"},
            {"asset": "USDT", "free": "1000.0", "locked": "0.0"},
            {"asset": "ETH", "free": "0.0", "locked": "0.0"},
        ]
    }


@pytest.fixture
def sample_binance_kline_event():
    """Sample closed-candle event from the Binance kline websocket."""
    open_ms = int(T0.timestamp() * 1000)
    return {
        "e": "kline",
        "s": "BTCUSDT",
        "k": {
            "t": open_ms,
            "T": open_ms + 59_999,
            "i": "1m",
            "o": "42000.0",
            "h": "42100.0",
            "l": "41950.0",
            "c": "42050.0",
            "v": "12.5",
            "x": True,
        },
    }


@pytest.fixture
def sample_coindcx_candles():
    """Sample CoinDCX candles response (newest first)."""
    open_ms = int(T0.timestamp() * 1000)
    return [
        {"time": open_ms + 60_000, "open": 42050.0, "high": 42200.0, "low": 42000.0, "close": 42150.0, "volume": 3.0},
        {"time": open_ms, "open": 42000.0, "high": 42100.0, "low": 41950.0, "close": 42050.0, "volume": 2.0},
    ]


# -- Mock Client Fixtures --


@pytest.fixture
def no_sleep():
    """Awaitable sleep that returns immediately and records delays."""
    return AsyncMock(return_value=None)

"""Unit tests for technical indicators."""

import math

import pytest

from cryptopulse.indicators import (
    ExactRollingSum,
    IndicatorEngine,
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
from factories import make_series


class TestMovingAverages:
    """Tests for SMA and EMA."""

    def test_sma_values(self):
        """Should average each full window."""
        assert sma([1.0, 2.0, 3.0, 4.0, 5.0], 3) == [2.0, 3.0, 4.0]

    def test_sma_insufficient_data(self):
        """Should raise when the series is shorter than the period."""
        with pytest.raises(InsufficientDataError) as exc_info:
            sma([1.0, 2.0], 3)

        assert exc_info.value.required == 3
        assert exc_info.value.available == 2

    def test_ema_seeded_with_sma(self):
        """Should start from the SMA of the first period, then smooth."""
        # alpha = 2 / (3 + 1) = 0.5
        assert ema([1.0, 2.0, 3.0, 4.0], 3) == [2.0, 3.0]

    def test_sma_period_one_is_identity(self):
        """Should return the input for period 1."""
        values = [3.0, 1.5, 7.25]
        assert sma(values, 1) == values


class TestRSI:
    """Tests for the relative strength index."""

    def test_all_gains_saturates_at_100(self):
        """Should be 100 when there are no losses."""
        assert rsi([1.0, 2.0, 3.0, 4.0, 5.0], period=4) == [100.0]

    def test_all_losses_is_zero(self):
        """Should be 0 when there are no gains."""
        assert rsi([5.0, 4.0, 3.0, 2.0, 1.0], period=4) == [0.0]

    def test_flat_prices_saturate(self):
        """Should treat a window with no losses (and no gains) as 100."""
        assert rsi([10.0] * 6, period=4) == [100.0, 100.0]

    def test_balanced_moves(self):
        """Should be 50 when average gain equals average loss."""
        assert rsi([10.0, 11.0, 10.0, 11.0, 10.0], period=4) == [50.0]

    def test_requires_period_plus_one(self):
        """Should need one more value than the period."""
        assert required_lookback("rsi", {"period": 14}) == 15
        with pytest.raises(InsufficientDataError):
            rsi([1.0] * 14, period=14)


class TestROC:
    """Tests for rate of change."""

    def test_rate_of_change(self):
        """Should compare against the value period steps back."""
        assert roc([100.0, 105.0, 110.0], 2) == pytest.approx([0.10])

    def test_negative_change(self):
        """Should be negative on falling prices."""
        assert roc([100.0, 90.0], 1) == pytest.approx([-0.10])


class TestMACD:
    """Tests for MACD."""

    def test_line_lengths(self):
        """Should emit once slow EMA and signal EMA are seeded."""
        values = [float(i) for i in range(1, 41)]
        result = macd(values, fast=3, slow=6, signal=4)

        expected = len(values) - required_lookback("macd", {"fast": 3, "slow": 6, "signal": 4}) + 1
        assert len(result["macd"]) == expected
        assert len(result["signal"]) == expected
        for m, s, h in zip(result["macd"], result["signal"], result["histogram"]):
            assert h == pytest.approx(m - s)

    def test_rejects_fast_not_shorter_than_slow(self):
        """Should reject fast >= slow."""
        with pytest.raises(ValueError):
            IndicatorSpec.of("macd", fast=26, slow=12, signal=9).build()


class TestBollingerBands:
    """Tests for Bollinger Bands."""

    def test_constant_series_collapses(self):
        """Should have zero width on a constant series."""
        bands = bollinger_bands([50.0] * 5, period=5, std_dev=2.0)

        assert bands["upper"] == [50.0]
        assert bands["middle"] == [50.0]
        assert bands["lower"] == [50.0]

    def test_population_std_dev(self):
        """Should use population standard deviation."""
        bands = bollinger_bands([2.0, 4.0, 4.0, 4.0, 5.0, 5.0, 7.0, 9.0], period=8, std_dev=1.0)

        # Mean 5, population std 2
        assert bands["middle"] == [5.0]
        assert bands["upper"] == [pytest.approx(7.0)]
        assert bands["lower"] == [pytest.approx(3.0)]


class TestIndicatorSpec:
    """Tests for indicator specs and the registry."""

    def test_key(self):
        """Should build stable keys from parameters."""
        assert IndicatorSpec.of("sma", period=20).key == "sma_20"
        assert IndicatorSpec.of("macd").key == "macd_12_26_9"

    def test_defaults_filled(self):
        """Should fill defaults so equal indicators have equal specs."""
        assert IndicatorSpec.of("rsi") == IndicatorSpec.of("rsi", period=14)

    def test_unknown_indicator(self):
        """Should reject unknown indicator names."""
        with pytest.raises(ValueError, match="Unknown indicator"):
            IndicatorSpec.of("vwap")

    def test_invalid_period(self):
        """Should reject non-positive periods."""
        with pytest.raises(ValueError):
            IndicatorSpec.of("sma", period=0)

    def test_unknown_parameter(self):
        """Should reject parameters the indicator does not take."""
        with pytest.raises(ValueError, match="Unknown parameters"):
            compute("sma", [1.0, 2.0], {"length": 2})


class TestIndicatorEngine:
    """Tests for the incremental per-stream engine."""

    def test_nan_until_warmed_up(self):
        """Should report NaN and not-ready before the lookback is reached."""
        spec = IndicatorSpec.of("sma", period=3)
        engine = IndicatorEngine([spec])
        candles = make_series([1.0, 2.0, 3.0])

        first = engine.update(candles[0])
        assert math.isnan(first.get(spec))
        assert not first.is_ready(spec)

        engine.update(candles[1])
        third = engine.update(candles[2])
        assert third.get(spec) == pytest.approx(2.0)
        assert third.is_ready(spec)

    def test_incremental_matches_batch(self):
        """Should produce identical values live and in batch."""
        closes = [100.0 + ((i * 7919) % 13) - 6 + i * 0.1 for i in range(60)]
        candles = make_series(closes, volumes=[50.0 + (i % 5) for i in range(60)])
        specs = [
            IndicatorSpec.of("sma", period=10),
            IndicatorSpec.of("ema", period=10),
            IndicatorSpec.of("rsi", period=14),
            IndicatorSpec.of("bollinger", period=20, std_dev=2.0),
            IndicatorSpec.of("volume_sma", period=5),
        ]
        engine = IndicatorEngine(specs)
        live = [engine.update(c) for c in candles]

        batch_sma = compute("sma", candles, {"period": 10})
        batch_rsi = compute("rsi", candles, {"period": 14})
        batch_bb = compute("bollinger", candles, {"period": 20, "std_dev": 2.0})
        batch_vol = compute("volume_sma", candles, {"period": 5})

        for i, value in enumerate(batch_sma.values):
            assert live[batch_sma.offset + i].get(specs[0]) == value
        for i, value in enumerate(batch_rsi.values):
            assert live[batch_rsi.offset + i].get(specs[2]) == value
        for i, value in enumerate(batch_bb.lines["upper"]):
            assert live[batch_bb.offset + i].get(specs[3], "upper") == value
        for i, value in enumerate(batch_vol.values):
            assert live[batch_vol.offset + i].get(specs[4]) == value

    def test_previous_values(self):
        """Should expose the previous candle's values."""
        spec = IndicatorSpec.of("roc", period=1)
        engine = IndicatorEngine([spec])
        candles = make_series([100.0, 110.0, 121.0])

        for candle in candles[:-1]:
            engine.update(candle)
        latest = engine.update(candles[-1])

        assert latest.get(spec) == pytest.approx(0.10)
        assert latest.previous(spec) == pytest.approx(0.10)

    def test_duplicate_specs_share_calculator(self):
        """Should keep one calculator per distinct spec."""
        engine = IndicatorEngine([IndicatorSpec.of("sma", period=5), IndicatorSpec.of("sma", period=5)])

        assert len(engine.specs) == 1
        assert engine.max_lookback == 5


class TestExactRollingSum:
    """Tests for the exact rolling sum."""

    def test_matches_fsum_of_window(self):
        """Should equal fsum of the current window regardless of history."""
        rolling = ExactRollingSum(3)
        values = [1e16, 1.0, -1e16, 0.1, 0.2, 0.3]
        for v in values:
            rolling.push(v)

        assert rolling.value == math.fsum(values[-3:])
        assert rolling.window == (0.1, 0.2, 0.3)

    def test_rejects_bad_period(self):
        """Should reject non-positive periods."""
        with pytest.raises(ValueError):
            ExactRollingSum(0)


class TestIndicatorSet:
    """Tests for IndicatorSet lookups."""

    def test_missing_reads_nan(self):
        """Should read unknown keys as NaN."""
        values = IndicatorSet({"sma_20": 101.5})

        assert values["sma_20"] == 101.5
        assert math.isnan(values["ema_20"])
        assert math.isnan(values.previous("sma_20"))

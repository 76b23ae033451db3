"""Unit tests for the backtester, worker pool and parameter optimizer."""

import asyncio
import random
import threading
import time
from pathlib import Path

import pytest

from cryptopulse.config.settings import BacktestSettings
from cryptopulse.engine.backtester import (
    BacktestCancelledError,
    BacktestPool,
    BacktestService,
    BacktestSimulator,
    BacktestTimeoutError,
    FailureCode,
    ParameterOptimizer,
    WalkForwardResult,
    print_summary,
)
from cryptopulse.engine.execution import ExecutionModel, TradeSide
from cryptopulse.engine.session import CancellationToken
from cryptopulse.monitoring.database import TradingDatabase
from cryptopulse.strategies.base import ConfigurationError, StrategyConfig
from factories import make_series


def fake_clock(step: float = 10.0):
    """Monotonic clock that advances ``step`` seconds per call."""
    ticks = iter(range(0, 10**9))
    return lambda: next(ticks) * step


@pytest.fixture
def simulator() -> BacktestSimulator:
    return BacktestSimulator()


@pytest.fixture
def stop_out_candles():
    """Breakout entry followed by a drop through the stop-loss."""
    return make_series(
        [100.0, 100.0, 100.0, 100.0, 100.0, 104.0, 100.0],
        volumes=[100.0, 100.0, 100.0, 100.0, 100.0, 150.0, 100.0],
    )


@pytest.fixture
def repeated_candles(momentum_candles):
    """Four copies of the momentum pattern back to back (28 one-minute candles)."""
    closes = [c.close for c in momentum_candles] * 4
    volumes = [c.volume for c in momentum_candles] * 4
    return make_series(closes, volumes)


class TestBacktestSimulator:
    """Tests for BacktestSimulator.run()."""

    def test_trades_breakout(self, simulator: BacktestSimulator, momentum_config, momentum_candles):
        """Should enter on the breakout, take profit, re-enter and close at end of data."""
        run = simulator.run(momentum_config, momentum_candles, ExecutionModel())

        assert [t.reason for t in run.ledger] == [
            "momentum breakout",
            "take_profit",
            "momentum breakout",
            "end_of_data",
        ]
        assert [t.side for t in run.ledger] == [TradeSide.BUY, TradeSide.SELL] * 2
        assert run.signals_generated == 2
        assert run.final_report.total_trades == 2
        assert run.data_range.candles == len(momentum_candles)
        assert len(run.equity_curve) == len(momentum_candles)

    def test_stop_loss_exit(self, simulator: BacktestSimulator, momentum_config, stop_out_candles):
        """Should close at the stop-loss when a later candle trades through it."""
        run = simulator.run(momentum_config, stop_out_candles, ExecutionModel())

        assert [t.reason for t in run.ledger] == ["momentum breakout", "stop_loss"]
        assert run.ledger[-1].quoted_price == 100.0
        assert run.ledger[-1].realized_pnl < 0
        assert run.final_report.losing_trades == 1

    def test_deterministic(self, simulator: BacktestSimulator, momentum_config, momentum_candles):
        """Should produce identical runs for identical inputs."""
        first = simulator.run(momentum_config, momentum_candles, ExecutionModel())
        second = BacktestSimulator().run(momentum_config, momentum_candles, ExecutionModel())

        assert first.run_id == second.run_id
        assert first.ledger == second.ledger
        assert first.final_report == second.final_report
        assert first.equity_curve == second.equity_curve

    def test_input_order_does_not_matter(self, simulator: BacktestSimulator, momentum_config, momentum_candles):
        """Should sort candles before replaying them."""
        shuffled = list(momentum_candles)
        random.Random(7).shuffle(shuffled)

        ordered = simulator.run(momentum_config, momentum_candles)
        replayed = simulator.run(momentum_config, shuffled)

        assert ordered.run_id == replayed.run_id
        assert ordered.ledger == replayed.ledger

    def test_run_id_depends_on_costs(self, simulator: BacktestSimulator, momentum_config, momentum_candles):
        """Should give different ids for different execution models."""
        cheap = simulator.run(momentum_config, momentum_candles, ExecutionModel(0.0, 0.0, 0.0))
        default = simulator.run(momentum_config, momentum_candles, ExecutionModel())

        assert cheap.run_id != default.run_id
        assert cheap.final_report.total_return > default.final_report.total_return

    def test_positions_closed_at_end(self, simulator: BacktestSimulator, momentum_config, momentum_candles):
        """Should leave no open quantity in the ledger."""
        run = simulator.run(momentum_config, momentum_candles)

        assert sum(t.signed_quantity for t in run.ledger) == pytest.approx(0.0)

    def test_empty_data(self, simulator: BacktestSimulator, momentum_config):
        """Should complete with an empty ledger."""
        run = simulator.run(momentum_config, [])

        assert run.ledger == ()
        assert run.data_range.start is None
        assert run.data_range.candles == 0
        assert run.final_report.total_return == 0.0

    def test_invalid_config(self, simulator: BacktestSimulator, momentum_candles):
        """Should fail before evaluating any candle."""
        config = StrategyConfig(id="bad", type="momentum", parameters={"lookbackPeriod": 0})

        with pytest.raises(ConfigurationError):
            simulator.run(config, momentum_candles)

    def test_timeout(self, momentum_config, repeated_candles):
        """Should stop once the wall-clock budget is spent."""
        simulator = BacktestSimulator(max_duration=25.0, clock=fake_clock(10.0))

        with pytest.raises(BacktestTimeoutError):
            simulator.run(momentum_config, repeated_candles)

    def test_timeout_on_slow_source(self, momentum_config, momentum_candles):
        """Should time out while still reading a lazy data source."""
        clock = fake_clock(1.0)
        simulator = BacktestSimulator(clock=clock)

        def slow_source():
            for candle in momentum_candles:
                yield candle

        with pytest.raises(BacktestTimeoutError):
            simulator.run(momentum_config, slow_source(), max_duration=2.0)

    def test_cancellation(self, simulator: BacktestSimulator, momentum_config, momentum_candles):
        """Should stop when the cancellation token is set mid-run."""
        token = CancellationToken()

        def source():
            for i, candle in enumerate(momentum_candles):
                if i == 3:
                    token.cancel()
                yield candle

        with pytest.raises(BacktestCancelledError):
            simulator.run(momentum_config, source(), cancel_token=token)

    def test_to_dict(self, simulator: BacktestSimulator, momentum_config, momentum_candles):
        """Should serialize the run with its report."""
        run = simulator.run(momentum_config, momentum_candles)

        data = run.to_dict()

        assert data["run_id"] == run.run_id
        assert data["trades"] == len(run.ledger)
        assert data["report"]["total_trades"] == run.final_report.total_trades

    def test_print_summary(self, simulator: BacktestSimulator, momentum_config, momentum_candles, capsys):
        """Should print a formatted report."""
        print_summary(simulator.run(momentum_config, momentum_candles))

        output = capsys.readouterr().out
        assert "BACKTEST RESULTS" in output
        assert "btc-momentum@1" in output


class TestBacktestPool:
    """Tests for the bounded worker pool."""

    @pytest.mark.asyncio
    async def test_submit_returns_result(self):
        """Should return the job's result."""
        async with BacktestPool(max_workers=1) as pool:
            assert await pool.submit(sum, [1, 2, 3]) == 6

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        """Should raise the job's exception to the submitter."""

        def fail():
            raise ValueError("boom")

        async with BacktestPool(max_workers=1) as pool:
            with pytest.raises(ValueError, match="boom"):
                await pool.submit(fail)

    @pytest.mark.asyncio
    async def test_bounded_concurrency(self):
        """Should never run more than max_workers jobs at once."""

        lock = threading.Lock()
        state = {"running": 0, "peak": 0}

        def job(i: int) -> int:
            with lock:
                state["running"] += 1
                state["peak"] = max(state["peak"], state["running"])
            time.sleep(0.02)
            with lock:
                state["running"] -= 1
            return i

        async with BacktestPool(max_workers=2) as pool:
            results = await asyncio.gather(*(pool.submit(job, i) for i in range(6)))

        assert results == list(range(6))
        assert state["peak"] <= 2

    def test_rejects_zero_workers(self):
        """Should require at least one worker."""
        with pytest.raises(ValueError):
            BacktestPool(max_workers=0)


class TestParameterOptimizer:
    """Tests for grid search and walk-forward analysis."""

    def test_parameter_grid_order_and_cap(self, simulator: BacktestSimulator):
        """Should enumerate sorted parameter names and cap the combinations."""
        optimizer = ParameterOptimizer(simulator, max_combinations=4)

        combos, truncated = optimizer.parameter_grid({"b": [1, 2], "a": [10, 20, 30]})

        assert truncated is True
        assert len(combos) == 4
        assert combos[0] == {"a": 10, "b": 1}
        assert combos[1] == {"a": 10, "b": 2}

    def test_grid_search_picks_best(self, simulator: BacktestSimulator, momentum_config, momentum_candles):
        """Should keep the combination with the best objective."""
        optimizer = ParameterOptimizer(simulator, objective="total_return")

        result = optimizer.grid_search(
            momentum_config, {"momentumThreshold": [0.5, 0.02]}, momentum_candles
        )

        assert result.combinations_tested == 2
        assert result.truncated is False
        assert result.best_config.parameters["momentumThreshold"] == 0.02
        assert result.best_config.revision == momentum_config.revision + 1
        assert result.best_run.final_report.total_return > 0

    def test_grid_search_skips_invalid(self, simulator: BacktestSimulator, momentum_config, momentum_candles):
        """Should skip combinations that make the configuration invalid."""
        optimizer = ParameterOptimizer(simulator)

        result = optimizer.grid_search(momentum_config, {"lookbackPeriod": [0, 4]}, momentum_candles)

        assert result.combinations_tested == 1
        assert result.best_config.parameters["lookbackPeriod"] == 4

    def test_walk_forward_windows(self, simulator: BacktestSimulator, momentum_config, repeated_candles):
        """Should test each window's winner on the following candles."""
        optimizer = ParameterOptimizer(simulator, objective="total_return")

        result = optimizer.walk_forward(
            momentum_config,
            {"momentumThreshold": [0.02, 0.05]},
            repeated_candles,
            train_size=7,
            test_size=7,
            max_periods=2,
        )

        assert len(result.windows) == 2
        first, second = result.windows
        assert first.train_range.start == repeated_candles[0].timestamp
        assert first.test_range.start == repeated_candles[7].timestamp
        assert second.train_range.start == repeated_candles[7].timestamp
        assert set(first.best_parameters) == {"momentumThreshold"}
        assert 0.0 <= result.consistency <= 1.0

    def test_walk_forward_sizes(self, simulator: BacktestSimulator, momentum_config, momentum_candles):
        """Should reject empty train or test windows."""
        optimizer = ParameterOptimizer(simulator)

        with pytest.raises(ValueError):
            optimizer.walk_forward(momentum_config, {}, momentum_candles, train_size=0, test_size=5)

    def test_walk_forward_without_valid_combination(self, simulator: BacktestSimulator, momentum_config, repeated_candles):
        """Should fail when no combination is valid."""
        optimizer = ParameterOptimizer(simulator)

        with pytest.raises(ConfigurationError):
            optimizer.walk_forward(
                momentum_config, {"lookbackPeriod": [0]}, repeated_candles, train_size=7, test_size=7
            )

    def test_empty_result_summary(self):
        """Should report zero for an analysis with no windows."""
        result = WalkForwardResult(windows=())

        assert result.average_test_return == 0.0
        assert result.consistency == 0.0


class TestBacktestService:
    """Tests for BacktestService against a temporary database."""

    @pytest.fixture
    def db(self, tmp_path: Path, momentum_candles) -> TradingDatabase:
        database = TradingDatabase(tmp_path / "test.db")
        database.initialize()
        database.insert_candles(momentum_candles, "1m")
        return database

    @pytest.mark.asyncio
    async def test_run_and_store(self, db: TradingDatabase, momentum_config):
        """Should run the backtest and store the run, ledger and strategy revision."""
        async with BacktestPool(max_workers=2) as pool:
            service = BacktestService(db, pool)
            outcome = await service.run_backtest(momentum_config, "binance", "BTCUSDT")

        assert outcome.succeeded
        run = outcome.run
        stored = db.get_backtest_run(run.run_id)
        assert stored is not None
        assert stored["strategy_id"] == "btc-momentum"
        assert stored["report"]["total_trades"] == run.final_report.total_trades
        assert db.get_backtest_trades(run.run_id) == list(run.ledger)
        assert db.get_strategy_config("btc-momentum") == momentum_config

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, db: TradingDatabase, momentum_config):
        """Should reproduce the same run id and store it once."""
        async with BacktestPool(max_workers=1) as pool:
            service = BacktestService(db, pool)
            first = await service.run_backtest(momentum_config, "binance", "BTCUSDT")
            second = await service.run_backtest(momentum_config, "binance", "BTCUSDT")

        assert first.run.run_id == second.run.run_id
        assert db.get_strategy_performance("btc-momentum")["runs"] == 1

    @pytest.mark.asyncio
    async def test_no_data(self, db: TradingDatabase, momentum_config):
        """Should report missing data as a failure."""
        async with BacktestPool(max_workers=1) as pool:
            outcome = await BacktestService(db, pool).run_backtest(momentum_config, "binance", "ETHUSDT")

        assert not outcome.succeeded
        assert outcome.failure.code == FailureCode.NO_DATA

    @pytest.mark.asyncio
    async def test_invalid_strategy(self, db: TradingDatabase):
        """Should report an invalid configuration as a failure."""
        config = StrategyConfig(id="bad", type="momentum", parameters={"lookbackPeriod": -1})

        async with BacktestPool(max_workers=1) as pool:
            outcome = await BacktestService(db, pool).run_backtest(config, "binance", "BTCUSDT")

        assert outcome.failure.code == FailureCode.INVALID_STRATEGY

    @pytest.mark.asyncio
    async def test_cancelled(self, db: TradingDatabase, momentum_config):
        """Should report a cancelled run as a failure."""
        token = CancellationToken()
        token.cancel()

        async with BacktestPool(max_workers=1) as pool:
            outcome = await BacktestService(db, pool).run_backtest(
                momentum_config, "binance", "BTCUSDT", cancel_token=token
            )

        assert outcome.failure.code == FailureCode.CANCELLED
        assert db.get_strategy_performance("btc-momentum")["runs"] == 0

    @pytest.mark.asyncio
    async def test_timeout(self, db: TradingDatabase, momentum_config):
        """Should report a run over its time budget as a failure."""
        simulator = BacktestSimulator(max_duration=5.0, clock=fake_clock(10.0))

        async with BacktestPool(max_workers=1) as pool:
            service = BacktestService(db, pool, simulator=simulator)
            outcome = await service.run_backtest(momentum_config, "binance", "BTCUSDT")

        assert outcome.failure.code == FailureCode.TIMEOUT

    def test_execution_model_from_settings(self, db: TradingDatabase):
        """Should build the default cost model from settings."""
        settings = BacktestSettings(spread=0.001, slippage=0.002, commission=0.0)
        service = BacktestService(db, BacktestPool(), settings=settings)

        assert service.execution_model() == ExecutionModel(spread=0.001, slippage=0.002, commission=0.0)

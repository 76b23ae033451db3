"""Deterministic backtesting simulator, worker pool and parameter optimization."""

import asyncio
import hashlib
import itertools
import json
import math
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Sequence

import structlog

from cryptopulse.clients.models import Candle
from cryptopulse.config.settings import BacktestSettings, EngineSettings
from cryptopulse.indicators import IndicatorEngine
from cryptopulse.monitoring.performance import PerformanceAnalyzer, PerformanceReport
from cryptopulse.strategies.base import (
    ConfigurationError,
    MarketWindow,
    SignalAction,
    StrategyConfig,
)
from cryptopulse.strategies.evaluator import StrategyEvaluator

from .execution import ExecutionModel, TradeSide
from .risk import PositionSize, RiskLimits, RiskManager
from .session import Account, CancellationToken, Trade, TradingSession

if TYPE_CHECKING:
    from cryptopulse.monitoring.database import TradingDatabase

logger = structlog.get_logger()

StreamKey = tuple[str, str]  # (exchange, symbol)


class BacktestTimeoutError(Exception):
    """Raised when a run exceeds its wall-clock budget. The partial ledger is discarded."""

    pass


class BacktestCancelledError(Exception):
    """Raised when a run is cancelled through its token. The partial ledger is discarded."""

    pass


@dataclass(frozen=True)
class DataRange:
    """Span of the candles a run replayed."""

    start: datetime | None
    end: datetime | None
    candles: int


@dataclass(frozen=True)
class BacktestRun:
    """
    A completed backtest.

    Only fully completed runs are ever constructed; ``final_report`` is
    derived from ``ledger`` alone.
    """

    run_id: str
    strategy_config: StrategyConfig
    data_range: DataRange
    starting_balance: float
    execution_model: ExecutionModel
    ledger: tuple[Trade, ...]
    equity_curve: tuple[tuple[datetime, float], ...]
    final_report: PerformanceReport
    signals_generated: int = 0
    rejections: Mapping[str, int] = field(default_factory=dict, hash=False)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "run_id": self.run_id,
            "strategy": self.strategy_config.version,
            "strategy_type": self.strategy_config.type.value,
            "start": self.data_range.start.isoformat() if self.data_range.start else None,
            "end": self.data_range.end.isoformat() if self.data_range.end else None,
            "candles": self.data_range.candles,
            "starting_balance": self.starting_balance,
            "execution_model": self.execution_model.to_dict(),
            "signals_generated": self.signals_generated,
            "rejections": dict(self.rejections),
            "trades": len(self.ledger),
            "report": self.final_report.to_dict(),
        }


def _candle_sort_key(candle: Candle) -> tuple[datetime, str, str]:
    return (candle.timestamp, candle.exchange, candle.symbol)


class BacktestSimulator:
    """
    Replays historical candles through the strategy evaluator and risk manager.

    Each candle, in (timestamp, exchange, symbol) order: advance that stream's
    indicators, close the open position if the candle hit its stop-loss or
    take-profit, evaluate the strategy, size the signal and synthesize a fill.
    Open positions are closed at the last candle of their stream.

    The same simulator serves single runs and every parameter combination of
    an optimization.

    Example:
        simulator = BacktestSimulator()
        run = simulator.run(config, candles, ExecutionModel(), starting_balance=10_000)
        print_summary(run)
    """

    def __init__(
        self,
        evaluator: StrategyEvaluator | None = None,
        risk_limits: RiskLimits | None = None,
        analyzer: PerformanceAnalyzer | None = None,
        max_duration: float = 3600.0,
        window_size: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize simulator.

        Args:
            evaluator: Strategy evaluator (shared, stateless)
            risk_limits: Engine-wide risk limits applied in every run
            analyzer: Performance analyzer for the final report
            max_duration: Default wall-clock budget per run in seconds
            window_size: Candles per stream handed to the evaluator
            clock: Monotonic clock used for the deadline
        """
        self.evaluator = evaluator or StrategyEvaluator()
        self.risk_limits = risk_limits or RiskLimits()
        self.analyzer = analyzer or PerformanceAnalyzer()
        self.max_duration = max_duration
        self.window_size = window_size
        self._clock = clock

    def run(
        self,
        config: StrategyConfig,
        historical_data: Iterable[Candle],
        execution_model: ExecutionModel | None = None,
        starting_balance: float = 10_000.0,
        max_duration: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> BacktestRun:
        """
        Run one backtest.

        Args:
            config: Strategy configuration to test
            historical_data: Candles in any order (may be a slow, lazy source)
            execution_model: Spread, slippage and commission model
            starting_balance: Initial cash
            max_duration: Wall-clock budget in seconds (simulator default if None)
            cancel_token: Checked at every candle

        Returns:
            Completed BacktestRun

        Raises:
            ConfigurationError: If the strategy configuration is invalid
            BacktestTimeoutError: If the run exceeds ``max_duration``
            BacktestCancelledError: If ``cancel_token`` is cancelled
        """
        self.evaluator.validate(config)
        execution_model = execution_model or ExecutionModel()
        budget = self.max_duration if max_duration is None else max_duration
        deadline = self._clock() + budget
        log = logger.bind(strategy=config.version)

        candles: list[Candle] = []
        for candle in historical_data:
            self._check_limits(deadline, budget, cancel_token)
            candles.append(candle)
        candles.sort(key=_candle_sort_key)

        if not candles:
            log.warning("No historical data found for backtest")

        session = TradingSession.create(starting_balance)
        account = session.account
        risk = RiskManager(self.risk_limits)
        specs = self.evaluator.required_indicators(config)
        engines: dict[StreamKey, IndicatorEngine] = {}
        windows: dict[StreamKey, deque[Candle]] = {}
        last_prices: dict[StreamKey, float] = {}
        last_candle: dict[StreamKey, Candle] = {}
        equity_curve: list[tuple[datetime, float]] = []
        signals_generated = 0

        for candle in candles:
            self._check_limits(deadline, budget, cancel_token)
            stream = candle.stream_key

            if stream not in engines:
                engines[stream] = IndicatorEngine(specs)
                windows[stream] = deque(maxlen=self.window_size)
            indicators = engines[stream].update(candle)
            windows[stream].append(candle)
            last_prices[stream] = candle.close
            last_candle[stream] = candle

            self._check_exit(config, account, candle, execution_model)

            references = {
                exchange: price
                for (exchange, symbol), price in last_prices.items()
                if symbol == candle.symbol and exchange != candle.exchange
            }
            window = MarketWindow(candles=tuple(windows[stream]), reference_prices=references)
            context = account.context(config.id, candle.exchange, candle.symbol)
            signal = self.evaluator.evaluate(config, window, indicators, context)

            if signal is not None:
                signals_generated += 1
                sized = risk.size(signal, account, config.risk_parameters)
                if isinstance(sized, PositionSize):
                    side = TradeSide.BUY if signal.action == SignalAction.BUY else TradeSide.SELL
                    account.execute(
                        side=side,
                        strategy_id=config.id,
                        exchange=candle.exchange,
                        symbol=candle.symbol,
                        quantity=sized.quantity,
                        quoted_price=signal.suggested_price,
                        timestamp=candle.timestamp,
                        model=execution_model,
                        reason=signal.reason,
                        stop_loss_price=signal.stop_loss_price,
                        take_profit_price=signal.take_profit_price,
                    )

            equity_curve.append((candle.timestamp, account.equity(last_prices)))

        for key in sorted(account.positions):
            position = account.positions[key]
            final = last_candle[(position.exchange, position.symbol)]
            account.execute(
                side=TradeSide.SELL,
                strategy_id=position.strategy_id,
                exchange=position.exchange,
                symbol=position.symbol,
                quantity=position.quantity,
                quoted_price=final.close,
                timestamp=final.timestamp,
                model=execution_model,
                reason="end_of_data",
            )

        ledger = tuple(account.ledger)
        report = self.analyzer.analyze(ledger, starting_balance)
        data_range = DataRange(
            start=candles[0].timestamp if candles else None,
            end=candles[-1].timestamp if candles else None,
            candles=len(candles),
        )

        run = BacktestRun(
            run_id=self._run_id(config, candles, execution_model, starting_balance),
            strategy_config=config,
            data_range=data_range,
            starting_balance=starting_balance,
            execution_model=execution_model,
            ledger=ledger,
            equity_curve=tuple(equity_curve),
            final_report=report,
            signals_generated=signals_generated,
            rejections=dict(risk.rejections),
        )
        log.info(
            "Backtest complete",
            run_id=run.run_id[:12],
            candles=len(candles),
            trades=len(ledger),
            total_return=round(report.total_return, 6),
        )
        return run

    def _check_limits(
        self,
        deadline: float,
        budget: float,
        cancel_token: CancellationToken | None,
    ) -> None:
        if cancel_token is not None and cancel_token.cancelled:
            raise BacktestCancelledError("Backtest cancelled")
        if self._clock() > deadline:
            raise BacktestTimeoutError(f"Backtest exceeded {budget:.0f}s")

    def _check_exit(
        self,
        config: StrategyConfig,
        account: Account,
        candle: Candle,
        execution_model: ExecutionModel,
    ) -> None:
        position = account.position(config.id, candle.exchange, candle.symbol)
        if position is None:
            return
        trigger = position.exit_trigger(candle)
        if trigger is None:
            return
        price, reason = trigger
        account.execute(
            side=TradeSide.SELL,
            strategy_id=config.id,
            exchange=candle.exchange,
            symbol=candle.symbol,
            quantity=position.quantity,
            quoted_price=price,
            timestamp=candle.timestamp,
            model=execution_model,
            reason=reason,
        )

    @staticmethod
    def _run_id(
        config: StrategyConfig,
        candles: Sequence[Candle],
        execution_model: ExecutionModel,
        starting_balance: float,
    ) -> str:
        """Deterministic id: same config, data, model and balance give the same id."""
        digest = hashlib.sha256()
        digest.update(config.fingerprint().encode("utf-8"))
        digest.update(json.dumps(execution_model.to_dict(), sort_keys=True).encode("utf-8"))
        digest.update(repr(starting_balance).encode("utf-8"))
        for c in candles:
            digest.update(
                f"{c.exchange}|{c.symbol}|{c.timestamp.isoformat()}|{c.open!r}|{c.high!r}|"
                f"{c.low!r}|{c.close!r}|{c.volume!r}\n".encode("utf-8")
            )
        return digest.hexdigest()


@dataclass
class _Job:
    fn: Callable[..., Any]
    args: tuple[Any, ...]
    kwargs: dict[str, Any]
    future: asyncio.Future


class BacktestPool:
    """
    Bounded pool of backtest workers.

    A fixed number of worker tasks pull jobs from a queue and run them in
    threads, so at most ``max_workers`` simulations execute at once. Extra
    submissions wait in the queue.

    Example:
        async with BacktestPool(max_workers=3) as pool:
            run = await pool.submit(simulator.run, config, candles)
    """

    def __init__(self, max_workers: int = 3):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.max_workers = max_workers
        self._queue: asyncio.Queue[_Job] | None = None
        self._workers: list[asyncio.Task] = []
        self.active = 0

    async def __aenter__(self) -> "BacktestPool":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue else 0

    async def start(self) -> None:
        """Start worker tasks."""
        if self._workers:
            return
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"backtest-worker-{i}")
            for i in range(self.max_workers)
        ]

    async def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Queue a job and wait for its result (exceptions propagate)."""
        if self._queue is None:
            await self.start()
        future = asyncio.get_running_loop().create_future()
        await self._queue.put(_Job(fn=fn, args=args, kwargs=kwargs, future=future))  # type: ignore[union-attr]
        return await future

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            try:
                if job.future.cancelled():
                    continue
                self.active += 1
                try:
                    result = await asyncio.to_thread(job.fn, *job.args, **job.kwargs)
                except Exception as e:
                    if not job.future.done():
                        job.future.set_exception(e)
                else:
                    if not job.future.done():
                        job.future.set_result(result)
                finally:
                    self.active -= 1
            finally:
                self._queue.task_done()

    async def close(self) -> None:
        """Stop workers. Jobs already running in threads finish in the background."""
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None


@dataclass(frozen=True)
class OptimizationResult:
    """Outcome of a grid search."""

    best_config: StrategyConfig | None
    best_run: BacktestRun | None
    results: tuple[tuple[dict[str, Any], PerformanceReport], ...]
    combinations_tested: int
    truncated: bool


@dataclass(frozen=True)
class WalkForwardWindow:
    """One train/test split of a walk-forward analysis."""

    index: int
    train_range: DataRange
    test_range: DataRange
    best_parameters: dict[str, Any]
    train_report: PerformanceReport
    test_report: PerformanceReport


@dataclass(frozen=True)
class WalkForwardResult:
    """All windows of a walk-forward analysis plus summary statistics."""

    windows: tuple[WalkForwardWindow, ...]

    @property
    def average_test_return(self) -> float:
        if not self.windows:
            return 0.0
        return math.fsum(w.test_report.total_return for w in self.windows) / len(self.windows)

    @property
    def consistency(self) -> float:
        """Fraction of test windows with a positive return."""
        if not self.windows:
            return 0.0
        return sum(1 for w in self.windows if w.test_report.total_return > 0) / len(self.windows)


class ParameterOptimizer:
    """
    Grid search and walk-forward analysis over strategy parameters.

    Every combination is a new revision of the base configuration, run
    through the shared BacktestSimulator.
    """

    def __init__(
        self,
        simulator: BacktestSimulator,
        max_combinations: int = 250,
        objective: str = "sharpe_ratio",
    ):
        self.simulator = simulator
        self.max_combinations = max_combinations
        self.objective = objective

    def parameter_grid(self, grid: Mapping[str, Sequence[Any]]) -> tuple[list[dict[str, Any]], bool]:
        """
        Enumerate combinations in a stable order, capped at ``max_combinations``.

        Returns:
            (combinations, truncated)
        """
        names = sorted(grid)
        total = math.prod(len(grid[name]) for name in names) if names else 1
        combos = [
            dict(zip(names, values))
            for values in itertools.islice(
                itertools.product(*(grid[name] for name in names)), self.max_combinations
            )
        ]
        truncated = total > self.max_combinations
        if truncated:
            logger.warning(
                "Parameter grid truncated",
                combinations=total,
                max_combinations=self.max_combinations,
            )
        return combos, truncated

    def _score(self, report: PerformanceReport) -> float:
        value = getattr(report, self.objective)
        if value is None or math.isnan(value):
            return -math.inf
        return value

    def grid_search(
        self,
        config: StrategyConfig,
        grid: Mapping[str, Sequence[Any]],
        historical_data: Iterable[Candle],
        execution_model: ExecutionModel | None = None,
        starting_balance: float = 10_000.0,
        max_duration: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> OptimizationResult:
        """
        Backtest every combination and keep the best by the objective metric.

        Combinations that make the configuration invalid are skipped.
        """
        candles = sorted(historical_data, key=_candle_sort_key)
        combos, truncated = self.parameter_grid(grid)
        results: list[tuple[dict[str, Any], PerformanceReport]] = []
        best_run: BacktestRun | None = None
        best_score = -math.inf

        for params in combos:
            candidate = config.revise(**params)
            try:
                run = self.simulator.run(
                    candidate,
                    candles,
                    execution_model,
                    starting_balance=starting_balance,
                    max_duration=max_duration,
                    cancel_token=cancel_token,
                )
            except ConfigurationError as e:
                logger.warning("Skipping invalid parameter combination", params=params, error=str(e))
                continue

            results.append((params, run.final_report))
            score = self._score(run.final_report)
            if best_run is None or score > best_score:
                best_run, best_score = run, score

        return OptimizationResult(
            best_config=best_run.strategy_config if best_run else None,
            best_run=best_run,
            results=tuple(results),
            combinations_tested=len(results),
            truncated=truncated,
        )

    def walk_forward(
        self,
        config: StrategyConfig,
        grid: Mapping[str, Sequence[Any]],
        historical_data: Iterable[Candle],
        train_size: int,
        test_size: int,
        step: int | None = None,
        max_periods: int = 12,
        execution_model: ExecutionModel | None = None,
        starting_balance: float = 10_000.0,
        max_duration: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> WalkForwardResult:
        """
        Rolling out-of-sample validation.

        Optimizes on ``train_size`` candles, tests the winner on the next
        ``test_size`` candles, then moves forward by ``step`` (default
        ``test_size``), for at most ``max_periods`` windows.
        """
        if train_size < 1 or test_size < 1:
            raise ValueError("train_size and test_size must be >= 1")
        step = step or test_size
        candles = sorted(historical_data, key=_candle_sort_key)
        windows: list[WalkForwardWindow] = []
        start = 0

        while start + train_size + test_size <= len(candles) and len(windows) < max_periods:
            train = candles[start : start + train_size]
            test = candles[start + train_size : start + train_size + test_size]

            optimized = self.grid_search(
                config, grid, train, execution_model, starting_balance, max_duration, cancel_token
            )
            if optimized.best_run is None:
                raise ConfigurationError("No valid parameter combination in grid")

            test_run = self.simulator.run(
                optimized.best_run.strategy_config,
                test,
                execution_model,
                starting_balance=starting_balance,
                max_duration=max_duration,
                cancel_token=cancel_token,
            )
            best_params = {
                name: optimized.best_run.strategy_config.parameters[name] for name in grid
            }
            windows.append(
                WalkForwardWindow(
                    index=len(windows),
                    train_range=optimized.best_run.data_range,
                    test_range=test_run.data_range,
                    best_parameters=best_params,
                    train_report=optimized.best_run.final_report,
                    test_report=test_run.final_report,
                )
            )
            start += step

        logger.info("Walk-forward complete", windows=len(windows))
        return WalkForwardResult(windows=tuple(windows))


class FailureCode(str, Enum):
    """Structured reasons a backtest request did not produce a run."""

    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    INVALID_STRATEGY = "invalid_strategy"
    NO_DATA = "no_data"


@dataclass(frozen=True)
class FailureReason:
    code: FailureCode
    message: str


@dataclass(frozen=True)
class BacktestOutcome:
    """Result of a queued backtest request: a run or a failure reason."""

    run: BacktestRun | None = None
    failure: FailureReason | None = None

    @property
    def succeeded(self) -> bool:
        return self.run is not None


class BacktestService:
    """
    Runs backtests for the API layer.

    Loads candles from the database, queues the simulation on the worker
    pool and stores completed runs. Timeouts, cancellations, invalid
    strategies and missing data come back as a structured failure.
    """

    def __init__(
        self,
        db: "TradingDatabase",
        pool: BacktestPool,
        simulator: BacktestSimulator | None = None,
        settings: BacktestSettings | None = None,
    ):
        self.db = db
        self.pool = pool
        self.settings = settings or BacktestSettings()
        self.simulator = simulator or BacktestSimulator(
            analyzer=PerformanceAnalyzer(self.settings.risk_free_rate),
            max_duration=self.settings.max_backtest_duration,
        )

    def execution_model(self) -> ExecutionModel:
        return ExecutionModel(
            spread=self.settings.spread,
            slippage=self.settings.slippage,
            commission=self.settings.commission,
        )

    async def run_backtest(
        self,
        config: StrategyConfig,
        exchange: str,
        symbol: str,
        start: datetime | None = None,
        end: datetime | None = None,
        interval: str = "1m",
        execution_model: ExecutionModel | None = None,
        starting_balance: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> BacktestOutcome:
        """
        Run a backtest over stored candles.

        Args:
            config: Strategy configuration
            exchange: Exchange the candles came from
            symbol: Market symbol
            start: First candle time (inclusive)
            end: Last candle time (inclusive)
            interval: Candle interval
            execution_model: Cost model (settings default if None)
            starting_balance: Initial cash (settings default if None)
            cancel_token: Cooperative cancellation

        Returns:
            BacktestOutcome with the stored run or a failure reason
        """
        log = logger.bind(strategy=config.version, exchange=exchange, symbol=symbol)
        candles = self.db.get_candles(exchange, symbol, interval, start, end)
        if not candles:
            log.warning("No historical data found for backtest")
            return BacktestOutcome(
                failure=FailureReason(FailureCode.NO_DATA, f"No {interval} candles for {exchange}:{symbol}")
            )

        try:
            run: BacktestRun = await self.pool.submit(
                self.simulator.run,
                config,
                candles,
                execution_model or self.execution_model(),
                starting_balance=starting_balance or self.settings.starting_balance,
                cancel_token=cancel_token,
            )
        except ConfigurationError as e:
            log.warning("Backtest rejected: invalid strategy", error=str(e))
            return BacktestOutcome(failure=FailureReason(FailureCode.INVALID_STRATEGY, str(e)))
        except BacktestTimeoutError as e:
            log.warning("Backtest timed out", error=str(e))
            return BacktestOutcome(failure=FailureReason(FailureCode.TIMEOUT, str(e)))
        except BacktestCancelledError as e:
            log.info("Backtest cancelled")
            return BacktestOutcome(failure=FailureReason(FailureCode.CANCELLED, str(e)))

        self.db.save_strategy_config(config)
        self.db.save_backtest_run(run)
        return BacktestOutcome(run=run)


def print_summary(run: BacktestRun) -> None:
    """Print a formatted summary of backtest results."""
    report = run.final_report
    calmar = "n/a" if report.calmar_ratio is None else f"{report.calmar_ratio:.2f}"
    rating = PerformanceAnalyzer().rate(report)

    print("\n" + "=" * 60)
    print("BACKTEST RESULTS")
    print("=" * 60)
    print(f"Strategy: {run.strategy_config.version} ({run.strategy_config.type.value})")
    print(f"Period: {run.data_range.start} to {run.data_range.end} ({run.data_range.candles} candles)")
    print(f"Run ID: {run.run_id[:16]}")
    print("-" * 60)
    print(f"Signals: {run.signals_generated}")
    print(f"Closed Trades: {report.total_trades}")
    print(f"Winning Trades: {report.winning_trades}")
    print(f"Losing Trades: {report.losing_trades}")
    print(f"Win Rate: {report.win_rate:.1%}")
    print(f"Total Return: {report.total_return:.2%}")
    print(f"Max Drawdown: {report.max_drawdown:.2%}")
    print(f"Sharpe Ratio: {report.sharpe_ratio:.2f}")
    print(f"Profit Factor: {report.profit_factor:.2f}")
    print(f"Calmar Ratio: {calmar}")
    print(f"Fees Paid: {report.total_fees:.2f}")
    print(f"Ending Balance: {report.ending_balance:.2f}")
    if run.rejections:
        print(f"Risk Rejections: {dict(run.rejections)}")
    print(f"Rating: {rating}")
    print("=" * 60)


async def run_backtest(
    strategy_path: Path,
    exchange: str,
    symbol: str,
    start: datetime | None = None,
    end: datetime | None = None,
    interval: str = "1m",
    settings: EngineSettings | None = None,
) -> BacktestOutcome:
    """
    Convenience function to run a backtest from a strategy file.

    Args:
        strategy_path: Strategy YAML file
        exchange: Exchange name
        symbol: Market symbol
        start: Start time
        end: End time
        interval: Candle interval
        settings: Engine settings

    Returns:
        BacktestOutcome
    """
    from cryptopulse.config.loader import load_strategy_from_file
    from cryptopulse.monitoring.database import TradingDatabase

    settings = settings or EngineSettings()
    config = load_strategy_from_file(strategy_path)
    db = TradingDatabase(settings.database_path)
    db.initialize()

    simulator = BacktestSimulator(
        risk_limits=RiskLimits(**settings.risk.model_dump()),
        analyzer=PerformanceAnalyzer(settings.backtesting.risk_free_rate),
        max_duration=settings.backtesting.max_backtest_duration,
    )
    async with BacktestPool(settings.backtesting.max_concurrent_backtests) as pool:
        service = BacktestService(db, pool, simulator, settings.backtesting)
        outcome = await service.run_backtest(config, exchange, symbol, start, end, interval)

    if outcome.run is not None:
        print_summary(outcome.run)
    else:
        print(f"Backtest failed ({outcome.failure.code.value}): {outcome.failure.message}")  # type: ignore[union-attr]
    return outcome

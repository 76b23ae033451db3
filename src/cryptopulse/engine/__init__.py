"""Core trading engine components."""

from .backtester import (
    BacktestCancelledError,
    BacktestOutcome,
    BacktestPool,
    BacktestRun,
    BacktestService,
    BacktestSimulator,
    BacktestTimeoutError,
    DataRange,
    FailureCode,
    FailureReason,
    OptimizationResult,
    ParameterOptimizer,
    WalkForwardResult,
    WalkForwardWindow,
    print_summary,
    run_backtest,
)
from .collector import DataCollector, run_data_collector
from .dispatcher import (
    DispatchReceipt,
    DryRunExecutor,
    SignalBroadcaster,
    SignalConsumer,
    SignalDispatcher,
)
from .execution import ExecutionModel, TradeSide
from .feed import FeedStats, MarketDataFeed, Subscription
from .risk import PositionSize, RejectionReason, RiskLimits, RiskManager, RiskRejection
from .runner import BotStatus, TradingEngine, create_clients, run_trading_engine
from .session import Account, CancellationToken, Position, Trade, TradingSession

__all__ = [
    "Account",
    "CancellationToken",
    "Position",
    "Trade",
    "TradingSession",
    "ExecutionModel",
    "TradeSide",
    "RiskLimits",
    "RiskManager",
    "RejectionReason",
    "PositionSize",
    "RiskRejection",
    "MarketDataFeed",
    "Subscription",
    "FeedStats",
    "SignalDispatcher",
    "SignalConsumer",
    "SignalBroadcaster",
    "DryRunExecutor",
    "DispatchReceipt",
    "TradingEngine",
    "BotStatus",
    "create_clients",
    "run_trading_engine",
    "DataCollector",
    "run_data_collector",
    "BacktestSimulator",
    "BacktestRun",
    "BacktestPool",
    "BacktestService",
    "BacktestOutcome",
    "BacktestTimeoutError",
    "BacktestCancelledError",
    "DataRange",
    "FailureCode",
    "FailureReason",
    "ParameterOptimizer",
    "OptimizationResult",
    "WalkForwardResult",
    "WalkForwardWindow",
    "print_summary",
    "run_backtest",
]

"""Command-line interface for the CryptoPulse trading engine."""

import argparse
import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from cryptopulse.config import ConfigurationError, load_settings, load_strategy_from_file
from cryptopulse.config.settings import EngineSettings
from cryptopulse.engine import (
    BacktestSimulator,
    ExecutionModel,
    ParameterOptimizer,
    RiskLimits,
    print_summary,
    run_backtest,
    run_data_collector,
    run_trading_engine,
)
from cryptopulse.monitoring import PerformanceAnalyzer, TradingDatabase, configure_logging


def create_main_parser() -> argparse.ArgumentParser:
    """Create the main argument parser."""
    parser = argparse.ArgumentParser(
        description="CryptoPulse crypto trading decision engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--settings",
        type=Path,
        help="Engine settings YAML (default: config/engine.yaml if present)",
    )
    parser.add_argument(
        "--env",
        choices=["development", "staging", "production"],
        help="Settings profile (default: CRYPTOPULSE_ENV or production)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Log level (default: INFO)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit JSON log lines",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Stream command
    stream_parser = subparsers.add_parser(
        "stream",
        help="Run the paper trading engine on live market data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Paper trade BTCUSDT on Binance with every enabled strategy
  cryptopulse stream --stream binance:BTCUSDT

  # Several streams, custom strategies directory
  cryptopulse stream --stream binance:BTCUSDT --stream coindcx:B-BTC_USDT -c my_strategies
        """,
    )
    add_stream_args(stream_parser)

    # Collect command
    collect_parser = subparsers.add_parser(
        "collect",
        help="Backfill historical candles for backtesting",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # One week of 1h candles
  cryptopulse collect --exchange binance --symbol BTCUSDT --interval 1h --start 2026-01-01 --end 2026-01-08
        """,
    )
    add_collect_args(collect_parser)

    # Backtest command
    backtest_parser = subparsers.add_parser(
        "backtest",
        help="Run backtest on stored candles",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  cryptopulse backtest --strategy config/strategies/momentum.yaml \\
      --exchange binance --symbol BTCUSDT --interval 1h --start 2026-01-01
        """,
    )
    add_backtest_args(backtest_parser)

    # Optimize command
    optimize_parser = subparsers.add_parser(
        "optimize",
        help="Grid search or walk-forward analysis over strategy parameters",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Grid search
  cryptopulse optimize --strategy config/strategies/momentum.yaml \\
      --exchange binance --symbol BTCUSDT --interval 1h \\
      --param lookbackPeriod=10,14,20 --param momentumThreshold=0.01,0.02

  # Walk-forward: optimize on 500 candles, test on the next 100
  cryptopulse optimize ... --walk-forward --train-size 500 --test-size 100
        """,
    )
    add_optimize_args(optimize_parser)

    return parser


def add_stream_args(parser: argparse.ArgumentParser) -> None:
    """Add streaming arguments."""
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=Path("config/strategies"),
        help="Path to strategies directory (default: config/strategies)",
    )
    parser.add_argument(
        "--stream",
        action="append",
        required=True,
        metavar="EXCHANGE:SYMBOL",
        help="Stream to trade (repeatable)",
    )
    parser.add_argument(
        "--balance",
        type=float,
        help="Paper balance (default: backtesting.starting_balance)",
    )


def add_market_args(parser: argparse.ArgumentParser) -> None:
    """Add exchange, symbol, interval and date range arguments."""
    parser.add_argument("--exchange", required=True, help="Exchange name (binance, coindcx)")
    parser.add_argument("--symbol", required=True, help="Market symbol")
    parser.add_argument(
        "--interval",
        default="1m",
        help="Candle interval (default: 1m)",
    )
    parser.add_argument("--start", type=str, help="Start time (ISO 8601, UTC)")
    parser.add_argument("--end", type=str, help="End time (ISO 8601, UTC)")


def add_collect_args(parser: argparse.ArgumentParser) -> None:
    """Add data collection arguments."""
    add_market_args(parser)


def add_backtest_args(parser: argparse.ArgumentParser) -> None:
    """Add backtesting arguments."""
    parser.add_argument(
        "--strategy", "-s",
        type=Path,
        required=True,
        help="Strategy YAML file",
    )
    add_market_args(parser)


def add_optimize_args(parser: argparse.ArgumentParser) -> None:
    """Add optimization arguments."""
    add_backtest_args(parser)
    parser.add_argument(
        "--param",
        action="append",
        default=[],
        metavar="NAME=V1,V2,...",
        help="Parameter values to search (repeatable)",
    )
    parser.add_argument(
        "--objective",
        default="sharpe_ratio",
        help="Report metric to maximize (default: sharpe_ratio)",
    )
    parser.add_argument("--walk-forward", action="store_true", help="Run walk-forward analysis")
    parser.add_argument("--train-size", type=int, default=500, help="Training candles per window")
    parser.add_argument("--test-size", type=int, default=100, help="Test candles per window")
    parser.add_argument("--step", type=int, help="Candles to advance per window (default: test size)")


def parse_datetime(value: str | None) -> datetime | None:
    """Parse an ISO date or datetime; naive values are taken as UTC."""
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_stream(value: str) -> tuple[str, str]:
    """Parse 'exchange:SYMBOL'."""
    exchange, sep, symbol = value.partition(":")
    if not sep or not exchange or not symbol:
        raise ValueError(f"Stream must look like exchange:SYMBOL, got '{value}'")
    return exchange.lower(), symbol


def parse_grid(values: list[str]) -> dict[str, list[Any]]:
    """Parse 'name=v1,v2' items into a parameter grid; values are YAML scalars."""
    grid: dict[str, list[Any]] = {}
    for item in values:
        name, sep, raw = item.partition("=")
        if not sep or not name or not raw:
            raise ValueError(f"Parameter must look like name=v1,v2, got '{item}'")
        grid[name] = [yaml.safe_load(v) for v in raw.split(",")]
    return grid


def get_settings(args: argparse.Namespace) -> EngineSettings:
    """Load settings and configure logging, exiting on invalid configuration."""
    configure_logging(args.log_level, args.json_logs)
    try:
        return load_settings(args.settings, args.env)
    except ConfigurationError as e:
        print(f"Error: {e}")
        sys.exit(1)


def cmd_stream(args: argparse.Namespace) -> None:
    """Run paper trading engine."""
    settings = get_settings(args)
    if not args.config.exists():
        print(f"Error: Strategies directory not found: {args.config}")
        sys.exit(1)

    try:
        streams = [parse_stream(s) for s in args.stream]
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print("\n🚀 CryptoPulse Paper Trading")
    print(f"   Environment: {settings.environment}")
    print(f"   Strategies: {args.config}")
    print(f"   Streams: {', '.join(f'{e}:{s}' for e, s in streams)}")
    print()

    try:
        asyncio.run(
            run_trading_engine(
                strategies_dir=args.config,
                streams=streams,
                settings=settings,
                starting_balance=args.balance,
            )
        )
    except ConfigurationError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nShutdown requested.")


def cmd_collect(args: argparse.Namespace) -> None:
    """Backfill candles."""
    settings = get_settings(args)
    start = parse_datetime(args.start)
    if start is None:
        print("Error: --start is required for collect")
        sys.exit(1)

    print("\n📊 CryptoPulse Data Collector")
    print(f"   Database: {settings.database_path}")
    print(f"   Stream: {args.exchange}:{args.symbol} ({args.interval})")
    print()

    try:
        stored = asyncio.run(
            run_data_collector(
                exchange=args.exchange,
                symbol=args.symbol,
                candle_interval=args.interval,
                start=start,
                end=parse_datetime(args.end),
                settings=settings,
            )
        )
    except KeyboardInterrupt:
        print("\nData collection stopped.")
        return

    print(f"Stored {stored} new candles.")


def cmd_backtest(args: argparse.Namespace) -> None:
    """Run backtester."""
    settings = get_settings(args)
    if not settings.database_path.exists():
        print(f"Error: Database not found: {settings.database_path}")
        print("Run 'cryptopulse collect' first to gather data.")
        sys.exit(1)

    print("\n📈 Running Backtest...")
    print(f"   Strategy: {args.strategy}")
    print(f"   Stream: {args.exchange}:{args.symbol} ({args.interval})")
    print()

    try:
        outcome = asyncio.run(
            run_backtest(
                strategy_path=args.strategy,
                exchange=args.exchange,
                symbol=args.symbol,
                start=parse_datetime(args.start),
                end=parse_datetime(args.end),
                interval=args.interval,
                settings=settings,
            )
        )
    except ConfigurationError as e:
        print(f"Error: {e}")
        sys.exit(1)

    # Result is already printed by run_backtest
    if not outcome.succeeded:
        sys.exit(1)


def cmd_optimize(args: argparse.Namespace) -> None:
    """Run grid search or walk-forward analysis."""
    settings = get_settings(args)
    try:
        config = load_strategy_from_file(args.strategy)
        grid = parse_grid(args.param)
    except (ConfigurationError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    db = TradingDatabase(settings.database_path)
    db.initialize()
    candles = db.get_candles(
        args.exchange, args.symbol, args.interval, parse_datetime(args.start), parse_datetime(args.end)
    )
    if not candles:
        print(f"Error: No {args.interval} candles stored for {args.exchange}:{args.symbol}")
        sys.exit(1)

    backtesting = settings.backtesting
    model = ExecutionModel(
        spread=backtesting.spread,
        slippage=backtesting.slippage,
        commission=backtesting.commission,
    )
    simulator = BacktestSimulator(
        risk_limits=RiskLimits(**settings.risk.model_dump()),
        analyzer=PerformanceAnalyzer(backtesting.risk_free_rate),
        max_duration=backtesting.max_backtest_duration,
    )
    optimizer = ParameterOptimizer(
        simulator,
        max_combinations=backtesting.max_parameter_combinations,
        objective=args.objective,
    )

    print("\n🔧 Optimizing...")
    print(f"   Strategy: {config.version}")
    print(f"   Candles: {len(candles)}")
    print(f"   Grid: {grid}")
    print()

    try:
        if args.walk_forward:
            result = optimizer.walk_forward(
                config,
                grid,
                candles,
                train_size=args.train_size,
                test_size=args.test_size,
                step=args.step,
                max_periods=backtesting.walk_forward_max_periods,
                execution_model=model,
                starting_balance=backtesting.starting_balance,
            )
            print("=" * 60)
            print("WALK-FORWARD RESULTS")
            print("=" * 60)
            for window in result.windows:
                print(
                    f"Window {window.index}: params={window.best_parameters} "
                    f"train={window.train_report.total_return:.2%} "
                    f"test={window.test_report.total_return:.2%}"
                )
            print("-" * 60)
            print(f"Average Test Return: {result.average_test_return:.2%}")
            print(f"Consistency: {result.consistency:.0%}")
            print("=" * 60)
            return

        optimized = optimizer.grid_search(
            config, grid, candles, model, starting_balance=backtesting.starting_balance
        )
    except ConfigurationError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Tested {optimized.combinations_tested} combinations"
          + (" (grid truncated)" if optimized.truncated else ""))
    if optimized.best_run is None:
        print("No valid parameter combination.")
        sys.exit(1)
    print(f"Best parameters: {optimized.best_config.parameters}")  # type: ignore[union-attr]
    print_summary(optimized.best_run)


def main() -> None:
    """Main entry point."""
    parser = create_main_parser()
    args = parser.parse_args()

    if args.command == "stream":
        cmd_stream(args)
    elif args.command == "collect":
        cmd_collect(args)
    elif args.command == "backtest":
        cmd_backtest(args)
    elif args.command == "optimize":
        cmd_optimize(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()

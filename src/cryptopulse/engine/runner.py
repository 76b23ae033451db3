"""Live trading engine: feed -> indicators -> strategies -> risk -> dispatch."""

import asyncio
import os
import signal
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Sequence

import structlog

from cryptopulse.clients import ExchangeClient, create_exchange_client
from cryptopulse.clients.models import Candle
from cryptopulse.config.loader import load_all_strategies
from cryptopulse.config.settings import EngineSettings
from cryptopulse.indicators import IndicatorEngine, IndicatorSpec
from cryptopulse.monitoring.logger import DeadLetterLog
from cryptopulse.strategies.base import MarketWindow, Signal, SignalAction, StrategyConfig
from cryptopulse.strategies.evaluator import StrategyEvaluator

from .dispatcher import DryRunExecutor, SignalBroadcaster, SignalDispatcher
from .execution import ExecutionModel, TradeSide
from .feed import MarketDataFeed, StreamKey
from .risk import PositionSize, RiskLimits, RiskManager
from .session import TradingSession

logger = structlog.get_logger()


@dataclass(frozen=True)
class BotStatus:
    """Health snapshot of a running engine."""

    running: bool
    session_id: str
    uptime_seconds: float
    active_strategies: list[str]
    streams: list[str]
    last_signal_at: datetime | None
    signals_generated: int
    stale_streams: list[str]
    heartbeats: dict[str, datetime | None]
    rejections: dict[str, int]
    balance: float
    open_positions: int
    feed_stats: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass
class StreamState:
    indicators: IndicatorEngine
    window: deque[Candle]


class TradingEngine:
    """
    Live engine that evaluates every strategy on every subscribed stream.

    Each stream runs in its own task; evaluation, risk sizing and the paper
    fill for a candle happen synchronously inside that task. Stop-loss and
    take-profit hits become sell signals and take the same path as strategy
    signals: risk sizing, then the dispatcher, then a paper fill on the
    engine's own session once the dispatcher accepts them. Consumers
    therefore see every trade the paper book holds. A failed cycle is logged
    and skipped.

    Example:
        engine = TradingEngine(
            feed=feed,
            strategies=load_all_strategies(Path("config/strategies")),
            dispatcher=dispatcher,
            streams=[("binance", "BTCUSDT")],
        )

        await engine.run()
    """

    def __init__(
        self,
        feed: MarketDataFeed,
        strategies: Sequence[StrategyConfig],
        dispatcher: SignalDispatcher,
        streams: Sequence[StreamKey],
        risk: RiskManager | None = None,
        session: TradingSession | None = None,
        execution_model: ExecutionModel | None = None,
        broadcaster: SignalBroadcaster | None = None,
        evaluator: StrategyEvaluator | None = None,
        starting_balance: float = 10_000.0,
        stale_after: float = 120.0,
        window_size: int = 3,
    ):
        """
        Initialize trading engine.

        Args:
            feed: Market data feed
            strategies: Validated strategy configurations
            dispatcher: Signal dispatcher
            streams: (exchange, symbol) pairs to trade
            risk: Risk manager
            session: Paper trading session (created if None)
            execution_model: Cost model for paper fills
            broadcaster: Broadcaster backing ``get_signal_stream``
            evaluator: Strategy evaluator
            starting_balance: Paper balance when no session is given
            stale_after: Seconds without a candle before a stream counts as stale
            window_size: Candles per stream handed to the evaluator
        """
        self.feed = feed
        self.strategies = list(strategies)
        self.dispatcher = dispatcher
        self.streams = list(streams)
        self.risk = risk or RiskManager()
        self.session = session or TradingSession.create(starting_balance)
        self.execution_model = execution_model or ExecutionModel()
        self.broadcaster = broadcaster
        self.evaluator = evaluator or StrategyEvaluator()
        self.stale_after = stale_after
        self.window_size = window_size

        for config in self.strategies:
            self.evaluator.validate(config)

        # Control flags
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._signal_handlers: list[signal.Signals] = []
        self._started_at: datetime | None = None

        self._last_prices: dict[StreamKey, float] = {}
        self.last_signal_at: datetime | None = None
        self.signals_generated = 0

    def new_stream_state(self) -> StreamState:
        """Fresh indicator and window state for one stream."""
        return StreamState(
            indicators=IndicatorEngine(self._indicator_specs()),
            window=deque(maxlen=self.window_size),
        )

    def _indicator_specs(self) -> list[IndicatorSpec]:
        specs: dict[str, IndicatorSpec] = {}
        for config in self.strategies:
            for spec in self.evaluator.required_indicators(config):
                specs[spec.key] = spec
        return list(specs.values())

    async def start(self) -> None:
        """Start the trading engine."""
        self._running = True
        self._shutdown_event.clear()
        self._started_at = datetime.now(timezone.utc)

        logger.info(
            "Starting trading engine",
            strategies=len(self.strategies),
            streams=len(self.streams),
            session_id=self.session.session_id,
        )

        # Register signal handlers
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
                self._signal_handlers.append(sig)
            except (NotImplementedError, RuntimeError):
                # Windows and non-main threads don't support add_signal_handler
                pass

        self._tasks = [
            asyncio.create_task(self._run_stream(exchange, symbol), name=f"stream-{exchange}-{symbol}")
            for exchange, symbol in self.streams
        ]

    async def stop(self) -> None:
        """Stop the trading engine gracefully."""
        if not self._running:
            return
        logger.info("Stopping trading engine")
        self._running = False
        self.session.cancel_token.cancel()
        self._shutdown_event.set()

        loop = asyncio.get_running_loop()
        for sig in self._signal_handlers:
            loop.remove_signal_handler(sig)
        self._signal_handlers = []

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.feed.close()
        await self.dispatcher.close()

    def _handle_shutdown(self) -> None:
        """Handle shutdown signal."""
        logger.info("Shutdown signal received")
        self._shutdown_event.set()

    async def run(self) -> None:
        """
        Main run loop.

        Runs the stream tasks until a shutdown signal arrives.
        """
        await self.start()

        try:
            await self._shutdown_event.wait()
        except Exception as e:
            logger.exception("Error in main loop", error=str(e))
        finally:
            await self.stop()

    async def _run_stream(self, exchange: str, symbol: str) -> None:
        """Consume one stream until the engine stops."""
        state = self.new_stream_state()
        log = logger.bind(exchange=exchange, symbol=symbol)

        try:
            async with self.feed.subscribe(exchange, symbol) as candles:
                async for candle in candles:
                    if self.session.cancel_token.cancelled:
                        break
                    try:
                        await self.process_candle(candle, state)
                    except Exception as e:
                        log.exception("Error in evaluation cycle", error=str(e))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception("Stream stopped", error=str(e))

    async def process_candle(self, candle: Candle, state: StreamState) -> list[Signal]:
        """
        Evaluate every strategy on one candle.

        Returns:
            Signals accepted by risk and dispatched
        """
        indicators = state.indicators.update(candle)
        state.window.append(candle)
        self._last_prices[candle.stream_key] = candle.close

        references = {
            exchange: price
            for (exchange, symbol), price in self._last_prices.items()
            if symbol == candle.symbol and exchange != candle.exchange
        }
        window = MarketWindow(candles=tuple(state.window), reference_prices=references)
        account = self.session.account
        dispatched: list[Signal] = []

        for config in self.strategies:
            exit_signal = self._exit_signal(config, candle)
            if exit_signal is not None:
                filled = await self._route(config, exit_signal)
                if filled is not None:
                    dispatched.append(filled)

            context = account.context(config.id, candle.exchange, candle.symbol)
            signal = self.evaluator.evaluate(config, window, indicators, context)
            if signal is None:
                continue

            filled = await self._route(config, signal)
            if filled is not None:
                dispatched.append(filled)

        return dispatched

    def _exit_signal(self, config: StrategyConfig, candle: Candle) -> Signal | None:
        """Sell signal for an open position whose stop-loss or take-profit the candle touched."""
        position = self.session.account.position(config.id, candle.exchange, candle.symbol)
        if position is None:
            return None
        trigger = position.exit_trigger(candle)
        if trigger is None:
            return None
        price, reason = trigger
        return Signal(
            strategy_id=config.id,
            strategy_revision=config.revision,
            symbol=candle.symbol,
            exchange=candle.exchange,
            action=SignalAction.SELL,
            confidence=1.0,
            suggested_price=price,
            generated_at=candle.timestamp,
            basis={"trigger_price": price},
            reason=reason,
            user_id=config.user_id,
        )

    async def _route(self, config: StrategyConfig, signal: Signal) -> Signal | None:
        """
        Size, dispatch and paper-fill one signal.

        The fill is applied only when the dispatcher accepted the signal, so
        consumers see every trade in the paper book.

        Returns:
            The sized signal, or None if risk rejected it or it was a duplicate
        """
        account = self.session.account
        self.signals_generated += 1
        self.last_signal_at = signal.generated_at

        sized = self.risk.size(signal, account, config.risk_parameters)
        if not isinstance(sized, PositionSize):
            return None

        receipt = await self.dispatcher.dispatch(sized.signal)
        if not receipt.accepted:
            return None

        side = TradeSide.BUY if signal.action == SignalAction.BUY else TradeSide.SELL
        trade = account.execute(
            side=side,
            strategy_id=config.id,
            exchange=signal.exchange,
            symbol=signal.symbol,
            quantity=sized.quantity,
            quoted_price=signal.suggested_price,
            timestamp=signal.generated_at,
            model=self.execution_model,
            reason=signal.reason,
            stop_loss_price=signal.stop_loss_price,
            take_profit_price=signal.take_profit_price,
        )
        logger.info(
            "Paper fill",
            strategy_id=config.id,
            symbol=signal.symbol,
            side=trade.side.value,
            reason=signal.reason,
            quantity=trade.quantity,
            price=trade.price,
            realized_pnl=trade.realized_pnl,
        )
        return sized.signal


    def get_signal_stream(self, user_id: str) -> AsyncIterator[Signal]:
        """Async iterator of dispatched signals for one user."""
        if self.broadcaster is None:
            raise RuntimeError("Engine has no signal broadcaster")
        return self.broadcaster.stream(user_id)

    def get_bot_status(self, now: datetime | None = None) -> BotStatus:
        """Snapshot of engine health."""
        now = now or datetime.now(timezone.utc)
        uptime = (now - self._started_at).total_seconds() if self._started_at else 0.0
        exchanges = sorted({exchange for exchange, _ in self.streams})

        return BotStatus(
            running=self._running,
            session_id=self.session.session_id,
            uptime_seconds=uptime,
            active_strategies=[config.version for config in self.strategies],
            streams=[f"{exchange}:{symbol}" for exchange, symbol in self.streams],
            last_signal_at=self.last_signal_at,
            signals_generated=self.signals_generated,
            stale_streams=[
                f"{exchange}:{symbol}"
                for exchange, symbol in self.feed.stale_streams(self.stale_after, now)
            ],
            heartbeats={exchange: self.feed.last_heartbeat(exchange) for exchange in exchanges},
            rejections=dict(self.risk.rejections),
            balance=self.session.account.balance,
            open_positions=len(self.session.account.positions),
            feed_stats={
                f"{exchange}:{symbol}": vars(self.feed.stats(exchange, symbol)).copy()
                for exchange, symbol in self.streams
            },
        )


def create_clients(
    settings: EngineSettings,
    exchanges: Sequence[str],
    credentials: dict[str, tuple[str | None, str | None]] | None = None,
) -> dict[str, ExchangeClient]:
    """
    Create exchange clients from settings.

    Credentials default to ``{EXCHANGE}_API_KEY`` / ``{EXCHANGE}_API_SECRET``
    environment variables.
    """
    credentials = credentials or {}
    clients: dict[str, ExchangeClient] = {}
    for name in exchanges:
        exchange_settings = settings.exchange(name)
        api_key, api_secret = credentials.get(
            name,
            (os.environ.get(f"{name.upper()}_API_KEY"), os.environ.get(f"{name.upper()}_API_SECRET")),
        )
        clients[name] = create_exchange_client(
            name,
            api_key=api_key,
            api_secret=api_secret,
            base_url=exchange_settings.base_url,
            timeout=exchange_settings.timeout,
            rate_limit_per_minute=exchange_settings.rate_limit_per_minute,
            backoff_base=settings.feed.backoff_base,
            backoff_cap=settings.feed.backoff_cap,
        )
    return clients


async def run_trading_engine(
    strategies_dir: Path,
    streams: Sequence[StreamKey],
    settings: EngineSettings | None = None,
    starting_balance: float | None = None,
) -> None:
    """
    Convenience function to run the paper trading engine.

    Args:
        strategies_dir: Directory with strategy YAML files
        streams: (exchange, symbol) pairs to trade
        settings: Engine settings
        starting_balance: Paper balance (backtesting default if None)
    """
    settings = settings or EngineSettings()
    strategies = load_all_strategies(strategies_dir)
    clients = create_clients(settings, sorted({exchange for exchange, _ in streams}))

    for client in clients.values():
        await client.__aenter__()

    try:
        feed = MarketDataFeed.from_settings(clients, settings.feed)
        broadcaster = SignalBroadcaster(dead_letters=DeadLetterLog(settings.dispatcher.dead_letter_dir))
        dispatcher = SignalDispatcher.from_settings(
            [broadcaster, DryRunExecutor()], settings.dispatcher
        )
        backtesting = settings.backtesting
        engine = TradingEngine(
            feed=feed,
            strategies=strategies,
            dispatcher=dispatcher,
            streams=streams,
            risk=RiskManager(RiskLimits(**settings.risk.model_dump())),
            execution_model=ExecutionModel(
                spread=backtesting.spread,
                slippage=backtesting.slippage,
                commission=backtesting.commission,
            ),
            broadcaster=broadcaster,
            starting_balance=starting_balance or backtesting.starting_balance,
            stale_after=settings.feed.stale_after,
        )

        await engine.run()
    finally:
        for client in clients.values():
            await client.__aexit__(None, None, None)

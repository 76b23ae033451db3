"""Unit tests for the live trading engine."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from cryptopulse.clients import BinanceClient, CoinDCXClient
from cryptopulse.config.settings import build_settings
from cryptopulse.engine.dispatcher import (
    DispatchReceipt,
    DryRunExecutor,
    SignalBroadcaster,
    SignalDispatcher,
)
from cryptopulse.engine.feed import MarketDataFeed
from cryptopulse.engine.runner import TradingEngine, create_clients
from cryptopulse.strategies.base import ConfigurationError, StrategyConfig, StrategyType
from factories import T0


class ReplayClient:
    """Streams a fixed list of candles, then idles."""

    def __init__(self, candles):
        self.candles = candles
        self.last_message_at = None

    async def stream_candles(self, symbol, interval="1m", poll_interval=5.0):
        for candle in self.candles:
            yield candle
        await asyncio.Event().wait()


@pytest.fixture
def executor() -> DryRunExecutor:
    return DryRunExecutor()


@pytest.fixture
def dispatcher(executor: DryRunExecutor, no_sleep) -> SignalDispatcher:
    return SignalDispatcher([executor], sleep=no_sleep)


@pytest.fixture
def engine(momentum_config, dispatcher) -> TradingEngine:
    return TradingEngine(
        feed=MarketDataFeed({}),
        strategies=[momentum_config],
        dispatcher=dispatcher,
        streams=[("binance", "BTCUSDT")],
    )


async def feed_candles(engine: TradingEngine, candles) -> list:
    state = engine.new_stream_state()
    dispatched = []
    for candle in candles:
        dispatched.extend(await engine.process_candle(candle, state))
    return dispatched


class TestProcessCandle:
    """Tests for the per-candle evaluation cycle."""

    @pytest.mark.asyncio
    async def test_dispatches_and_paper_fills(self, engine, dispatcher, executor, momentum_candles):
        """Should dispatch entries and take-profit exits before filling them."""
        dispatched = await feed_candles(engine, momentum_candles)
        await dispatcher.drain()

        ledger = engine.session.account.ledger
        assert [(s.action.value, s.generated_at) for s in dispatched] == [
            ("buy", momentum_candles[5].timestamp),
            ("sell", momentum_candles[6].timestamp),
        ]
        assert all(s.suggested_quantity for s in dispatched)
        assert [t.side.value for t in ledger] == ["buy", "sell"]
        assert ledger[1].reason == "take_profit"
        assert ledger[1].quoted_price == pytest.approx(110.0)
        assert [order["side"] for order in executor.orders] == ["buy", "sell"]
        assert executor.orders[1]["quantity"] == pytest.approx(ledger[0].quantity)
        assert engine.last_signal_at == momentum_candles[6].timestamp

    @pytest.mark.asyncio
    async def test_reentry_after_exit_in_same_bucket_suppressed(self, engine, dispatcher, momentum_candles):
        """Should suppress a buy in the bucket the take-profit exit already used."""
        await feed_candles(engine, momentum_candles)

        # buy at 104, take-profit exit at 110, then the 110 breakout buy
        assert engine.signals_generated == 3
        assert dispatcher.suppressed == 1
        assert engine.session.account.position("btc-momentum", "binance", "BTCUSDT") is None

    @pytest.mark.asyncio
    async def test_stop_loss_exit_dispatched(self, engine, dispatcher, executor, momentum_candles, candle_factory):
        """Should route a stop-loss hit through risk and the dispatcher like any sell."""
        gap_down = candle_factory(101.0, index=6, open=103.0, high=103.5, low=100.0)

        dispatched = await feed_candles(engine, momentum_candles[:6] + [gap_down])
        await dispatcher.drain()

        ledger = engine.session.account.ledger
        exit_signal = dispatched[-1]
        assert len(dispatched) == len(ledger) == 2
        assert exit_signal.action.value == "sell"
        assert exit_signal.reason == "stop_loss"
        assert exit_signal.suggested_price == pytest.approx(104.0 * 0.98)
        assert exit_signal.suggested_quantity == pytest.approx(ledger[0].quantity)
        assert ledger[1].reason == "stop_loss"
        assert executor.orders[-1]["side"] == "sell"
        assert executor.orders[-1]["price"] == pytest.approx(104.0 * 0.98)

    @pytest.mark.asyncio
    async def test_suppressed_exit_keeps_position(self, engine, momentum_candles, candle_factory):
        """Should leave the position open when the dispatcher refuses the exit."""
        await feed_candles(engine, momentum_candles[:6])
        engine.dispatcher.dispatch = AsyncMock(
            return_value=DispatchReceipt("dup", accepted=False, duplicate=True)
        )
        state = engine.new_stream_state()

        await engine.process_candle(candle_factory(101.0, index=6, open=103.0, high=103.5, low=100.0), state)

        assert len(engine.session.account.ledger) == 1
        assert engine.session.account.position("btc-momentum", "binance", "BTCUSDT") is not None

    @pytest.mark.asyncio
    async def test_suppressed_signal_not_filled(self, engine, momentum_candles):
        """Should not paper-fill a signal the dispatcher suppressed."""
        engine.dispatcher.dispatch = AsyncMock(
            return_value=DispatchReceipt("dup", accepted=False, duplicate=True)
        )

        dispatched = await feed_candles(engine, momentum_candles[:6])

        assert dispatched == []
        assert engine.session.account.ledger == []
        assert engine.signals_generated == 1

    @pytest.mark.asyncio
    async def test_risk_rejection_not_dispatched(self, dispatcher, executor, momentum_candles):
        """Should count rejected signals without dispatching them."""
        # Template risk sizes a 2% stop entry at 10% of balance, above a 5% cap
        config = StrategyConfig(
            id="capped",
            type=StrategyType.MOMENTUM,
            parameters={"lookbackPeriod": 4},
            risk_parameters={"maxRiskPerTrade": 0.02, "maxPositionSize": 0.05},
        )
        engine = TradingEngine(MarketDataFeed({}), [config], dispatcher, [("binance", "BTCUSDT")])

        await feed_candles(engine, momentum_candles[:6])
        await dispatcher.drain()

        assert executor.orders == []
        assert engine.risk.rejections["max_position_size"] == 1
        assert engine.get_bot_status(now=T0).rejections == {"max_position_size": 1}

    @pytest.mark.asyncio
    async def test_reference_prices_across_exchanges(self, dispatcher, candle_factory):
        """Should let arbitrage see the other exchange's latest close."""
        config = StrategyConfig(
            id="btc-arb",
            type=StrategyType.ARBITRAGE,
            parameters={"minSpread": 0.01, "volumeThreshold": 10},
            risk_parameters={"maxRiskPerTrade": 0.001, "maxPositionSize": 0.5},
        )
        engine = TradingEngine(
            MarketDataFeed({}), [config], dispatcher, [("binance", "BTCUSDT"), ("coindcx", "BTCUSDT")]
        )

        await engine.process_candle(candle_factory(103.0, exchange="coindcx"), engine.new_stream_state())
        dispatched = await engine.process_candle(candle_factory(100.0), engine.new_stream_state())

        assert len(dispatched) == 1
        assert dispatched[0].exchange == "binance"


class TestEngineSetup:
    """Tests for engine construction and accessors."""

    def test_validates_strategies(self, dispatcher):
        """Should reject invalid strategy parameters up front."""
        config = StrategyConfig(id="bad", type=StrategyType.MOMENTUM, parameters={"lookback": 5})

        with pytest.raises(ConfigurationError):
            TradingEngine(MarketDataFeed({}), [config], dispatcher, [("binance", "BTCUSDT")])

    def test_signal_stream_requires_broadcaster(self, engine):
        with pytest.raises(RuntimeError):
            engine.get_signal_stream("alice")

    @pytest.mark.asyncio
    async def test_signal_stream_per_user(self, momentum_config, no_sleep, candle_factory):
        """Should stream dispatched signals to the requesting user."""
        broadcaster = SignalBroadcaster()
        engine = TradingEngine(
            MarketDataFeed({}),
            [momentum_config],
            SignalDispatcher([broadcaster], sleep=no_sleep),
            [("binance", "BTCUSDT")],
            broadcaster=broadcaster,
        )
        stream = engine.get_signal_stream("alice")
        received = asyncio.create_task(stream.__anext__())
        await asyncio.sleep(0)

        closes = [100.0] * 5 + [104.0]
        volumes = [100.0] * 5 + [150.0]
        state = engine.new_stream_state()
        for index, (close, volume) in enumerate(zip(closes, volumes)):
            await engine.process_candle(candle_factory(close, index=index, volume=volume), state)

        signal = await asyncio.wait_for(received, timeout=1.0)
        assert signal.strategy_id == "btc-momentum"
        await stream.aclose()

    def test_bot_status_before_start(self, engine):
        """Should report an idle engine."""
        status = engine.get_bot_status(now=T0)

        assert status.running is False
        assert status.uptime_seconds == 0.0
        assert status.active_strategies == ["btc-momentum@1"]
        assert status.streams == ["binance:BTCUSDT"]
        assert status.stale_streams == []
        assert status.heartbeats == {"binance": None}
        assert status.balance == 10_000.0
        assert status.open_positions == 0


class TestEngineLifecycle:
    """Tests for start/stop against a live feed."""

    @pytest.mark.asyncio
    async def test_runs_streams_until_stopped(self, momentum_config, momentum_candles, dispatcher, no_sleep):
        """Should consume the feed in the background and shut down cleanly."""
        feed = MarketDataFeed({"binance": ReplayClient(momentum_candles)}, sleep=no_sleep)
        engine = TradingEngine(feed, [momentum_config], dispatcher, [("binance", "BTCUSDT")])

        await engine.start()
        for _ in range(200):
            if len(engine.session.account.ledger) >= 2:
                break
            await asyncio.sleep(0)

        status = engine.get_bot_status(now=momentum_candles[-1].timestamp + timedelta(seconds=30))
        assert status.running is True
        assert status.feed_stats["binance:BTCUSDT"]["delivered"] == 7
        assert len(engine.session.account.ledger) == 2

        await engine.stop()

        assert engine.get_bot_status().running is False
        assert engine.session.cancel_token.cancelled
        assert dispatcher.in_flight == 0


class TestCreateClients:
    """Tests for create_clients()."""

    def test_credentials_from_environment(self, monkeypatch):
        """Should read {EXCHANGE}_API_KEY and {EXCHANGE}_API_SECRET."""
        monkeypatch.setenv("BINANCE_API_KEY", "env-key")
        monkeypatch.setenv("BINANCE_API_SECRET", "env-secret")
        monkeypatch.delenv("COINDCX_API_KEY", raising=False)
        monkeypatch.delenv("COINDCX_API_SECRET", raising=False)
        settings = build_settings({"exchanges": {"binance": {"base_url": "https://testnet.binance.vision"}}})

        clients = create_clients(settings, ["binance", "coindcx"])

        assert isinstance(clients["binance"], BinanceClient)
        assert isinstance(clients["coindcx"], CoinDCXClient)
        assert clients["binance"].api_key == "env-key"
        assert clients["binance"].base_url == "https://testnet.binance.vision"
        assert not clients["coindcx"].has_credentials

    def test_explicit_credentials(self):
        settings = build_settings({})

        clients = create_clients(settings, ["coindcx"], credentials={"coindcx": ("k", "s")})

        assert clients["coindcx"].has_credentials
        assert clients["coindcx"].rate_limiter.min_interval == pytest.approx(0.6)

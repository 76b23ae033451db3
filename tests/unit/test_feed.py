"""Unit tests for the market data feed."""

import asyncio
from datetime import timedelta
from unittest.mock import call

import pytest

from cryptopulse.clients.exchange import ExchangeAuthError
from cryptopulse.clients.models import Candle
from cryptopulse.config.settings import FeedSettings
from cryptopulse.engine.feed import MarketDataFeed
from factories import T0, make_series


class FakeStreamClient:
    """
    Replays scripted stream sessions.

    Each call to stream_candles consumes one session: a list of candles or an
    exception to raise. An exception inside a list is raised when reached. A
    session ends its stream unless it is the last one, which stays open and
    idle.
    """

    def __init__(self, *sessions):
        self.sessions = list(sessions)
        self.calls = 0
        self.last_message_at = None

    async def stream_candles(self, symbol, interval="1m", poll_interval=5.0):
        self.calls += 1
        if not self.sessions:
            await asyncio.Event().wait()
        session = self.sessions.pop(0)
        if isinstance(session, BaseException):
            raise session
        for item in session:
            if isinstance(item, BaseException):
                raise item
            yield item
        if not self.sessions:
            await asyncio.Event().wait()


async def take(subscription, count: int) -> list[Candle]:
    return [await asyncio.wait_for(subscription.__anext__(), timeout=1.0) for _ in range(count)]


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def candles() -> list[Candle]:
    return make_series([100.0, 101.0, 102.0, 103.0])


class TestSubscribe:
    """Tests for MarketDataFeed.subscribe()."""

    def test_unknown_exchange(self):
        """Should reject exchanges without a client."""
        feed = MarketDataFeed({"binance": FakeStreamClient()})

        with pytest.raises(ValueError):
            feed.subscribe("kraken", "BTCUSDT")

    @pytest.mark.asyncio
    async def test_one_subscriber_per_stream(self):
        """Should reject a second subscription until the first is closed."""
        feed = MarketDataFeed({"binance": FakeStreamClient()})
        first = feed.subscribe("binance", "BTCUSDT")

        with pytest.raises(ValueError):
            feed.subscribe("binance", "BTCUSDT")

        await first.aclose()
        second = feed.subscribe("binance", "BTCUSDT")
        await second.aclose()

    def test_rejects_empty_queue(self):
        """Should require room for at least one candle."""
        with pytest.raises(ValueError):
            MarketDataFeed({}, max_queue_depth=0)

    def test_from_settings(self):
        """Should take its tuning from feed settings."""
        settings = FeedSettings(interval="5m", backoff_base=2.0, backoff_cap=60.0, max_queue_depth=10)

        feed = MarketDataFeed.from_settings({"binance": FakeStreamClient()}, settings)

        assert feed.interval == "5m"
        assert feed.backoff_base == 2.0
        assert feed.backoff_cap == 60.0
        assert feed.max_queue_depth == 10


class TestDelivery:
    """Tests for ordering and de-duplication."""

    @pytest.mark.asyncio
    async def test_drops_duplicates_and_stale_candles(self, candles, no_sleep):
        """Should deliver strictly increasing timestamps only."""
        c0, c1, c2, _ = candles
        feed = MarketDataFeed({"binance": FakeStreamClient([c0, c1, c1, c0, c2])}, sleep=no_sleep)

        async with feed.subscribe("binance", "BTCUSDT") as subscription:
            delivered = await take(subscription, 3)

        stats = feed.stats("binance", "BTCUSDT")
        assert delivered == [c0, c1, c2]
        assert stats.delivered == 3
        assert stats.duplicates == 1
        assert stats.out_of_order == 1
        assert stats.last_candle_at == c2.timestamp

    @pytest.mark.asyncio
    async def test_resubscribe_resumes_after_last_delivered(self, candles, no_sleep):
        """Should not replay candles a previous subscription already delivered."""
        c0, c1, c2, _ = candles
        client = FakeStreamClient([c0, c1])
        feed = MarketDataFeed({"binance": client}, sleep=no_sleep)

        async with feed.subscribe("binance", "BTCUSDT") as subscription:
            await take(subscription, 2)

        client.sessions = [[c0, c1, c2]]
        async with feed.subscribe("binance", "BTCUSDT") as subscription:
            assert await take(subscription, 1) == [c2]

    @pytest.mark.asyncio
    async def test_overflow_drops_oldest(self, candles, no_sleep):
        """Should keep the newest candles when the queue is full."""
        feed = MarketDataFeed(
            {"binance": FakeStreamClient(candles)}, max_queue_depth=2, sleep=no_sleep
        )

        async with feed.subscribe("binance", "BTCUSDT") as subscription:
            await settle()
            assert subscription.pending == 2
            delivered = await take(subscription, 2)

        assert delivered == candles[2:]
        assert feed.stats("binance", "BTCUSDT").dropped_overflow == 2

    @pytest.mark.asyncio
    async def test_streams_are_independent(self, no_sleep):
        """Should order and de-duplicate each stream on its own."""
        btc = make_series([100.0, 101.0])
        eth = make_series([10.0, 11.0], exchange="coindcx", symbol="ETHUSDT")
        feed = MarketDataFeed(
            {"binance": FakeStreamClient(btc), "coindcx": FakeStreamClient(eth)}, sleep=no_sleep
        )

        async with feed.subscribe("binance", "BTCUSDT") as first, feed.subscribe("coindcx", "ETHUSDT") as second:
            assert await take(first, 2) == btc
            assert await take(second, 2) == eth

        assert feed.stats("coindcx", "ETHUSDT").duplicates == 0


class TestReconnect:
    """Tests for reconnect and backoff."""

    @pytest.mark.asyncio
    async def test_reconnects_after_stream_ends(self, candles, no_sleep):
        """Should reopen the stream with exponential backoff and skip replayed candles."""
        c0, c1, c2, _ = candles
        client = FakeStreamClient([c0, c1], OSError("connection reset"), [c1, c2])
        feed = MarketDataFeed({"binance": client}, backoff_base=1.0, sleep=no_sleep)

        async with feed.subscribe("binance", "BTCUSDT") as subscription:
            delivered = await take(subscription, 3)

        assert delivered == [c0, c1, c2]
        assert client.calls == 3
        assert no_sleep.await_args_list == [call(1.0), call(2.0)]
        assert feed.stats("binance", "BTCUSDT").reconnects == 2

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, candles, no_sleep):
        """Should never wait longer than the backoff cap."""
        failures = [OSError("down") for _ in range(4)]
        client = FakeStreamClient(*failures, [candles[0]])
        feed = MarketDataFeed({"binance": client}, backoff_base=1.0, backoff_cap=3.0, sleep=no_sleep)

        async with feed.subscribe("binance", "BTCUSDT") as subscription:
            await take(subscription, 1)

        assert [c.args[0] for c in no_sleep.await_args_list] == [1.0, 2.0, 3.0, 3.0]

    @pytest.mark.asyncio
    async def test_reconnects_after_adapter_error(self, candles, no_sleep):
        """Should log a failed cycle and reconnect instead of ending the stream."""
        c0, c1, c2, _ = candles
        client = FakeStreamClient([c0, KeyError("k")], [c1, c2])
        feed = MarketDataFeed({"binance": client}, backoff_base=1.0, sleep=no_sleep)

        async with feed.subscribe("binance", "BTCUSDT") as subscription:
            delivered = await take(subscription, 3)

        stats = feed.stats("binance", "BTCUSDT")
        assert delivered == [c0, c1, c2]
        assert client.calls == 2
        assert stats.errors == 1
        assert stats.reconnects == 1
        assert no_sleep.await_args_list == [call(1.0)]

    @pytest.mark.asyncio
    async def test_auth_error_surfaces(self, no_sleep):
        """Should end the subscription and raise rejected credentials to the consumer."""
        client = FakeStreamClient(ExchangeAuthError("Invalid API-key", 401))
        feed = MarketDataFeed({"binance": client}, sleep=no_sleep)

        async with feed.subscribe("binance", "BTCUSDT") as subscription:
            with pytest.raises(ExchangeAuthError, match="Invalid API-key"):
                await take(subscription, 1)

        assert client.calls == 1
        no_sleep.assert_not_awaited()


class TestHealth:
    """Tests for heartbeats and stale detection."""

    @pytest.mark.asyncio
    async def test_heartbeat_and_staleness(self, candles, no_sleep):
        """Should track the last receipt time per stream."""
        feed = MarketDataFeed(
            {"binance": FakeStreamClient([candles[0]])}, sleep=no_sleep, clock=lambda: T0
        )
        assert feed.last_heartbeat("binance") is None

        async with feed.subscribe("binance", "BTCUSDT") as subscription:
            assert feed.stale_streams(60, now=T0) == [("binance", "BTCUSDT")]

            await take(subscription, 1)

            assert feed.last_heartbeat("binance") == T0
            assert feed.stale_streams(60, now=T0 + timedelta(seconds=30)) == []
            assert feed.stale_streams(60, now=T0 + timedelta(seconds=90)) == [("binance", "BTCUSDT")]

        assert feed.stale_streams(60, now=T0 + timedelta(seconds=90)) == []

    @pytest.mark.asyncio
    async def test_close_ends_iteration(self, no_sleep):
        """Should end every open subscription on close."""
        feed = MarketDataFeed({"binance": FakeStreamClient()}, sleep=no_sleep)
        subscription = feed.subscribe("binance", "BTCUSDT")
        subscription.start()

        await feed.close()

        with pytest.raises(StopAsyncIteration):
            await subscription.__anext__()

"""Market data feed: per-stream subscriptions with dedup, backpressure and reconnects."""

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping

import structlog
from websockets.exceptions import WebSocketException

from cryptopulse.clients.exchange import ExchangeAuthError, ExchangeClient, TransientFeedError
from cryptopulse.clients.models import Candle
from cryptopulse.config.settings import FeedSettings

logger = structlog.get_logger()

StreamKey = tuple[str, str]  # (exchange, symbol)

RECONNECT_ERRORS = (TransientFeedError, OSError, WebSocketException)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FeedStats:
    """Counters for one (exchange, symbol) stream."""

    delivered: int = 0
    duplicates: int = 0
    out_of_order: int = 0
    dropped_overflow: int = 0
    reconnects: int = 0
    errors: int = 0
    last_candle_at: datetime | None = None
    last_received_at: datetime | None = None


class Subscription:
    """
    Ordered, de-duplicated candles for one stream.

    Iterate with ``async for``. A background producer reads the exchange
    adapter, reconnecting with exponential backoff on transient failures,
    and fills a bounded queue; when the queue is full the oldest candle is
    dropped. An adapter that fails for any other reason is logged and
    reconnected the same way; only an authentication failure ends the
    subscription, re-raised to the consumer. Closing cancels the producer
    and closes the adapter stream.
    """

    def __init__(self, feed: "MarketDataFeed", exchange: str, symbol: str):
        self.feed = feed
        self.exchange = exchange
        self.symbol = symbol
        self._queue: deque[Candle] = deque()
        self._available = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._error: BaseException | None = None
        self._closed = False

    @property
    def key(self) -> StreamKey:
        return (self.exchange, self.symbol)

    @property
    def pending(self) -> int:
        return len(self._queue)

    def start(self) -> None:
        if self._task is None and not self._closed:
            self._task = asyncio.create_task(
                self._produce(), name=f"feed-{self.exchange}-{self.symbol}"
            )

    async def __aenter__(self) -> "Subscription":
        self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    def __aiter__(self) -> AsyncIterator[Candle]:
        return self

    async def __anext__(self) -> Candle:
        self.start()
        while not self._queue:
            if self._error is not None:
                raise self._error
            if self._closed:
                raise StopAsyncIteration
            self._available.clear()
            await self._available.wait()
        return self._queue.popleft()

    def _enqueue(self, candle: Candle) -> None:
        if len(self._queue) >= self.feed.max_queue_depth:
            dropped = self._queue.popleft()
            self.feed.stats(self.exchange, self.symbol).dropped_overflow += 1
            logger.warning(
                "Feed queue full, dropping oldest candle",
                exchange=self.exchange,
                symbol=self.symbol,
                dropped=dropped.timestamp.isoformat(),
            )
        self._queue.append(candle)
        self._available.set()

    async def _produce(self) -> None:
        client = self.feed.clients[self.exchange]
        stats = self.feed.stats(self.exchange, self.symbol)
        log = logger.bind(exchange=self.exchange, symbol=self.symbol)
        delay = self.feed.backoff_base

        try:
            while True:
                stream = client.stream_candles(
                    self.symbol, interval=self.feed.interval, poll_interval=self.feed.poll_interval
                )
                try:
                    async for candle in stream:
                        if await self.feed._accept(candle):
                            self._enqueue(candle)
                            delay = self.feed.backoff_base
                    raise TransientFeedError(f"{self.exchange} stream ended")
                except RECONNECT_ERRORS as e:
                    stats.reconnects += 1
                    log.warning("Feed disconnected, reconnecting", error=str(e), delay=delay)
                except ExchangeAuthError:
                    raise
                except Exception as e:
                    stats.errors += 1
                    stats.reconnects += 1
                    log.exception("Error in feed cycle, reconnecting", error=str(e), delay=delay)
                finally:
                    await stream.aclose()

                await self.feed._sleep(delay)
                delay = min(self.feed.backoff_cap, delay * 2)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception("Feed failed", error=str(e))
            self._error = e
            self._available.set()

    async def aclose(self) -> None:
        """Stop the producer and release the stream."""
        if self._closed:
            return
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._available.set()
        self.feed._release(self)


class MarketDataFeed:
    """
    Normalizes exchange adapters into per-stream candle subscriptions.

    Within a stream, candles are delivered in strictly increasing timestamp
    order: a duplicate timestamp or an older candle is dropped, counted and
    logged, never raised. A new subscription to a stream resumes after the
    last candle that stream delivered.

    Example:
        async with BinanceClient() as binance:
            feed = MarketDataFeed({"binance": binance})
            async with feed.subscribe("binance", "BTCUSDT") as candles:
                async for candle in candles:
                    ...
    """

    def __init__(
        self,
        clients: Mapping[str, ExchangeClient],
        interval: str = "1m",
        poll_interval: float = 5.0,
        backoff_base: float = 1.0,
        backoff_cap: float = 30.0,
        max_queue_depth: int = 1000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize feed.

        Args:
            clients: Exchange adapters by exchange name
            interval: Candle interval to stream
            poll_interval: Seconds between REST polls for polling adapters
            backoff_base: First reconnect delay in seconds
            backoff_cap: Maximum reconnect delay in seconds
            max_queue_depth: Candles buffered per subscription
            sleep: Awaitable sleep function
            clock: Wall clock for heartbeats
        """
        if max_queue_depth < 1:
            raise ValueError("max_queue_depth must be >= 1")
        self.clients = dict(clients)
        self.interval = interval
        self.poll_interval = poll_interval
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.max_queue_depth = max_queue_depth
        self._sleep = sleep
        self._clock = clock
        self._stats: dict[StreamKey, FeedStats] = {}
        self._last_delivered: dict[StreamKey, datetime] = {}
        self._locks: dict[StreamKey, asyncio.Lock] = {}
        self._heartbeats: dict[str, datetime] = {}
        self._active: dict[StreamKey, Subscription] = {}

    @classmethod
    def from_settings(
        cls, clients: Mapping[str, ExchangeClient], settings: FeedSettings
    ) -> "MarketDataFeed":
        return cls(
            clients,
            interval=settings.interval,
            poll_interval=settings.poll_interval,
            backoff_base=settings.backoff_base,
            backoff_cap=settings.backoff_cap,
            max_queue_depth=settings.max_queue_depth,
        )

    def subscribe(self, exchange: str, symbol: str) -> Subscription:
        """
        Open a subscription for one stream.

        Raises:
            ValueError: If the exchange is unknown or the stream is already subscribed
        """
        if exchange not in self.clients:
            raise ValueError(f"No client for exchange '{exchange}'")
        key = (exchange, symbol)
        if key in self._active:
            raise ValueError(f"Stream {exchange}:{symbol} is already subscribed")

        subscription = Subscription(self, exchange, symbol)
        self._active[key] = subscription
        logger.info("Subscribed to stream", exchange=exchange, symbol=symbol)
        return subscription

    def stats(self, exchange: str, symbol: str) -> FeedStats:
        return self._stats.setdefault((exchange, symbol), FeedStats())

    def last_heartbeat(self, exchange: str) -> datetime | None:
        """Last time any data or response arrived from the exchange."""
        seen = [self._heartbeats.get(exchange)]
        client = self.clients.get(exchange)
        if client is not None:
            seen.append(client.last_message_at)
        known = [t for t in seen if t is not None]
        return max(known) if known else None

    def stale_streams(self, stale_after: float, now: datetime | None = None) -> list[StreamKey]:
        """Subscribed streams with no candle within ``stale_after`` seconds."""
        now = now or self._clock()
        stale = []
        for key in sorted(self._active):
            received = self.stats(*key).last_received_at
            if received is None or (now - received).total_seconds() > stale_after:
                stale.append(key)
        return stale

    async def _accept(self, candle: Candle) -> bool:
        """Record a candle from an adapter; True if it should be delivered."""
        key = candle.stream_key
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            now = self._clock()
            stats = self.stats(*key)
            stats.last_received_at = now
            self._heartbeats[candle.exchange] = now

            last = self._last_delivered.get(key)
            if last is not None and candle.timestamp == last:
                stats.duplicates += 1
                logger.debug(
                    "Duplicate candle dropped",
                    exchange=candle.exchange,
                    symbol=candle.symbol,
                    timestamp=candle.timestamp.isoformat(),
                )
                return False
            if last is not None and candle.timestamp < last:
                stats.out_of_order += 1
                logger.warning(
                    "Out-of-order candle dropped",
                    exchange=candle.exchange,
                    symbol=candle.symbol,
                    timestamp=candle.timestamp.isoformat(),
                    last_delivered=last.isoformat(),
                )
                return False

            self._last_delivered[key] = candle.timestamp
            stats.delivered += 1
            stats.last_candle_at = candle.timestamp
            return True

    def _release(self, subscription: Subscription) -> None:
        if self._active.get(subscription.key) is subscription:
            del self._active[subscription.key]

    async def close(self) -> None:
        """Close every open subscription."""
        for subscription in list(self._active.values()):
            await subscription.aclose()

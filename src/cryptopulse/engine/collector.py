"""Historical candle collector feeding the backtest database."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Sequence

import structlog

from cryptopulse.clients.exchange import ExchangeClient, interval_to_seconds
from cryptopulse.config.settings import EngineSettings
from cryptopulse.monitoring.database import TradingDatabase

from .feed import StreamKey
from .runner import create_clients

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DataCollector:
    """
    Pages closed candles from exchange REST APIs into the database.

    Requests go through each client's rate limiter, so a long backfill
    waits for capacity rather than tripping exchange limits.

    Example:
        collector = DataCollector(clients={"binance": binance}, db=db)
        stored = await collector.backfill("binance", "BTCUSDT", "1h", start, end)
    """

    def __init__(
        self,
        clients: Mapping[str, ExchangeClient],
        db: TradingDatabase,
        page_size: int = 500,
        interval: float = 60.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize data collector.

        Args:
            clients: Exchange clients by name
            db: Trading database for storage
            page_size: Candles requested per call
            interval: Seconds between cycles of ``run``
            clock: Wall clock, used to skip candles that are still forming
        """
        self.clients = dict(clients)
        self.db = db
        self.page_size = page_size
        self.interval = interval
        self._clock = clock
        self._running = False

    async def backfill(
        self,
        exchange: str,
        symbol: str,
        candle_interval: str,
        start: datetime,
        end: datetime | None = None,
    ) -> int:
        """
        Fetch and store closed candles between ``start`` and ``end``.

        Args:
            exchange: Exchange name
            symbol: Market symbol
            candle_interval: Candle interval (e.g. "1m")
            start: First bucket to fetch
            end: Last bucket to fetch (now if None)

        Returns:
            Number of newly stored candles
        """
        client = self.clients[exchange]
        step = timedelta(seconds=interval_to_seconds(candle_interval))
        now = self._clock()
        end = min(_as_utc(end) if end else now, now)
        start = _as_utc(start)
        cursor = start
        stored = 0
        log = logger.bind(exchange=exchange, symbol=symbol, interval=candle_interval)

        while cursor <= end:
            page = await client.get_candles(
                symbol, interval=candle_interval, limit=self.page_size, start=cursor, end=end
            )
            closed = [
                c for c in page
                if cursor <= c.timestamp <= end and c.timestamp + step <= now
            ]
            if not closed:
                break

            stored += self.db.insert_candles(closed, candle_interval)
            cursor = closed[-1].timestamp + step
            log.debug("Stored candle page", candles=len(closed), next=cursor.isoformat())

            if len(page) < self.page_size:
                break

        log.info("Backfill complete", stored=stored, start=start.isoformat(), end=end.isoformat())
        return stored

    async def update(self, exchange: str, symbol: str, candle_interval: str, lookback: timedelta) -> int:
        """Fetch candles after the newest stored one (or ``lookback`` if none)."""
        latest = self.db.get_latest_candle_time(exchange, symbol, candle_interval)
        if latest is None:
            start = self._clock() - lookback
        else:
            start = latest + timedelta(seconds=interval_to_seconds(candle_interval))
        return await self.backfill(exchange, symbol, candle_interval, start)

    async def run(
        self,
        streams: Sequence[StreamKey],
        candle_interval: str = "1m",
        lookback: timedelta = timedelta(days=1),
    ) -> None:
        """Keep the database current for each stream until stopped."""
        self._running = True
        logger.info(
            "Starting data collector",
            streams=len(streams),
            interval=self.interval,
        )

        while self._running:
            for exchange, symbol in streams:
                try:
                    await self.update(exchange, symbol, candle_interval, lookback)
                except Exception as e:
                    logger.exception(
                        "Error in collection cycle", exchange=exchange, symbol=symbol, error=str(e)
                    )

            await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        """Stop data collection."""
        self._running = False
        logger.info("Stopping data collector")


async def run_data_collector(
    exchange: str,
    symbol: str,
    candle_interval: str,
    start: datetime,
    end: datetime | None = None,
    settings: EngineSettings | None = None,
) -> int:
    """
    Convenience function to backfill one stream.

    Args:
        exchange: Exchange name
        symbol: Market symbol
        candle_interval: Candle interval
        start: First bucket
        end: Last bucket (now if None)
        settings: Engine settings

    Returns:
        Number of newly stored candles
    """
    settings = settings or EngineSettings()
    db = TradingDatabase(settings.database_path)
    db.initialize()

    clients = create_clients(settings, [exchange])
    async with clients[exchange]:
        collector = DataCollector(clients=clients, db=db)
        return await collector.backfill(exchange, symbol, candle_interval, start, end)

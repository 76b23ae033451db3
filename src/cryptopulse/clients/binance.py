"""Binance spot REST and websocket client."""

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Any, AsyncIterator
from urllib.parse import urlencode

import structlog
import websockets
from websockets.exceptions import ConnectionClosed

from .exchange import ExchangeClient, TransientFeedError, interval_to_seconds
from .models import AccountBalance, AssetBalance, Candle

logger = structlog.get_logger()


def _ms_to_datetime(ms: int | float) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def _datetime_to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class BinanceClient(ExchangeClient):
    """
    Async client for the Binance spot API.

    Historical candles come from ``/api/v3/klines``; live candles from the
    ``<symbol>@kline_<interval>`` websocket stream, of which only closed
    candles are emitted.

    Example:
        async with BinanceClient(api_key=key, api_secret=secret) as client:
            balance = await client.get_balance()
            async for candle in client.stream_candles("BTCUSDT", "1m"):
                ...
    """

    name = "binance"
    BASE_URL = "https://api.binance.com"
    WS_URL = "wss://stream.binance.com:9443/ws"
    RATE_LIMIT_PER_MINUTE = 1200
    MAX_KLINES = 1000

    def __init__(self, *args: Any, ws_url: str | None = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.ws_url = ws_url or self.WS_URL

    def _sign_request(
        self,
        method: str,
        path: str,
        params: dict[str, Any],
        json: dict[str, Any] | None,
    ) -> dict[str, Any]:
        """Add timestamp and HMAC-SHA256 signature to the query string."""
        self._require_credentials()
        params["timestamp"] = int(time.time() * 1000)
        query = urlencode(params)
        signature = hmac.new(
            self.api_secret.encode("utf-8"),  # type: ignore[union-attr]
            query.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        params["signature"] = signature
        return {
            "params": params,
            "json": json,
            "headers": {"X-MBX-APIKEY": self.api_key},
        }

    def _parse_kline(self, symbol: str, row: list[Any]) -> Candle:
        """Parse a REST kline row: [openTime, open, high, low, close, volume, closeTime, ...]."""
        return Candle(
            symbol=symbol,
            exchange=self.name,
            timestamp=_ms_to_datetime(row[0]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
        )

    async def get_candles(
        self,
        symbol: str,
        interval: str = "1m",
        limit: int = 500,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Candle]:
        interval_to_seconds(interval)
        params: dict[str, Any] = {
            "symbol": symbol.upper(),
            "interval": interval,
            "limit": min(limit, self.MAX_KLINES),
        }
        if start:
            params["startTime"] = _datetime_to_ms(start)
        if end:
            params["endTime"] = _datetime_to_ms(end)

        data = await self._request("GET", "/api/v3/klines", params=params)
        return [self._parse_kline(symbol, row) for row in data]

    async def get_balance(self) -> AccountBalance:
        data = await self._request("GET", "/api/v3/account", signed=True)

        balances = [
            AssetBalance(
                asset=item["asset"],
                free=float(item["free"]),
                locked=float(item["locked"]),
            )
            for item in data.get("balances", [])
            if float(item["free"]) > 0 or float(item["locked"]) > 0
        ]
        return AccountBalance(exchange=self.name, balances=balances)

    def _parse_stream_kline(self, symbol: str, payload: dict[str, Any]) -> Candle | None:
        """Parse a websocket kline event, returning None until the candle closes."""
        kline = payload.get("k")
        if not kline or not kline.get("x"):
            return None
        return Candle(
            symbol=symbol,
            exchange=self.name,
            timestamp=_ms_to_datetime(kline["t"]),
            open=float(kline["o"]),
            high=float(kline["h"]),
            low=float(kline["l"]),
            close=float(kline["c"]),
            volume=float(kline["v"]),
        )

    async def stream_candles(
        self,
        symbol: str,
        interval: str = "1m",
        poll_interval: float = 5.0,
    ) -> AsyncIterator[Candle]:
        """
        Yield closed candles from the Binance kline websocket.

        The connection is closed when the generator is closed. A dropped
        connection surfaces as ``TransientFeedError`` so the feed reconnects.
        Messages that do not parse into a valid candle are logged, counted in
        ``malformed_messages`` and skipped.
        """
        interval_to_seconds(interval)
        url = f"{self.ws_url}/{symbol.lower()}@kline_{interval}"

        try:
            async with websockets.connect(url) as ws:
                logger.info("Websocket connected", exchange=self.name, symbol=symbol)
                async for message in ws:
                    self.mark_heartbeat()
                    try:
                        candle = self._parse_stream_kline(symbol, json.loads(message))
                    except (AttributeError, KeyError, TypeError, ValueError) as e:
                        self.malformed_messages += 1
                        logger.warning(
                            "Dropping malformed kline message",
                            exchange=self.name,
                            symbol=symbol,
                            error=repr(e),
                        )
                        continue
                    if candle is not None:
                        yield candle
        except ConnectionClosed as e:
            raise TransientFeedError(f"binance websocket closed: {e}")

        raise TransientFeedError("binance websocket stream ended")

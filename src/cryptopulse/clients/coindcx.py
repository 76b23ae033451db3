"""CoinDCX REST client."""

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Any

from .exchange import ExchangeClient, interval_to_seconds
from .models import AccountBalance, AssetBalance, Candle


class CoinDCXClient(ExchangeClient):
    """
    Async client for the CoinDCX API.

    CoinDCX has no public kline websocket, so live candles use the polling
    ``stream_candles`` of the base client. Markets use CoinDCX pair names,
    e.g. ``B-BTC_USDT``.
    """

    name = "coindcx"
    BASE_URL = "https://api.coindcx.com"
    PUBLIC_URL = "https://public.coindcx.com"
    RATE_LIMIT_PER_MINUTE = 100

    def __init__(self, *args: Any, public_url: str | None = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.public_url = public_url or self.PUBLIC_URL

    def _sign_request(
        self,
        method: str,
        path: str,
        params: dict[str, Any],
        json_body: dict[str, Any] | None,
    ) -> dict[str, Any]:
        """Sign the compact JSON body with HMAC-SHA256."""
        self._require_credentials()
        body = dict(json_body or {})
        body["timestamp"] = int(time.time() * 1000)
        payload = json.dumps(body, separators=(",", ":"))
        signature = hmac.new(
            self.api_secret.encode("utf-8"),  # type: ignore[union-attr]
            payload.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return {
            "params": params or None,
            "content": payload.encode("utf-8"),
            "headers": {
                "Content-Type": "application/json",
                "X-AUTH-APIKEY": self.api_key,
                "X-AUTH-SIGNATURE": signature,
            },
        }

    def _parse_candle(self, symbol: str, row: dict[str, Any]) -> Candle:
        return Candle(
            symbol=symbol,
            exchange=self.name,
            timestamp=datetime.fromtimestamp(row["time"] / 1000, tz=timezone.utc),
            open=float(row["open"]),
            high=float(row["high"]),
            low=float(row["low"]),
            close=float(row["close"]),
            volume=float(row.get("volume", 0.0)),
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
        params: dict[str, Any] = {"pair": symbol, "interval": interval, "limit": limit}
        if start:
            params["startTime"] = int(start.timestamp() * 1000)
        if end:
            params["endTime"] = int(end.timestamp() * 1000)

        data = await self._request(
            "GET", f"{self.public_url}/market_data/candles", params=params
        )
        candles = [self._parse_candle(symbol, row) for row in data]
        # CoinDCX returns newest first
        return sorted(candles, key=lambda c: c.timestamp)

    async def get_balance(self) -> AccountBalance:
        data = await self._request("POST", "/exchange/v1/users/balances", signed=True)

        balances = [
            AssetBalance(
                asset=item["currency"],
                free=float(item["balance"]),
                locked=float(item.get("locked_balance", 0.0)),
            )
            for item in data
            if float(item["balance"]) > 0 or float(item.get("locked_balance", 0.0)) > 0
        ]
        return AccountBalance(exchange=self.name, balances=balances)

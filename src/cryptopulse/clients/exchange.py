"""Base async exchange client with rate limiting and retry/backoff."""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx
import structlog

from .models import AccountBalance, Candle

logger = structlog.get_logger()


INTERVAL_SECONDS: dict[str, int] = {
    "1m": 60,
    "3m": 180,
    "5m": 300,
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
    "2h": 7200,
    "4h": 14400,
    "6h": 21600,
    "12h": 43200,
    "1d": 86400,
}


def interval_to_seconds(interval: str) -> int:
    """Convert an interval string like '5m' to seconds."""
    try:
        return INTERVAL_SECONDS[interval]
    except KeyError:
        raise ValueError(f"Unsupported candle interval: {interval}")


class TransientFeedError(Exception):
    """Raised for failures that are expected to clear on retry (network, 429, 5xx)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ExchangeRateLimitError(TransientFeedError):
    """Raised when the exchange throttles requests."""

    def __init__(self, message: str, status_code: int = 429, retry_after: float | None = None):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class ExchangeServerError(TransientFeedError):
    """Raised on 5xx responses."""

    pass


class ExchangeAPIError(Exception):
    """Raised when an API request fails and should not be retried."""

    def __init__(self, message: str, status_code: int, error_code: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class ExchangeAuthError(ExchangeAPIError):
    """Raised when credentials are missing or rejected."""

    pass


class RateLimiter:
    """
    Spaces outbound requests to stay under a per-minute ceiling.

    Callers wait for capacity instead of being rejected.
    """

    def __init__(
        self,
        requests_per_minute: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self.min_interval = 60.0 / requests_per_minute
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_request: float | None = None
        self.throttled = 0

    async def acquire(self) -> None:
        """Wait until the next request slot is free."""
        async with self._lock:
            now = self._clock()
            if self._last_request is not None:
                wait = self._last_request + self.min_interval - now
                if wait > 0:
                    self.throttled += 1
                    await self._sleep(wait)
                    now = self._clock()
            self._last_request = now


class ExchangeClient(ABC):
    """
    Async REST client shared by all exchange adapters.

    Subclasses provide endpoint paths, response parsing and request signing.
    Requests that fail with 429, 5xx or a transport error are retried with
    exponential backoff up to ``max_retries`` times, then surfaced as
    ``TransientFeedError``.

    Example:
        async with BinanceClient() as client:
            candles = await client.get_candles("BTCUSDT", interval="1m")
    """

    name: str = ""
    BASE_URL: str = ""
    RATE_LIMIT_PER_MINUTE: int = 60

    def __init__(
        self,
        api_key: str | None = None,
        api_secret: str | None = None,
        base_url: str | None = None,
        timeout: float = 30.0,
        rate_limit_per_minute: int | None = None,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        backoff_cap: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize exchange client.

        Args:
            api_key: API key for signed endpoints
            api_secret: API secret used for HMAC signatures
            base_url: Override the REST base URL
            timeout: Request timeout in seconds
            rate_limit_per_minute: Outbound request ceiling (exchange default if None)
            max_retries: Retries for transient failures
            backoff_base: First retry delay in seconds
            backoff_cap: Maximum retry delay in seconds
            transport: Custom httpx transport (used by tests)
            sleep: Awaitable sleep function
        """
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url or self.BASE_URL
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.rate_limiter = RateLimiter(
            rate_limit_per_minute or self.RATE_LIMIT_PER_MINUTE, sleep=sleep
        )
        self.last_message_at: datetime | None = None
        self.malformed_messages = 0
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "ExchangeClient":
        """Enter async context."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit async context."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def mark_heartbeat(self) -> None:
        """Record that data arrived from the exchange."""
        self.last_message_at = datetime.now(timezone.utc)

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        signed: bool = False,
    ) -> Any:
        """
        Make a rate-limited request, retrying transient failures.

        Args:
            method: HTTP method
            path: API path (relative to base URL) or absolute URL
            params: Query parameters
            json: JSON body
            signed: Whether the request needs an authentication signature

        Returns:
            Parsed JSON response

        Raises:
            TransientFeedError: If retries are exhausted
            ExchangeAPIError: For non-retryable API errors
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context.")

        attempt = 0
        while True:
            await self.rate_limiter.acquire()

            # Signatures carry a timestamp, so they are rebuilt per attempt
            if signed:
                request_kwargs = self._sign_request(method, path, dict(params or {}), json)
            else:
                request_kwargs = {"params": params, "json": json}

            try:
                response = await self._client.request(method, path, **request_kwargs)
                self.mark_heartbeat()
                return self._handle_response(response)
            except httpx.TransportError as e:
                error: TransientFeedError = TransientFeedError(
                    f"{self.name} transport error: {e}"
                )
            except TransientFeedError as e:
                error = e

            if attempt >= self.max_retries:
                raise error

            delay = self._retry_delay(attempt, error)
            logger.warning(
                "Retrying exchange request",
                exchange=self.name,
                path=path,
                attempt=attempt + 1,
                delay=delay,
                error=str(error),
            )
            await self._sleep(delay)
            attempt += 1

    def _retry_delay(self, attempt: int, error: TransientFeedError) -> float:
        """Exponential backoff, honouring Retry-After when the exchange sends it."""
        if isinstance(error, ExchangeRateLimitError) and error.retry_after is not None:
            return min(self.backoff_cap, error.retry_after)
        return min(self.backoff_cap, self.backoff_base * (2**attempt))

    def _handle_response(self, response: httpx.Response) -> Any:
        """Map HTTP status codes to exceptions and return parsed JSON."""
        status = response.status_code

        # Binance answers 418 once an IP keeps ignoring 429s
        if status in (418, 429):
            retry_after = response.headers.get("Retry-After")
            raise ExchangeRateLimitError(
                f"{self.name} rate limit exceeded",
                status_code=status,
                retry_after=float(retry_after) if retry_after else None,
            )

        if status >= 500:
            raise ExchangeServerError(f"{self.name} server error", status_code=status)

        if status >= 400:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {}
            if not isinstance(error_data, dict):
                error_data = {}
            message = error_data.get("msg") or error_data.get("message") or response.text
            error_code = error_data.get("code")
            error_code = str(error_code) if error_code is not None else None

            if status in (401, 403):
                raise ExchangeAuthError(message, status, error_code)
            raise ExchangeAPIError(message, status, error_code)

        return response.json()

    def _sign_request(
        self,
        method: str,
        path: str,
        params: dict[str, Any],
        json: dict[str, Any] | None,
    ) -> dict[str, Any]:
        """Build authenticated httpx request kwargs."""
        raise ExchangeAuthError(f"{self.name} does not support signed requests", 401)

    def _require_credentials(self) -> None:
        if not self.has_credentials:
            raise ExchangeAuthError(f"{self.name} API key and secret are required", 401)

    # -- Market Data --

    @abstractmethod
    async def get_candles(
        self,
        symbol: str,
        interval: str = "1m",
        limit: int = 500,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Candle]:
        """
        Get historical candles, oldest first.

        Args:
            symbol: Exchange market symbol
            interval: Candle interval (e.g. "1m", "1h")
            limit: Maximum candles to return
            start: Only candles opening at or after this time
            end: Only candles opening at or before this time

        Returns:
            List of closed and in-progress candles
        """

    @abstractmethod
    async def get_balance(self) -> AccountBalance:
        """Get non-zero account balances (signed endpoint)."""

    async def stream_candles(
        self,
        symbol: str,
        interval: str = "1m",
        poll_interval: float = 5.0,
    ) -> AsyncIterator[Candle]:
        """
        Yield closed candles as they complete by polling the REST endpoint.

        Exchanges with a websocket feed override this.

        Args:
            symbol: Exchange market symbol
            interval: Candle interval
            poll_interval: Seconds between polls
        """
        step = interval_to_seconds(interval)
        last_yielded: datetime | None = None

        while True:
            candles = await self.get_candles(symbol, interval=interval, limit=5)
            now = datetime.now(timezone.utc)

            for candle in candles:
                if candle.timestamp.timestamp() + step > now.timestamp():
                    continue  # still forming
                if last_yielded is not None and candle.timestamp <= last_yielded:
                    continue
                last_yielded = candle.timestamp
                yield candle

            await self._sleep(poll_interval)

"""Exchange API clients."""

from typing import Any

from .binance import BinanceClient
from .coindcx import CoinDCXClient
from .exchange import (
    ExchangeAPIError,
    ExchangeAuthError,
    ExchangeClient,
    ExchangeRateLimitError,
    ExchangeServerError,
    RateLimiter,
    TransientFeedError,
    interval_to_seconds,
)
from .models import AccountBalance, AssetBalance, Candle

# Registry of supported exchanges
EXCHANGE_CLIENTS: dict[str, type[ExchangeClient]] = {
    "binance": BinanceClient,
    "coindcx": CoinDCXClient,
}


def create_exchange_client(name: str, **kwargs: Any) -> ExchangeClient:
    """
    Create an exchange client by name.

    Args:
        name: Exchange name ("binance", "coindcx")
        **kwargs: Passed to the client constructor

    Raises:
        ValueError: If the exchange is not supported
    """
    if name not in EXCHANGE_CLIENTS:
        available = ", ".join(EXCHANGE_CLIENTS.keys())
        raise ValueError(f"Unknown exchange '{name}'. Available: {available}")
    return EXCHANGE_CLIENTS[name](**kwargs)


__all__ = [
    # Clients
    "BinanceClient",
    "CoinDCXClient",
    "ExchangeClient",
    "EXCHANGE_CLIENTS",
    "create_exchange_client",
    "RateLimiter",
    "interval_to_seconds",
    # Errors
    "ExchangeAPIError",
    "ExchangeAuthError",
    "ExchangeRateLimitError",
    "ExchangeServerError",
    "TransientFeedError",
    # Models
    "AccountBalance",
    "AssetBalance",
    "Candle",
]

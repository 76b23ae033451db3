"""Pydantic models for normalized exchange data."""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Candle(BaseModel):
    """
    Time-bucketed OHLCV market data point.

    Candles are immutable once created. The timestamp is the bucket open
    time in UTC. Open and close must lie within the low-high range.
    """

    model_config = ConfigDict(frozen=True)

    symbol: str
    exchange: str
    timestamp: datetime
    open: float = Field(gt=0)
    high: float = Field(gt=0)
    low: float = Field(gt=0)
    close: float = Field(gt=0)
    volume: float = Field(default=0.0, ge=0)

    @field_validator("timestamp")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @model_validator(mode="after")
    def _check_range(self) -> "Candle":
        if self.low > min(self.open, self.close) or self.high < max(self.open, self.close):
            raise ValueError(
                f"OHLC out of range: open={self.open} high={self.high} low={self.low} close={self.close}"
            )
        return self

    @property
    def stream_key(self) -> tuple[str, str]:
        """(exchange, symbol) identity of the stream this candle belongs to."""
        return (self.exchange, self.symbol)

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open


class AssetBalance(BaseModel):
    """Balance of a single asset on an exchange account."""

    asset: str
    free: float = 0.0
    locked: float = 0.0

    @property
    def total(self) -> float:
        return self.free + self.locked


class AccountBalance(BaseModel):
    """Non-zero balances reported by an exchange."""

    exchange: str
    balances: list[AssetBalance] = Field(default_factory=list)

    def get(self, asset: str) -> AssetBalance | None:
        """Get balance for an asset, if held."""
        for balance in self.balances:
            if balance.asset == asset:
                return balance
        return None

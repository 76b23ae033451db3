"""Strategy configuration, signals and evaluation context."""

import hashlib
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from cryptopulse.clients.models import Candle


class ConfigurationError(Exception):
    """Raised when a strategy or engine configuration is invalid."""

    pass


class StrategyType(str, Enum):
    """Closed set of supported strategy types."""

    MOMENTUM = "momentum"
    MEAN_REVERSION = "mean_reversion"
    TREND_FOLLOWING = "trend_following"
    SCALPING = "scalping"
    ARBITRAGE = "arbitrage"
    GRID = "grid"
    DCA = "dca"


class RiskParameters(BaseModel):
    """Per-strategy risk limits. Fractions are of account balance."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    max_risk_per_trade: float = Field(default=0.02, gt=0, le=1)
    max_position_size: float = Field(default=0.1, gt=0, le=1)
    max_concurrent_trades: int = Field(default=3, ge=1)


class StrategyConfig(BaseModel):
    """
    Immutable, versioned strategy configuration.

    A configuration is identified by ``id`` and ``revision``. Changing
    parameters never edits a configuration in place; ``revise`` returns a
    new revision so earlier backtests stay reproducible.
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str = Field(min_length=1)
    revision: int = Field(default=1, ge=1)
    type: StrategyType
    name: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)
    risk_parameters: RiskParameters = Field(default_factory=RiskParameters)
    user_id: str | None = None

    @property
    def version(self) -> str:
        return f"{self.id}@{self.revision}"

    def revise(self, **parameters: Any) -> "StrategyConfig":
        """Return the next revision with ``parameters`` merged over the current ones."""
        return self.model_copy(
            update={
                "revision": self.revision + 1,
                "parameters": {**self.parameters, **parameters},
            }
        )

    def fingerprint(self) -> str:
        """Stable hash of the full configuration."""
        payload = json.dumps(self.model_dump(mode="json"), sort_keys=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class SignalAction(str, Enum):
    """Recommended action."""

    BUY = "buy"
    SELL = "sell"
    NONE = "none"


@dataclass(frozen=True)
class Signal:
    """
    A strategy's recommendation for one symbol at one candle.

    Signals are never mutated; sizing produces a new instance with
    ``suggested_quantity`` filled in.
    """

    strategy_id: str
    symbol: str
    exchange: str
    action: SignalAction
    confidence: float
    suggested_price: float
    generated_at: datetime
    strategy_revision: int = 1
    suggested_quantity: float | None = None
    stop_loss_price: float | None = None
    take_profit_price: float | None = None
    basis: Mapping[str, float] = field(default_factory=dict, hash=False)
    reason: str = ""
    user_id: str | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {self.confidence}")

    @property
    def signal_id(self) -> str:
        return (
            f"{self.strategy_id}@{self.strategy_revision}:{self.exchange}:{self.symbol}:"
            f"{self.action.value}:{self.generated_at.isoformat()}"
        )

    @property
    def is_actionable(self) -> bool:
        return self.action != SignalAction.NONE

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        data = asdict(self)
        data["action"] = self.action.value
        data["generated_at"] = self.generated_at.isoformat()
        data["basis"] = dict(self.basis)
        data["signal_id"] = self.signal_id
        return data


@dataclass(frozen=True)
class MarketWindow:
    """
    Recent candles for one stream, oldest first; the last one is current.

    ``reference_prices`` maps other exchanges to their latest close for the
    same symbol (used by arbitrage).
    """

    candles: tuple[Candle, ...]
    reference_prices: Mapping[str, float] = field(default_factory=dict, hash=False)

    @property
    def current(self) -> Candle:
        return self.candles[-1]

    @property
    def previous(self) -> Candle | None:
        return self.candles[-2] if len(self.candles) > 1 else None


@dataclass(frozen=True)
class PositionContext:
    """Position state supplied by the caller; strategies hold none of their own."""

    quantity: float = 0.0
    average_entry_price: float | None = None
    opened_at: datetime | None = None
    open_trades: int = 0

    @property
    def in_position(self) -> bool:
        return self.quantity > 0


FLAT = PositionContext()

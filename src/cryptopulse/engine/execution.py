"""Fill model applied to simulated and paper trades."""

from dataclasses import dataclass
from enum import Enum


class TradeSide(str, Enum):
    """Side of a fill."""

    BUY = "buy"
    SELL = "sell"


@dataclass(frozen=True)
class ExecutionModel:
    """
    Synthesizes fills from quoted prices.

    Costs are applied in order: half the spread against the trader, then
    slippage as a fraction of the quoted price (also against the trader),
    then commission as a fraction of the filled notional.

    Attributes:
        spread: Full bid/ask spread as a fraction of price
        slippage: Adverse price movement as a fraction of the quoted price
        commission: Fee as a fraction of notional
    """

    spread: float = 0.0005
    slippage: float = 0.001
    commission: float = 0.001

    def __post_init__(self) -> None:
        for name in ("spread", "slippage", "commission"):
            value = getattr(self, name)
            if not 0 <= value < 1:
                raise ValueError(f"{name} must be in [0, 1), got {value}")

    def fill_price(self, side: TradeSide, quoted_price: float) -> float:
        """Price after spread and slippage."""
        half_spread = quoted_price * self.spread / 2
        slip = quoted_price * self.slippage
        if side == TradeSide.BUY:
            return quoted_price + half_spread + slip
        return quoted_price - half_spread - slip

    def fees(self, fill_price: float, quantity: float) -> float:
        """Commission on the filled notional."""
        return fill_price * quantity * self.commission

    def to_dict(self) -> dict[str, float]:
        return {"spread": self.spread, "slippage": self.slippage, "commission": self.commission}

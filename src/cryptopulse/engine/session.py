"""Account, positions and trade ledger owned by a single run."""

import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Mapping

from cryptopulse.clients.models import Candle
from cryptopulse.strategies.base import PositionContext

from .execution import ExecutionModel, TradeSide

PositionKey = tuple[str, str, str]  # (strategy_id, exchange, symbol)


@dataclass(frozen=True)
class Trade:
    """
    Ledger entry for one fill.

    ``quantity`` is unsigned; ``side`` gives the direction. ``fees`` is the
    commission and ``slippage`` the cost of spread and slippage, both in quote
    currency. ``realized_pnl`` is None for opening fills.
    """

    side: TradeSide
    symbol: str
    quantity: float
    price: float
    fees: float
    slippage: float
    timestamp: datetime
    strategy_id: str
    exchange: str
    quoted_price: float
    realized_pnl: float | None = None
    entry_price: float | None = None
    reason: str = ""

    @property
    def signed_quantity(self) -> float:
        return self.quantity if self.side == TradeSide.BUY else -self.quantity

    @property
    def notional(self) -> float:
        return self.price * self.quantity

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Trade":
        values = dict(data)
        values["side"] = TradeSide(values["side"])
        values["timestamp"] = datetime.fromisoformat(values["timestamp"])
        return cls(**values)


@dataclass
class Position:
    """
    Open long position for one strategy on one symbol.

    ``average_entry_price`` is the cost basis per unit including buy fees.
    Stop-loss and take-profit levels come from the most recent entry signal.
    """

    strategy_id: str
    exchange: str
    symbol: str
    quantity: float = 0.0
    average_entry_price: float = 0.0
    opened_at: datetime | None = None
    open_lots: int = 0
    stop_loss_price: float | None = None
    take_profit_price: float | None = None

    @property
    def key(self) -> PositionKey:
        return (self.strategy_id, self.exchange, self.symbol)

    @property
    def is_open(self) -> bool:
        return self.quantity > 0

    def exit_trigger(self, candle: Candle) -> tuple[float, str] | None:
        """
        Check whether the candle touched the stop-loss or take-profit.

        A candle that opens beyond a level fills at the open. When both
        levels fall inside one candle the stop-loss wins.

        Returns:
            (quoted exit price, reason) or None
        """
        if self.stop_loss_price is not None and candle.low <= self.stop_loss_price:
            return min(candle.open, self.stop_loss_price), "stop_loss"
        if self.take_profit_price is not None and candle.high >= self.take_profit_price:
            return max(candle.open, self.take_profit_price), "take_profit"
        return None


@dataclass
class DailyStats:
    """Realized results for one calendar day (UTC, by trade timestamp)."""

    day: date
    starting_balance: float
    trades: int = 0
    realized_pnl: float = 0.0


class Account:
    """
    Cash balance, open positions and the append-only ledger of one run.

    Positions change only through ``apply_fill``, so a position's quantity
    always equals the signed sum of the ledger's trades for its key.
    """

    def __init__(self, starting_balance: float):
        if starting_balance <= 0:
            raise ValueError("starting_balance must be positive")
        self.starting_balance = starting_balance
        self.cash = starting_balance
        self.positions: dict[PositionKey, Position] = {}
        self.ledger: list[Trade] = []
        self._daily: dict[date, DailyStats] = {}

    @property
    def balance(self) -> float:
        return self.cash

    def position(self, strategy_id: str, exchange: str, symbol: str) -> Position | None:
        return self.positions.get((strategy_id, exchange, symbol))

    def open_positions(self, strategy_id: str, exchange: str, symbol: str) -> int:
        """Number of open entries (lots) for this strategy and symbol."""
        position = self.position(strategy_id, exchange, symbol)
        return position.open_lots if position else 0

    def context(self, strategy_id: str, exchange: str, symbol: str) -> PositionContext:
        """Position context handed to the strategy evaluator."""
        position = self.position(strategy_id, exchange, symbol)
        if position is None:
            return PositionContext()
        return PositionContext(
            quantity=position.quantity,
            average_entry_price=position.average_entry_price,
            opened_at=position.opened_at,
            open_trades=position.open_lots,
        )

    def daily_stats(self, day: date) -> DailyStats:
        if day not in self._daily:
            self._daily[day] = DailyStats(day=day, starting_balance=self.cash)
        return self._daily[day]

    def equity(self, prices: Mapping[tuple[str, str], float]) -> float:
        """Cash plus open positions marked at ``prices[(exchange, symbol)]``."""
        total = self.cash
        for position in self.positions.values():
            price = prices.get((position.exchange, position.symbol), position.average_entry_price)
            total += position.quantity * price
        return total

    def execute(
        self,
        side: TradeSide,
        strategy_id: str,
        exchange: str,
        symbol: str,
        quantity: float,
        quoted_price: float,
        timestamp: datetime,
        model: ExecutionModel,
        reason: str = "",
        stop_loss_price: float | None = None,
        take_profit_price: float | None = None,
    ) -> Trade:
        """
        Synthesize a fill through ``model`` and apply it.

        Returns:
            The recorded Trade
        """
        price = model.fill_price(side, quoted_price)
        fees = model.fees(price, quantity)
        realized_pnl = None
        entry_price = None

        if side == TradeSide.SELL:
            position = self.position(strategy_id, exchange, symbol)
            if position is None or quantity > position.quantity:
                raise ValueError(f"Cannot sell {quantity} {symbol}: position too small")
            entry_price = position.average_entry_price
            realized_pnl = price * quantity - fees - entry_price * quantity

        trade = Trade(
            side=side,
            symbol=symbol,
            quantity=quantity,
            price=price,
            fees=fees,
            slippage=abs(price - quoted_price) * quantity,
            timestamp=timestamp,
            strategy_id=strategy_id,
            exchange=exchange,
            quoted_price=quoted_price,
            realized_pnl=realized_pnl,
            entry_price=entry_price,
            reason=reason,
        )
        self.apply_fill(trade, stop_loss_price, take_profit_price)
        return trade

    def apply_fill(
        self,
        trade: Trade,
        stop_loss_price: float | None = None,
        take_profit_price: float | None = None,
    ) -> None:
        """Update cash, position and ledger from a filled trade."""
        key = (trade.strategy_id, trade.exchange, trade.symbol)
        stats = self.daily_stats(trade.timestamp.astimezone(timezone.utc).date())

        if trade.side == TradeSide.BUY:
            position = self.positions.get(key)
            if position is None:
                position = Position(
                    strategy_id=trade.strategy_id,
                    exchange=trade.exchange,
                    symbol=trade.symbol,
                    opened_at=trade.timestamp,
                )
                self.positions[key] = position

            cost = trade.notional + trade.fees
            new_quantity = position.quantity + trade.quantity
            position.average_entry_price = (
                position.average_entry_price * position.quantity + cost
            ) / new_quantity
            position.quantity = new_quantity
            position.open_lots += 1
            position.stop_loss_price = stop_loss_price
            position.take_profit_price = take_profit_price
            self.cash -= cost
        else:
            position = self.positions[key]
            position.quantity -= trade.quantity
            self.cash += trade.notional - trade.fees
            stats.realized_pnl += trade.realized_pnl or 0.0
            if position.quantity <= 0:
                del self.positions[key]

        stats.trades += 1
        self.ledger.append(trade)


class CancellationToken:
    """Cooperative cancellation flag, safe to set from another thread."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class TradingSession:
    """
    Explicit context for one live or simulated run.

    Holds the account and cancellation token that would otherwise be global
    state, so independent runs never share positions.
    """

    account: Account
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def create(cls, starting_balance: float) -> "TradingSession":
        return cls(account=Account(starting_balance))

"""Position sizing and risk checks for trade signals."""

from collections import Counter
from dataclasses import dataclass, replace
from datetime import timezone
from enum import Enum
from typing import Any

import structlog

from cryptopulse.strategies.base import RiskParameters, Signal, SignalAction

from .session import Account

logger = structlog.get_logger()


@dataclass
class RiskLimits:
    """
    Engine-wide limits applied on top of each strategy's risk parameters.

    ``max_daily_loss`` is a fraction of the balance at the start of the day.
    """

    min_confidence: float = 0.0
    max_daily_loss: float = 0.10
    max_daily_trades: int = 50


class RejectionReason(str, Enum):
    """Why a signal was not sized."""

    NOT_ACTIONABLE = "not_actionable"
    LOW_CONFIDENCE = "low_confidence"
    DAILY_TRADE_LIMIT = "daily_trade_limit"
    DAILY_LOSS_LIMIT = "daily_loss_limit"
    MAX_CONCURRENT_TRADES = "max_concurrent_trades"
    MISSING_STOP_LOSS = "missing_stop_loss"
    INVALID_STOP_LOSS = "invalid_stop_loss"
    MAX_POSITION_SIZE = "max_position_size"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    NO_POSITION = "no_position"


@dataclass(frozen=True)
class PositionSize:
    """Accepted signal with its computed quantity."""

    signal: Signal
    quantity: float

    @property
    def notional(self) -> float:
        return self.quantity * self.signal.suggested_price


@dataclass(frozen=True)
class RiskRejection:
    """Signal suppressed by risk checks. Returned, never raised."""

    signal: Signal
    reason: RejectionReason
    message: str


class RiskManager:
    """
    Sizes signals and rejects those that would breach risk limits.

    Buy size is ``balance * max_risk_per_trade / |entry - stop_loss|``. A sell
    closes the whole open position. Rejections are counted per reason.

    Example:
        risk = RiskManager(RiskLimits(max_daily_trades=20))
        result = risk.size(signal, session.account, config.risk_parameters)
        if isinstance(result, PositionSize):
            ...
    """

    def __init__(self, limits: RiskLimits | None = None):
        """
        Initialize risk manager.

        Args:
            limits: Engine-wide risk limits
        """
        self.limits = limits or RiskLimits()
        self.rejections: Counter[str] = Counter()
        self.accepted = 0

    def size(
        self,
        signal: Signal,
        account: Account,
        risk_params: RiskParameters,
    ) -> PositionSize | RiskRejection:
        """
        Compute the quantity for a signal or reject it.

        Args:
            signal: Signal from the strategy evaluator
            account: Account of the run the signal belongs to
            risk_params: The strategy's risk parameters

        Returns:
            PositionSize with a sized copy of the signal, or RiskRejection
        """
        if signal.action == SignalAction.SELL:
            return self._size_exit(signal, account)
        if signal.action != SignalAction.BUY:
            return self._reject(signal, RejectionReason.NOT_ACTIONABLE, "signal has no action")
        return self._size_entry(signal, account, risk_params)

    def _size_exit(self, signal: Signal, account: Account) -> PositionSize | RiskRejection:
        position = account.position(signal.strategy_id, signal.exchange, signal.symbol)
        if position is None or not position.is_open:
            return self._reject(signal, RejectionReason.NO_POSITION, "no open position to sell")
        return self._accept(signal, position.quantity)

    def _size_entry(
        self,
        signal: Signal,
        account: Account,
        risk_params: RiskParameters,
    ) -> PositionSize | RiskRejection:
        if signal.confidence < self.limits.min_confidence:
            return self._reject(
                signal,
                RejectionReason.LOW_CONFIDENCE,
                f"confidence {signal.confidence:.2f} below {self.limits.min_confidence:.2f}",
            )

        stats = account.daily_stats(signal.generated_at.astimezone(timezone.utc).date())
        if stats.trades >= self.limits.max_daily_trades:
            return self._reject(
                signal, RejectionReason.DAILY_TRADE_LIMIT, f"{stats.trades} trades today"
            )
        if stats.realized_pnl <= -self.limits.max_daily_loss * stats.starting_balance:
            return self._reject(
                signal,
                RejectionReason.DAILY_LOSS_LIMIT,
                f"daily loss {stats.realized_pnl:.2f} reached limit",
            )

        open_positions = account.open_positions(signal.strategy_id, signal.exchange, signal.symbol)
        if open_positions >= risk_params.max_concurrent_trades:
            return self._reject(
                signal,
                RejectionReason.MAX_CONCURRENT_TRADES,
                f"{open_positions} open positions (max {risk_params.max_concurrent_trades})",
            )

        if signal.stop_loss_price is None:
            return self._reject(signal, RejectionReason.MISSING_STOP_LOSS, "signal has no stop-loss")
        risk_per_unit = abs(signal.suggested_price - signal.stop_loss_price)
        if risk_per_unit == 0:
            return self._reject(
                signal, RejectionReason.INVALID_STOP_LOSS, "stop-loss equals entry price"
            )

        balance = account.balance
        quantity = (balance * risk_params.max_risk_per_trade) / risk_per_unit
        notional = quantity * signal.suggested_price

        if notional > risk_params.max_position_size * balance:
            return self._reject(
                signal,
                RejectionReason.MAX_POSITION_SIZE,
                f"notional {notional:.2f} exceeds {risk_params.max_position_size:.0%} of balance",
            )
        if notional > account.cash:
            return self._reject(
                signal, RejectionReason.INSUFFICIENT_BALANCE, f"notional {notional:.2f} exceeds cash"
            )

        return self._accept(signal, quantity)

    def _accept(self, signal: Signal, quantity: float) -> PositionSize:
        self.accepted += 1
        return PositionSize(signal=replace(signal, suggested_quantity=quantity), quantity=quantity)

    def _reject(self, signal: Signal, reason: RejectionReason, message: str) -> RiskRejection:
        self.rejections[reason.value] += 1
        logger.warning(
            "Signal rejected by risk",
            strategy_id=signal.strategy_id,
            symbol=signal.symbol,
            action=signal.action.value,
            reason=reason.value,
            detail=message,
        )
        return RiskRejection(signal=signal, reason=reason, message=message)

    def get_risk_summary(self, account: Account) -> dict[str, Any]:
        """
        Get summary of current risk state.

        Returns:
            Dict with risk metrics
        """
        return {
            "balance": account.balance,
            "open_positions": {
                f"{strategy}:{exchange}:{symbol}": position.quantity
                for (strategy, exchange, symbol), position in account.positions.items()
            },
            "accepted": self.accepted,
            "rejections": dict(self.rejections),
        }

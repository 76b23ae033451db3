"""Performance metrics over a trade ledger."""

import math
import statistics
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:
    from cryptopulse.engine.session import Trade

DAYS_PER_YEAR = 365.0


@dataclass(frozen=True)
class PerformanceReport:
    """
    Aggregate metrics for one run.

    Ratios are fractions (0.1 == 10%). ``profit_factor`` is ``inf`` when there
    are profits but no losses. ``calmar_ratio`` is ``inf`` when there is no
    drawdown and the return is positive, and None when it is undefined.
    """

    starting_balance: float
    ending_balance: float
    total_return: float
    annualized_return: float
    sharpe_ratio: float
    max_drawdown: float
    win_rate: float
    profit_factor: float
    calmar_ratio: float | None
    total_trades: int
    winning_trades: int
    losing_trades: int
    gross_profit: float
    gross_loss: float
    average_win: float
    average_loss: float
    largest_win: float
    largest_loss: float
    total_fees: float
    period_days: float

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for reporting."""
        return asdict(self)


@dataclass(frozen=True)
class BenchmarkThresholds:
    """Minimum (or for drawdown, maximum) values for a performance tier."""

    total_return: float
    sharpe_ratio: float
    max_drawdown: float
    win_rate: float
    profit_factor: float
    calmar_ratio: float


BENCHMARKS: dict[str, BenchmarkThresholds] = {
    "excellent": BenchmarkThresholds(0.20, 2.0, 0.05, 0.60, 2.0, 4.0),
    "good": BenchmarkThresholds(0.10, 1.5, 0.10, 0.50, 1.5, 2.0),
    "average": BenchmarkThresholds(0.05, 1.0, 0.15, 0.40, 1.2, 1.0),
    "poor": BenchmarkThresholds(0.0, 0.5, 0.25, 0.30, 1.0, 0.5),
}


def _annualize(total_return: float, days: float) -> float:
    if days < 1:
        return total_return
    growth = 1.0 + total_return
    if growth <= 0:
        return -1.0
    try:
        return growth ** (DAYS_PER_YEAR / days) - 1.0
    except OverflowError:
        return math.inf


class PerformanceAnalyzer:
    """
    Computes performance reports from trade ledgers.

    ``analyze`` is a pure function of its arguments: the same ledger always
    yields the same report.

    Example:
        analyzer = PerformanceAnalyzer()
        report = analyzer.analyze(run.ledger, starting_balance=10_000)
        print(analyzer.rate(report))
    """

    def __init__(self, risk_free_rate: float = 0.0):
        """
        Initialize analyzer.

        Args:
            risk_free_rate: Annual risk-free rate used by the Sharpe ratio
        """
        self.risk_free_rate = risk_free_rate

    def analyze(
        self,
        ledger: Sequence["Trade"],
        starting_balance: float,
        risk_free_rate: float | None = None,
    ) -> PerformanceReport:
        """
        Build a report from a ledger.

        Equity moves by each closing trade's realized P&L (fees included).
        Per-trade returns for the Sharpe ratio are realized P&L over the cost
        basis of the closed quantity, annualized by the number of closed
        trades per year over the ledger's time span.

        Args:
            ledger: Trades in execution order
            starting_balance: Balance before the first trade
            risk_free_rate: Annual risk-free rate (defaults to the analyzer's)

        Returns:
            PerformanceReport
        """
        rf = self.risk_free_rate if risk_free_rate is None else risk_free_rate
        closed = [t for t in ledger if t.realized_pnl is not None]
        pnls = [t.realized_pnl for t in closed]

        equity = starting_balance
        peak = starting_balance
        max_drawdown = 0.0
        for pnl in pnls:
            equity += pnl
            peak = max(peak, equity)
            if peak > 0:
                max_drawdown = max(max_drawdown, (peak - equity) / peak)

        ending_balance = starting_balance + math.fsum(pnls)
        total_return = (ending_balance - starting_balance) / starting_balance

        if len(ledger) > 1:
            span = ledger[-1].timestamp - ledger[0].timestamp
            period_days = span.total_seconds() / 86400
        else:
            period_days = 0.0
        annualized_return = _annualize(total_return, period_days)

        wins = [p for p in pnls if p > 0]
        losses = [p for p in pnls if p < 0]
        gross_profit = math.fsum(wins)
        gross_loss = -math.fsum(losses)

        if gross_loss > 0:
            profit_factor = gross_profit / gross_loss
        else:
            profit_factor = math.inf if gross_profit > 0 else 0.0

        if max_drawdown > 0:
            calmar_ratio: float | None = annualized_return / max_drawdown
        else:
            calmar_ratio = math.inf if annualized_return > 0 else None

        returns = [
            t.realized_pnl / (t.entry_price * t.quantity)
            for t in closed
            if t.entry_price and t.quantity
        ]
        sharpe_ratio = self._sharpe(returns, period_days, rf)

        return PerformanceReport(
            starting_balance=starting_balance,
            ending_balance=ending_balance,
            total_return=total_return,
            annualized_return=annualized_return,
            sharpe_ratio=sharpe_ratio,
            max_drawdown=max_drawdown,
            win_rate=len(wins) / len(closed) if closed else 0.0,
            profit_factor=profit_factor,
            calmar_ratio=calmar_ratio,
            total_trades=len(closed),
            winning_trades=len(wins),
            losing_trades=len(losses),
            gross_profit=gross_profit,
            gross_loss=gross_loss,
            average_win=gross_profit / len(wins) if wins else 0.0,
            average_loss=-gross_loss / len(losses) if losses else 0.0,
            largest_win=max(wins, default=0.0),
            largest_loss=min(losses, default=0.0),
            total_fees=math.fsum(t.fees for t in ledger),
            period_days=period_days,
        )

    def _sharpe(self, returns: list[float], period_days: float, risk_free_rate: float) -> float:
        """Annualized Sharpe ratio of per-trade returns; 0 when undefined."""
        if len(returns) < 2:
            return 0.0
        stdev = statistics.stdev(returns)
        if stdev == 0:
            return 0.0

        trades_per_year = len(returns) * DAYS_PER_YEAR / max(period_days, 1.0)
        excess = statistics.fmean(returns) - risk_free_rate / trades_per_year
        return excess / stdev * math.sqrt(trades_per_year)

    def compare(self, report: PerformanceReport, tier: str) -> dict[str, bool]:
        """
        Check each metric against a benchmark tier.

        Args:
            report: Report to check
            tier: One of excellent, good, average, poor

        Returns:
            Mapping of metric name to whether it meets the tier
        """
        if tier not in BENCHMARKS:
            raise ValueError(f"Unknown benchmark tier '{tier}'. Available: {', '.join(BENCHMARKS)}")
        thresholds = BENCHMARKS[tier]
        calmar = report.calmar_ratio if report.calmar_ratio is not None else 0.0
        return {
            "total_return": report.total_return >= thresholds.total_return,
            "sharpe_ratio": report.sharpe_ratio >= thresholds.sharpe_ratio,
            "max_drawdown": report.max_drawdown <= thresholds.max_drawdown,
            "win_rate": report.win_rate >= thresholds.win_rate,
            "profit_factor": report.profit_factor >= thresholds.profit_factor,
            "calmar_ratio": calmar >= thresholds.calmar_ratio,
        }

    def rate(self, report: PerformanceReport) -> str:
        """Best benchmark tier whose every threshold the report meets, else 'below_poor'."""
        for tier in BENCHMARKS:
            if all(self.compare(report, tier).values()):
                return tier
        return "below_poor"

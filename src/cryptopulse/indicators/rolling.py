"""Incremental indicator calculators.

Every indicator is implemented once, as a calculator that consumes one input
value at a time. Batch computation replays the same calculator over a series,
so live (incremental) and backtest (batch) evaluation produce bit-identical
values for the same candles.
"""

import math
from abc import ABC, abstractmethod
from collections import deque


class ExactRollingSum:
    """
    Rolling window sum with no accumulated rounding error.

    Keeps the exact running total as a list of non-overlapping float partials
    (Shewchuk's algorithm) and rounds once on read. The result equals
    ``math.fsum(window)`` for the current window, so it depends only on the
    values in the window, never on the history that preceded it.
    """

    def __init__(self, period: int):
        if period <= 0:
            raise ValueError("period must be > 0")
        self.period = period
        self._window: deque[float] = deque()
        self._partials: list[float] = []

    def _add(self, x: float) -> None:
        partials = self._partials
        i = 0
        for y in partials:
            if abs(x) < abs(y):
                x, y = y, x
            hi = x + y
            lo = y - (hi - x)
            if lo:
                partials[i] = lo
                i += 1
            x = hi
        partials[i:] = [x]

    def push(self, value: float) -> None:
        """Add a value, evicting the oldest once the window is full."""
        self._window.append(value)
        self._add(value)
        if len(self._window) > self.period:
            self._add(-self._window.popleft())

    @property
    def full(self) -> bool:
        return len(self._window) == self.period

    @property
    def window(self) -> tuple[float, ...]:
        return tuple(self._window)

    @property
    def value(self) -> float:
        return math.fsum(self._partials)


class RollingIndicator(ABC):
    """
    Base class for incremental indicators.

    ``update`` consumes the next input value and returns the indicator's
    lines once warmed up, or None before that.
    """

    lines: tuple[str, ...] = ("value",)

    @abstractmethod
    def update(self, value: float) -> dict[str, float] | None:
        """Consume the next input and return the current output lines."""


class SMA(RollingIndicator):
    """Simple moving average: mean of the last ``period`` values."""

    def __init__(self, period: int):
        self.period = period
        self._sum = ExactRollingSum(period)

    def update(self, value: float) -> dict[str, float] | None:
        self._sum.push(value)
        if not self._sum.full:
            return None
        return {"value": self._sum.value / self.period}


class EMA(RollingIndicator):
    """Exponential moving average seeded with the SMA of the first ``period`` values."""

    def __init__(self, period: int):
        self.period = period
        self.alpha = 2.0 / (period + 1)
        self._seed = SMA(period)
        self._value: float | None = None

    def update(self, value: float) -> dict[str, float] | None:
        if self._value is None:
            seeded = self._seed.update(value)
            if seeded is None:
                return None
            self._value = seeded["value"]
        else:
            self._value = self._value + self.alpha * (value - self._value)
        return {"value": self._value}


class RSI(RollingIndicator):
    """
    Relative strength index over the last ``period`` price changes.

    Average gain and loss are simple means of one-sided deltas. A window
    with no losses saturates at 100. A window with no gains is left to the
    formula and yields 0.
    """

    def __init__(self, period: int):
        self.period = period
        self._gains = ExactRollingSum(period)
        self._losses = ExactRollingSum(period)
        self._previous: float | None = None

    def update(self, value: float) -> dict[str, float] | None:
        previous, self._previous = self._previous, value
        if previous is None:
            return None

        delta = value - previous
        self._gains.push(max(0.0, delta))
        self._losses.push(max(0.0, -delta))
        if not self._gains.full:
            return None

        avg_gain = self._gains.value / self.period
        avg_loss = self._losses.value / self.period
        if avg_loss == 0:
            return {"value": 100.0}
        rs = avg_gain / avg_loss
        return {"value": 100.0 - 100.0 / (1.0 + rs)}


class ROC(RollingIndicator):
    """Rate of change: (value - value[-period]) / value[-period]."""

    def __init__(self, period: int):
        self.period = period
        self._window: deque[float] = deque(maxlen=period + 1)

    def update(self, value: float) -> dict[str, float] | None:
        self._window.append(value)
        if len(self._window) <= self.period:
            return None
        base = self._window[0]
        if base == 0:
            return {"value": math.nan}
        return {"value": (value - base) / base}


class MACD(RollingIndicator):
    """
    Moving average convergence/divergence.

    ``macd`` is EMA(fast) - EMA(slow); ``signal`` is an EMA of the macd line;
    ``histogram`` is their difference. All EMAs are seeded by the SMA
    primitive.
    """

    lines = ("macd", "signal", "histogram")

    def __init__(self, fast: int, slow: int, signal: int):
        if fast >= slow:
            raise ValueError("MACD fast period must be shorter than slow period")
        self._fast = EMA(fast)
        self._slow = EMA(slow)
        self._signal = EMA(signal)

    def update(self, value: float) -> dict[str, float] | None:
        fast = self._fast.update(value)
        slow = self._slow.update(value)
        if fast is None or slow is None:
            return None

        macd = fast["value"] - slow["value"]
        signal = self._signal.update(macd)
        if signal is None:
            return None
        return {
            "macd": macd,
            "signal": signal["value"],
            "histogram": macd - signal["value"],
        }


class BollingerBands(RollingIndicator):
    """
    SMA middle band with a population standard deviation envelope.

    The deviation is recomputed over the window on every update.
    """

    lines = ("upper", "middle", "lower")

    def __init__(self, period: int, std_dev: float):
        self.period = period
        self.std_dev = std_dev
        self._sum = ExactRollingSum(period)

    def update(self, value: float) -> dict[str, float] | None:
        self._sum.push(value)
        if not self._sum.full:
            return None

        middle = self._sum.value / self.period
        variance = math.fsum((x - middle) ** 2 for x in self._sum.window) / self.period
        band = self.std_dev * math.sqrt(variance)
        return {"upper": middle + band, "middle": middle, "lower": middle - band}

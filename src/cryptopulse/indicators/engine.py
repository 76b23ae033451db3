"""Indicator registry, batch computation and per-stream incremental engine."""

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

from cryptopulse.clients.models import Candle

from .rolling import EMA, MACD, ROC, RSI, SMA, BollingerBands, RollingIndicator


class InsufficientDataError(Exception):
    """Raised when a series is shorter than an indicator's lookback."""

    def __init__(self, name: str, required: int, available: int):
        super().__init__(
            f"{name} needs at least {required} data points, got {available}"
        )
        self.name = name
        self.required = required
        self.available = available


@dataclass(frozen=True)
class IndicatorDefinition:
    """How to build one indicator and how much history it needs."""

    name: str
    defaults: dict[str, Any]
    factory: Callable[..., RollingIndicator]
    lookback: Callable[..., int]
    source: str = "close"
    lines: tuple[str, ...] = ("value",)


INDICATORS: dict[str, IndicatorDefinition] = {
    "sma": IndicatorDefinition(
        name="sma",
        defaults={"period": 20},
        factory=SMA,
        lookback=lambda period: period,
    ),
    "ema": IndicatorDefinition(
        name="ema",
        defaults={"period": 20},
        factory=EMA,
        lookback=lambda period: period,
    ),
    "rsi": IndicatorDefinition(
        name="rsi",
        defaults={"period": 14},
        factory=RSI,
        lookback=lambda period: period + 1,
    ),
    "roc": IndicatorDefinition(
        name="roc",
        defaults={"period": 10},
        factory=ROC,
        lookback=lambda period: period + 1,
    ),
    "macd": IndicatorDefinition(
        name="macd",
        defaults={"fast": 12, "slow": 26, "signal": 9},
        factory=MACD,
        lookback=lambda fast, slow, signal: slow + signal - 1,
        lines=MACD.lines,
    ),
    "bollinger": IndicatorDefinition(
        name="bollinger",
        defaults={"period": 20, "std_dev": 2.0},
        factory=BollingerBands,
        lookback=lambda period, std_dev: period,
        lines=BollingerBands.lines,
    ),
    "volume_sma": IndicatorDefinition(
        name="volume_sma",
        defaults={"period": 20},
        factory=SMA,
        lookback=lambda period: period,
        source="volume",
    ),
}


def _definition(name: str) -> IndicatorDefinition:
    try:
        return INDICATORS[name]
    except KeyError:
        available = ", ".join(INDICATORS.keys())
        raise ValueError(f"Unknown indicator '{name}'. Available: {available}")


def _resolve_params(definition: IndicatorDefinition, params: Mapping[str, Any] | None) -> dict[str, Any]:
    params = dict(params or {})
    unknown = set(params) - set(definition.defaults)
    if unknown:
        raise ValueError(f"Unknown parameters for {definition.name}: {sorted(unknown)}")

    resolved = {**definition.defaults, **params}
    for key, value in resolved.items():
        if key == "std_dev":
            if value <= 0:
                raise ValueError(f"{definition.name} std_dev must be > 0")
        elif not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise ValueError(f"{definition.name} {key} must be a positive integer")
    return resolved


@dataclass(frozen=True)
class IndicatorSpec:
    """
    A named indicator with concrete parameters.

    Specs are hashable and produce a stable key such as ``sma_20`` or
    ``macd_12_26_9``.
    """

    name: str
    params: tuple[tuple[str, Any], ...] = ()

    @classmethod
    def of(cls, name: str, **params: Any) -> "IndicatorSpec":
        definition = _definition(name)
        resolved = _resolve_params(definition, params)
        return cls(name=name, params=tuple((k, resolved[k]) for k in definition.defaults))

    @property
    def key(self) -> str:
        values = "_".join(str(v) for _, v in self.params)
        return f"{self.name}_{values}" if values else self.name

    @property
    def kwargs(self) -> dict[str, Any]:
        return dict(self.params)

    @property
    def lookback(self) -> int:
        return _definition(self.name).lookback(**self.kwargs)

    @property
    def source(self) -> str:
        return _definition(self.name).source

    @property
    def lines(self) -> tuple[str, ...]:
        return _definition(self.name).lines

    def build(self) -> RollingIndicator:
        return _definition(self.name).factory(**self.kwargs)


def required_lookback(name: str, params: Mapping[str, Any] | None = None) -> int:
    """Minimum number of inputs before ``name`` produces its first value."""
    definition = _definition(name)
    return definition.lookback(**_resolve_params(definition, params))


def _input_value(item: Candle | float, source: str) -> float:
    if isinstance(item, Candle):
        return float(getattr(item, source))
    return float(item)


@dataclass
class IndicatorSeries:
    """
    Output of an indicator over an ordered input series.

    ``offset`` is the index of the input that produced the first output, so
    ``lines[line][i]`` belongs to input ``offset + i``. The series can be
    extended one input at a time.
    """

    name: str
    params: dict[str, Any]
    offset: int
    lines: dict[str, list[float]]
    _calculator: RollingIndicator = field(repr=False, compare=False)
    _count: int = field(default=0, repr=False, compare=False)

    @property
    def values(self) -> list[float]:
        """Values of a single-line indicator."""
        if "value" not in self.lines:
            raise AttributeError(f"{self.name} has lines {list(self.lines)}, use .lines")
        return self.lines["value"]

    def __len__(self) -> int:
        return len(next(iter(self.lines.values())))

    def latest(self, line: str = "value") -> float:
        values = self.lines[line]
        return values[-1] if values else math.nan

    def extend(self, item: Candle | float) -> None:
        """Append the output for one more input."""
        source = _definition(self.name).source
        output = self._calculator.update(_input_value(item, source))
        self._count += 1
        if output is not None:
            for line, value in output.items():
                self.lines[line].append(value)


def compute(
    name: str,
    series: Sequence[Candle | float],
    params: Mapping[str, Any] | None = None,
) -> IndicatorSeries:
    """
    Compute an indicator over an ordered series.

    Args:
        name: Indicator name (sma, ema, rsi, roc, macd, bollinger, volume_sma)
        series: Candles (oldest first) or raw values
        params: Indicator parameters; defaults are filled in

    Returns:
        IndicatorSeries with ``len(series) - lookback + 1`` values per line

    Raises:
        InsufficientDataError: If the series is shorter than the lookback
        ValueError: For unknown indicators or invalid parameters
    """
    definition = _definition(name)
    resolved = _resolve_params(definition, params)
    lookback = definition.lookback(**resolved)

    if len(series) < lookback:
        raise InsufficientDataError(name, lookback, len(series))

    result = IndicatorSeries(
        name=name,
        params=resolved,
        offset=lookback - 1,
        lines={line: [] for line in definition.lines},
        _calculator=definition.factory(**resolved),
    )
    for item in series:
        result.extend(item)
    return result


def sma(values: Sequence[float], period: int) -> list[float]:
    return compute("sma", values, {"period": period}).values


def ema(values: Sequence[float], period: int) -> list[float]:
    return compute("ema", values, {"period": period}).values


def rsi(values: Sequence[float], period: int = 14) -> list[float]:
    return compute("rsi", values, {"period": period}).values


def roc(values: Sequence[float], period: int) -> list[float]:
    return compute("roc", values, {"period": period}).values


def macd(
    values: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9
) -> dict[str, list[float]]:
    return compute("macd", values, {"fast": fast, "slow": slow, "signal": signal}).lines


def bollinger_bands(
    values: Sequence[float], period: int = 20, std_dev: float = 2.0
) -> dict[str, list[float]]:
    return compute("bollinger", values, {"period": period, "std_dev": std_dev}).lines


class IndicatorSet:
    """
    Snapshot of indicator values after one candle.

    Indicators that are not warmed up read as NaN. The previous candle's
    values are kept alongside for crossover and slope checks.
    """

    def __init__(
        self,
        current: Mapping[str, float],
        previous: Mapping[str, float] | None = None,
    ):
        self._current = dict(current)
        self._previous = dict(previous or {})

    @staticmethod
    def _key(spec: IndicatorSpec | str, line: str) -> str:
        key = spec.key if isinstance(spec, IndicatorSpec) else spec
        return key if line == "value" else f"{key}.{line}"

    def get(self, spec: IndicatorSpec | str, line: str = "value") -> float:
        return self._current.get(self._key(spec, line), math.nan)

    def previous(self, spec: IndicatorSpec | str, line: str = "value") -> float:
        return self._previous.get(self._key(spec, line), math.nan)

    def __getitem__(self, key: str) -> float:
        return self._current.get(key, math.nan)

    def as_dict(self) -> dict[str, float]:
        return dict(self._current)

    def is_ready(self, *specs: IndicatorSpec) -> bool:
        """True when every line of the given indicators has a value."""
        for spec in specs:
            for line in spec.lines:
                if math.isnan(self.get(spec, line)):
                    return False
        return True


class IndicatorEngine:
    """
    Incremental indicators for a single (exchange, symbol) stream.

    Feed candles in timestamp order with ``update``; each call advances every
    indicator by one step and returns a fresh IndicatorSet.

    Example:
        engine = IndicatorEngine([IndicatorSpec.of("sma", period=20)])
        for candle in candles:
            indicators = engine.update(candle)
            indicators.get(IndicatorSpec.of("sma", period=20))
    """

    def __init__(self, specs: Iterable[IndicatorSpec]):
        self.specs: list[IndicatorSpec] = []
        self._calculators: dict[IndicatorSpec, RollingIndicator] = {}
        for spec in specs:
            if spec not in self._calculators:
                self.specs.append(spec)
                self._calculators[spec] = spec.build()
        self._current: dict[str, float] = {}
        self.candles_seen = 0

    @property
    def max_lookback(self) -> int:
        return max((spec.lookback for spec in self.specs), default=0)

    def update(self, candle: Candle) -> IndicatorSet:
        previous = self._current
        current: dict[str, float] = {}

        for spec, calculator in self._calculators.items():
            output = calculator.update(_input_value(candle, spec.source))
            for line in spec.lines:
                value = output[line] if output is not None else math.nan
                current[IndicatorSet._key(spec, line)] = value

        self._current = current
        self.candles_seen += 1
        return IndicatorSet(current, previous)

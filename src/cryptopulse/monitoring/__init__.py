"""Monitoring, persistence and performance analysis."""

from .database import TradingDatabase
from .logger import DeadLetterEntry, DeadLetterLog, configure_logging
from .performance import BENCHMARKS, BenchmarkThresholds, PerformanceAnalyzer, PerformanceReport

__all__ = [
    "TradingDatabase",
    "DeadLetterLog",
    "DeadLetterEntry",
    "configure_logging",
    "PerformanceAnalyzer",
    "PerformanceReport",
    "BenchmarkThresholds",
    "BENCHMARKS",
]

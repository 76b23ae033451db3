"""Logging setup and the dead-letter audit trail for undeliverable signals."""

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from cryptopulse.strategies.base import Signal

logger = structlog.get_logger()


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """
    Configure structlog for the CLI.

    Args:
        level: Minimum log level name
        json_output: Render JSON lines instead of the console format
    """
    renderer: Any = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        cache_logger_on_first_use=True,
    )


@dataclass
class DeadLetterEntry:
    """A signal that could not be delivered to a consumer."""

    timestamp: str
    signal_id: str
    consumer: str
    attempts: int
    error: str
    signal: dict[str, Any]


class DeadLetterLog:
    """
    Appends undeliverable signals to a JSON Lines file per day.

    Example:
        dead_letters = DeadLetterLog(Path("logs"))
        dead_letters.record(signal, "broadcaster", attempts=4, error="queue closed")
    """

    def __init__(self, log_dir: Path | None = None):
        """
        Initialize dead-letter log.

        Args:
            log_dir: Directory for log files (created if needed)
        """
        self.log_dir = log_dir or Path("logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self._current_date: str = ""
        self._log_file: Path | None = None

    def _get_log_file(self) -> Path:
        """Get current day's log file."""
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")

        if today != self._current_date:
            self._current_date = today
            self._log_file = self.log_dir / f"dead_letters_{today}.jsonl"

        return self._log_file  # type: ignore

    def record(self, signal: Signal, consumer: str, attempts: int, error: str) -> DeadLetterEntry:
        """
        Record a signal whose delivery failed permanently.

        Args:
            signal: The undelivered signal
            consumer: Name of the consumer that failed
            attempts: Delivery attempts made
            error: Last error message

        Returns:
            The written entry
        """
        entry = DeadLetterEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            signal_id=signal.signal_id,
            consumer=consumer,
            attempts=attempts,
            error=error,
            signal=signal.to_dict(),
        )

        logger.error(
            "Signal dead-lettered",
            signal_id=entry.signal_id,
            consumer=consumer,
            attempts=attempts,
            error=error,
        )

        self._write_entry(entry)
        return entry

    def _write_entry(self, entry: DeadLetterEntry) -> None:
        """Write entry to log file."""
        log_file = self._get_log_file()

        with open(log_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(asdict(entry)) + "\n")

    def get_entries_for_date(self, date: str) -> list[DeadLetterEntry]:
        """
        Get all dead letters for a specific date.

        Args:
            date: Date string in YYYY-MM-DD format

        Returns:
            List of entries
        """
        log_file = self.log_dir / f"dead_letters_{date}.jsonl"

        if not log_file.exists():
            return []

        entries = []
        with open(log_file, "r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    entries.append(DeadLetterEntry(**json.loads(line)))

        return entries

"""SQLite storage for candles, strategy revisions and backtest runs."""

import json
import math
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Generator, Iterable

from cryptopulse.clients.models import Candle
from cryptopulse.strategies.base import ConfigurationError, StrategyConfig

if TYPE_CHECKING:
    from cryptopulse.engine.backtester import BacktestRun
    from cryptopulse.engine.session import Trade


def get_default_db_path() -> Path:
    """Get default database path."""
    return Path("data/cryptopulse.db")


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return _iso(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dumps(value: Any) -> str:
    # JSON has no infinity
    def clean(v: Any) -> Any:
        if isinstance(v, float) and math.isinf(v):
            return "inf" if v > 0 else "-inf"
        if isinstance(v, dict):
            return {k: clean(x) for k, x in v.items()}
        return v

    return json.dumps(clean(value), sort_keys=True, default=_json_default)


class TradingDatabase:
    """
    SQLite database for market data and backtest history.

    Strategy revisions and backtest runs are insert-only: a stored revision
    is never rewritten, and a run is written together with its whole ledger
    in one transaction.

    Example:
        db = TradingDatabase()
        db.initialize()

        # Store candles from the collector
        db.insert_candles(candles, interval="1m")

        # Load them for a backtest
        candles = db.get_candles("binance", "BTCUSDT", "1m", start, end)
    """

    SCHEMA = """
    -- Candles: historical market data, one row per bucket
    CREATE TABLE IF NOT EXISTS candles (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        exchange TEXT NOT NULL,
        symbol TEXT NOT NULL,
        interval TEXT NOT NULL,
        timestamp TEXT NOT NULL,    -- bucket open, ISO 8601 UTC
        open REAL NOT NULL,
        high REAL NOT NULL,
        low REAL NOT NULL,
        close REAL NOT NULL,
        volume REAL NOT NULL,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (exchange, symbol, interval, timestamp)
    );

    -- Strategy configs: immutable revisions
    CREATE TABLE IF NOT EXISTS strategy_configs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        strategy_id TEXT NOT NULL,
        revision INTEGER NOT NULL,
        strategy_type TEXT NOT NULL,
        name TEXT,
        user_id TEXT,
        fingerprint TEXT NOT NULL,
        payload TEXT NOT NULL,      -- JSON
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (strategy_id, revision)
    );

    -- Backtest runs: completed runs only
    CREATE TABLE IF NOT EXISTS backtest_runs (
        run_id TEXT PRIMARY KEY,
        strategy_id TEXT NOT NULL,
        revision INTEGER NOT NULL,
        strategy_type TEXT NOT NULL,
        data_start TEXT,
        data_end TEXT,
        candles INTEGER NOT NULL,
        starting_balance REAL NOT NULL,
        execution_model TEXT NOT NULL,  -- JSON
        signals_generated INTEGER NOT NULL,
        rejections TEXT NOT NULL,       -- JSON
        total_return REAL NOT NULL,
        sharpe_ratio REAL NOT NULL,
        max_drawdown REAL NOT NULL,
        total_trades INTEGER NOT NULL,
        report TEXT NOT NULL,           -- JSON
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );

    -- Backtest trades: the ledger of each run, in execution order
    CREATE TABLE IF NOT EXISTS backtest_trades (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL REFERENCES backtest_runs(run_id),
        seq INTEGER NOT NULL,
        side TEXT NOT NULL,         -- buy, sell
        exchange TEXT NOT NULL,
        symbol TEXT NOT NULL,
        strategy_id TEXT NOT NULL,
        quantity REAL NOT NULL,
        price REAL NOT NULL,
        quoted_price REAL NOT NULL,
        fees REAL NOT NULL,
        slippage REAL NOT NULL,
        realized_pnl REAL,
        entry_price REAL,
        reason TEXT,
        timestamp TEXT NOT NULL,
        UNIQUE (run_id, seq)
    );

    -- Indexes for common queries
    CREATE INDEX IF NOT EXISTS idx_candles_stream ON candles(exchange, symbol, interval, timestamp);
    CREATE INDEX IF NOT EXISTS idx_runs_strategy ON backtest_runs(strategy_id, revision);
    CREATE INDEX IF NOT EXISTS idx_trades_run ON backtest_trades(run_id);
    """

    def __init__(self, db_path: Path | str | None = None):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path) if db_path else get_default_db_path()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get database connection as context manager."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create database tables if they don't exist."""
        with self._get_connection() as conn:
            conn.executescript(self.SCHEMA)

    # -- Candles --

    def insert_candles(self, candles: Iterable[Candle], interval: str) -> int:
        """
        Store candles, ignoring buckets that are already stored.

        Args:
            candles: Candles to store
            interval: Candle interval (e.g. "1m")

        Returns:
            Number of new rows
        """
        rows = [
            (c.exchange, c.symbol, interval, _iso(c.timestamp), c.open, c.high, c.low, c.close, c.volume)
            for c in candles
        ]
        if not rows:
            return 0

        with self._get_connection() as conn:
            before = conn.total_changes
            conn.executemany(
                """
                INSERT OR IGNORE INTO candles (
                    exchange, symbol, interval, timestamp, open, high, low, close, volume
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            return conn.total_changes - before

    def get_candles(
        self,
        exchange: str,
        symbol: str,
        interval: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Candle]:
        """
        Load candles for one stream, oldest first.

        Args:
            exchange: Exchange name
            symbol: Market symbol
            interval: Candle interval
            start: First bucket (inclusive)
            end: Last bucket (inclusive)

        Returns:
            List of candles
        """
        query = "SELECT * FROM candles WHERE exchange = ? AND symbol = ? AND interval = ?"
        params: list[Any] = [exchange, symbol, interval]
        if start is not None:
            query += " AND timestamp >= ?"
            params.append(_iso(start))
        if end is not None:
            query += " AND timestamp <= ?"
            params.append(_iso(end))
        query += " ORDER BY timestamp"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            Candle(
                exchange=row["exchange"],
                symbol=row["symbol"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                open=row["open"],
                high=row["high"],
                low=row["low"],
                close=row["close"],
                volume=row["volume"],
            )
            for row in rows
        ]

    def get_latest_candle_time(self, exchange: str, symbol: str, interval: str) -> datetime | None:
        """Timestamp of the newest stored candle for a stream."""
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT MAX(timestamp) AS latest FROM candles
                WHERE exchange = ? AND symbol = ? AND interval = ?
                """,
                (exchange, symbol, interval),
            ).fetchone()
        return datetime.fromisoformat(row["latest"]) if row and row["latest"] else None

    # -- Strategy configs --

    def save_strategy_config(self, config: StrategyConfig) -> bool:
        """
        Store a strategy revision.

        Saving an identical revision again is a no-op.

        Returns:
            True if a new row was written

        Raises:
            ConfigurationError: If the revision exists with different contents
        """
        fingerprint = config.fingerprint()
        with self._get_connection() as conn:
            existing = conn.execute(
                "SELECT fingerprint FROM strategy_configs WHERE strategy_id = ? AND revision = ?",
                (config.id, config.revision),
            ).fetchone()
            if existing is not None:
                if existing["fingerprint"] != fingerprint:
                    raise ConfigurationError(
                        f"Strategy {config.version} already stored with different contents"
                    )
                return False

            conn.execute(
                """
                INSERT INTO strategy_configs (
                    strategy_id, revision, strategy_type, name, user_id, fingerprint, payload
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    config.id,
                    config.revision,
                    config.type.value,
                    config.name,
                    config.user_id,
                    fingerprint,
                    json.dumps(config.model_dump(mode="json", by_alias=True), sort_keys=True),
                ),
            )
        return True

    def get_strategy_config(self, strategy_id: str, revision: int | None = None) -> StrategyConfig | None:
        """
        Load a stored revision (latest if ``revision`` is None).
        """
        with self._get_connection() as conn:
            if revision is None:
                row = conn.execute(
                    """
                    SELECT payload FROM strategy_configs WHERE strategy_id = ?
                    ORDER BY revision DESC LIMIT 1
                    """,
                    (strategy_id,),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT payload FROM strategy_configs WHERE strategy_id = ? AND revision = ?",
                    (strategy_id, revision),
                ).fetchone()

        if row is None:
            return None
        return StrategyConfig.model_validate(json.loads(row["payload"]))

    def get_strategy_revisions(self, strategy_id: str) -> list[int]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT revision FROM strategy_configs WHERE strategy_id = ? ORDER BY revision",
                (strategy_id,),
            ).fetchall()
        return [row["revision"] for row in rows]

    # -- Backtest runs --

    def save_backtest_run(self, run: "BacktestRun") -> bool:
        """
        Store a completed run and its ledger in one transaction.

        Runs are deterministic, so a run id that is already stored is skipped.

        Returns:
            True if the run was written
        """
        report = run.final_report
        with self._get_connection() as conn:
            exists = conn.execute(
                "SELECT 1 FROM backtest_runs WHERE run_id = ?", (run.run_id,)
            ).fetchone()
            if exists is not None:
                return False

            conn.execute(
                """
                INSERT INTO backtest_runs (
                    run_id, strategy_id, revision, strategy_type, data_start, data_end,
                    candles, starting_balance, execution_model, signals_generated,
                    rejections, total_return, sharpe_ratio, max_drawdown, total_trades, report
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.run_id,
                    run.strategy_config.id,
                    run.strategy_config.revision,
                    run.strategy_config.type.value,
                    _iso(run.data_range.start) if run.data_range.start else None,
                    _iso(run.data_range.end) if run.data_range.end else None,
                    run.data_range.candles,
                    run.starting_balance,
                    _dumps(run.execution_model.to_dict()),
                    run.signals_generated,
                    _dumps(dict(run.rejections)),
                    report.total_return,
                    report.sharpe_ratio,
                    report.max_drawdown,
                    report.total_trades,
                    _dumps(report.to_dict()),
                ),
            )
            conn.executemany(
                """
                INSERT INTO backtest_trades (
                    run_id, seq, side, exchange, symbol, strategy_id, quantity, price,
                    quoted_price, fees, slippage, realized_pnl, entry_price, reason, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        run.run_id,
                        seq,
                        trade.side.value,
                        trade.exchange,
                        trade.symbol,
                        trade.strategy_id,
                        trade.quantity,
                        trade.price,
                        trade.quoted_price,
                        trade.fees,
                        trade.slippage,
                        trade.realized_pnl,
                        trade.entry_price,
                        trade.reason,
                        _iso(trade.timestamp),
                    )
                    for seq, trade in enumerate(run.ledger)
                ],
            )
        return True

    def get_backtest_run(self, run_id: str) -> dict[str, Any] | None:
        """Load a stored run summary with its report."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM backtest_runs WHERE run_id = ?", (run_id,)).fetchone()
        if row is None:
            return None

        summary = dict(row)
        for key in ("execution_model", "rejections", "report"):
            summary[key] = json.loads(summary[key])
        return summary

    def get_backtest_trades(self, run_id: str) -> list["Trade"]:
        """Load the ledger of a stored run in execution order."""
        from cryptopulse.engine.session import Trade

        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT side, exchange, symbol, strategy_id, quantity, price, quoted_price,
                       fees, slippage, realized_pnl, entry_price, reason, timestamp
                FROM backtest_trades WHERE run_id = ? ORDER BY seq
                """,
                (run_id,),
            ).fetchall()
        return [Trade.from_dict(dict(row)) for row in rows]

    def get_strategy_performance(self, strategy_id: str) -> dict[str, Any]:
        """
        Aggregate stored backtest results for a strategy across revisions.

        Args:
            strategy_id: Strategy id

        Returns:
            Dict with run count, average and best return, best Sharpe revision
        """
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS runs,
                    AVG(total_return) AS avg_return,
                    MAX(total_return) AS best_return,
                    MIN(max_drawdown) AS best_drawdown,
                    SUM(total_trades) AS total_trades
                FROM backtest_runs
                WHERE strategy_id = ?
                """,
                (strategy_id,),
            ).fetchone()
            best = conn.execute(
                """
                SELECT revision, sharpe_ratio FROM backtest_runs
                WHERE strategy_id = ?
                ORDER BY sharpe_ratio DESC, revision ASC LIMIT 1
                """,
                (strategy_id,),
            ).fetchone()

        return {
            "strategy_id": strategy_id,
            "runs": row["runs"] or 0,
            "avg_return": row["avg_return"] or 0.0,
            "best_return": row["best_return"] or 0.0,
            "best_drawdown": row["best_drawdown"] or 0.0,
            "total_trades": row["total_trades"] or 0,
            "best_revision": best["revision"] if best else None,
            "best_sharpe": best["sharpe_ratio"] if best else None,
        }

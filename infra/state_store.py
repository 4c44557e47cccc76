"""
crypto-sentinel Infrastructure: State Store

Local transactional store (SQLite) backing the ledger, sentinel run history
and singleton records (daily risk state, current CEO directive).

Singleton values are stored as JSON and decoded on read, so structured
values and plain strings round-trip without extra encoding layers.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, Optional
import logging

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL,
    side TEXT NOT NULL,
    order_type TEXT NOT NULL DEFAULT 'market',
    amount REAL NOT NULL,
    price REAL NOT NULL,
    cost REAL NOT NULL,
    order_id TEXT,
    source TEXT NOT NULL DEFAULT 'user',
    reasoning TEXT,
    sentinel_run_id INTEGER,
    position_id INTEGER,
    sandbox INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS positions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL,
    side TEXT NOT NULL DEFAULT 'long',
    entry_price REAL NOT NULL,
    amount REAL NOT NULL,
    cost_basis REAL NOT NULL,
    stop_loss REAL,
    take_profit REAL,
    trailing_stop_pct REAL,
    high_water_mark REAL,
    status TEXT NOT NULL DEFAULT 'open',
    entry_trade_id INTEGER,
    exit_trade_id INTEGER,
    realized_pnl REAL,
    partial_pnl REAL NOT NULL DEFAULT 0,
    opened_at TEXT NOT NULL,
    closed_at TEXT
);

CREATE TABLE IF NOT EXISTS sentinel_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at TEXT NOT NULL,
    indicators TEXT,
    portfolio TEXT,
    sentiment TEXT,
    signals TEXT,
    actions TEXT,
    summary TEXT,
    duration_ms INTEGER,
    error TEXT,
    model_used TEXT
);

CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_trades_created ON trades(created_at);
CREATE INDEX IF NOT EXISTS idx_trades_symbol ON trades(symbol);
CREATE INDEX IF NOT EXISTS idx_positions_status ON positions(status);
CREATE INDEX IF NOT EXISTS idx_positions_closed ON positions(closed_at);
CREATE UNIQUE INDEX IF NOT EXISTS idx_positions_one_open
    ON positions(symbol) WHERE status = 'open';
CREATE INDEX IF NOT EXISTS idx_sentinel_runs_created ON sentinel_runs(created_at);
"""


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 (sortable as text)."""
    return datetime.now(timezone.utc).isoformat()


def to_utc_iso(dt: datetime) -> str:
    """Normalize an aware or naive-local datetime to UTC ISO-8601."""
    if dt.tzinfo is None:
        dt = dt.astimezone()
    return dt.astimezone(timezone.utc).isoformat()


def local_midnight(now: Optional[datetime] = None) -> datetime:
    """Start of the current local day as an aware datetime."""
    now = (now or datetime.now()).astimezone()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class StateStore:
    """
    Persistent storage using a local SQLite file.

    Features:
    - Schema creation on first use (idempotent)
    - Connection per operation, committed or rolled back as a unit
    - Singleton upsert for kv records
    - Retention cleanup for append-only tables
    """

    def __init__(self, db_path: str = "data/sentinel.db"):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._schema_lock = threading.Lock()
        self._init_db()
        logger.info(f"Initialized StateStore at {self.db_path}")

    def _init_db(self) -> None:
        with self._schema_lock:
            conn = sqlite3.connect(self.db_path, timeout=10)
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(SCHEMA)
                conn.commit()
            finally:
                conn.close()

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """
        Yield a connection inside a transaction.

        Commits on success, rolls back and re-raises on error.
        """
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ----- Singleton records -----

    def get_value(self, key: str, default: Any = None) -> Any:
        """Return decoded value for key, or default if absent or unreadable."""
        with self.connection() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except (TypeError, ValueError) as e:
            logger.warning(f"Corrupt kv value for {key}, ignoring: {e}")
            return default

    def set_value(self, key: str, value: Any) -> None:
        """Insert or replace a singleton value."""
        payload = json.dumps(value, default=str)
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, payload, utc_now_iso()),
            )

    def delete_value(self, key: str) -> None:
        with self.connection() as conn:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    # ----- Retention -----

    def cleanup_old_records(self, run_days: int = 90, trade_days: int = 365) -> dict:
        """
        Delete sentinel runs and trades older than the retention windows.

        Trades referenced by an open position are kept. Positions are never
        deleted.

        Returns:
            Counts of deleted rows per table
        """
        now = datetime.now(timezone.utc)
        run_cutoff = (now - timedelta(days=run_days)).isoformat()
        trade_cutoff = (now - timedelta(days=trade_days)).isoformat()

        with self.connection() as conn:
            runs = conn.execute(
                "DELETE FROM sentinel_runs WHERE created_at < ?", (run_cutoff,)
            ).rowcount
            trades = conn.execute(
                """
                DELETE FROM trades WHERE created_at < ?
                AND id NOT IN (
                    SELECT entry_trade_id FROM positions
                    WHERE status = 'open' AND entry_trade_id IS NOT NULL
                )
                """,
                (trade_cutoff,),
            ).rowcount

        if runs or trades:
            logger.info(f"Retention cleanup: removed {runs} sentinel runs, {trades} trades")
        return {"sentinel_runs": runs, "trades": trades}

"""
crypto-sentinel Analytics: Trade Log

Append-only record of every executed order, whatever produced it
(Sentinel, user, Guardian stop-loss or take-profit). Rows are never
updated after insertion; retention cleanup is the only delete path.

Daily stats combine today's trades (count, volume) with positions closed
today (realized P&L, winners/losers).
"""

import sqlite3
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, List, Optional
import logging

from infra.state_store import StateStore, local_midnight, to_utc_iso, utc_now_iso

logger = logging.getLogger(__name__)

TRADE_SOURCES = ("sentinel", "user", "stop_loss", "take_profit")


@dataclass
class TradeRecord:
    """One executed order."""
    symbol: str
    side: str  # buy/sell
    amount: float
    price: float
    cost: float
    order_type: str = "market"
    order_id: Optional[str] = None
    source: str = "user"
    reasoning: Optional[str] = None
    sentinel_run_id: Optional[int] = None
    position_id: Optional[int] = None
    sandbox: bool = True
    created_at: Optional[str] = None
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TradeRecord":
        data = dict(row)
        data["sandbox"] = bool(data.get("sandbox"))
        return cls(**data)

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class DailyTradeStats:
    trades_count: int = 0
    volume_usd: float = 0.0
    realized_pnl: float = 0.0
    winners: int = 0
    losers: int = 0


class TradeLog:
    """
    Append-only trade history on top of StateStore.
    """

    def __init__(self, store: StateStore):
        self.store = store

    def log_trade(self, trade: TradeRecord) -> int:
        """
        Insert a trade record.

        Returns:
            New trade id
        """
        if trade.source not in TRADE_SOURCES:
            raise ValueError(f"Unknown trade source: {trade.source}")

        created_at = trade.created_at or utc_now_iso()
        with self.store.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO trades (
                    symbol, side, order_type, amount, price, cost, order_id, source,
                    reasoning, sentinel_run_id, position_id, sandbox, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    trade.symbol, trade.side, trade.order_type, trade.amount, trade.price,
                    trade.cost, trade.order_id, trade.source, trade.reasoning,
                    trade.sentinel_run_id, trade.position_id, int(trade.sandbox), created_at,
                ),
            )
            trade_id = cursor.lastrowid

        logger.info(
            f"Logged trade #{trade_id}: {trade.side.upper()} {trade.amount:.8f} {trade.symbol} "
            f"@ ${trade.price:.2f} (source={trade.source}, sandbox={trade.sandbox})"
        )
        return trade_id

    def get_trade(self, trade_id: int) -> Optional[TradeRecord]:
        with self.store.connection() as conn:
            row = conn.execute("SELECT * FROM trades WHERE id = ?", (trade_id,)).fetchone()
        return TradeRecord.from_row(row) if row else None

    def get_recent_trades(self, limit: int = 20) -> List[TradeRecord]:
        with self.store.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM trades ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [TradeRecord.from_row(r) for r in rows]

    def get_trades_for_symbol(self, symbol: str, limit: int = 20) -> List[TradeRecord]:
        with self.store.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM trades WHERE symbol = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                (symbol, limit),
            ).fetchall()
        return [TradeRecord.from_row(r) for r in rows]

    def get_trades_since(self, since: datetime) -> List[TradeRecord]:
        with self.store.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM trades WHERE created_at >= ? ORDER BY created_at ASC, id ASC",
                (to_utc_iso(since),),
            ).fetchall()
        return [TradeRecord.from_row(r) for r in rows]

    def get_daily_trade_stats(self, now: Optional[datetime] = None) -> DailyTradeStats:
        """
        Aggregate today's activity (local day).

        Count and volume come from trades executed today; realized P&L and
        win/loss counts come from positions closed today.
        """
        since = to_utc_iso(local_midnight(now))
        with self.store.connection() as conn:
            trade_row = conn.execute(
                "SELECT COUNT(*) AS n, COALESCE(SUM(cost), 0) AS volume FROM trades WHERE created_at >= ?",
                (since,),
            ).fetchone()
            pnl_rows = conn.execute(
                "SELECT realized_pnl FROM positions WHERE status != 'open' AND closed_at >= ?",
                (since,),
            ).fetchall()

        pnls = [r["realized_pnl"] or 0.0 for r in pnl_rows]
        return DailyTradeStats(
            trades_count=int(trade_row["n"]),
            volume_usd=float(trade_row["volume"]),
            realized_pnl=sum(pnls),
            winners=sum(1 for p in pnls if p > 0),
            losers=sum(1 for p in pnls if p < 0),
        )

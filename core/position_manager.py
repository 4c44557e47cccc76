"""
Position Management: Ledger and Exit Logic for Stop-Loss and Take-Profit

Durable open/closed position records plus the pure exit evaluation used by
the Guardian. At most one open position exists per symbol; a position is
closed exactly once, after which its status and realized P&L never change.
"""
import logging
import sqlite3
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, List, Optional

from infra.state_store import StateStore, to_utc_iso, utc_now_iso
from core.exceptions import PositionConflictError
from tools.config_validator import TradingConfig

logger = logging.getLogger(__name__)

OPEN = "open"
TERMINAL_STATUSES = ("closed", "stopped_out", "took_profit")


@dataclass
class Position:
    """Directional exposure in one symbol"""
    id: int
    symbol: str
    side: str  # long/short (short reserved)
    entry_price: float
    amount: float
    cost_basis: float
    stop_loss: Optional[float]
    take_profit: Optional[float]
    trailing_stop_pct: Optional[float]
    high_water_mark: Optional[float]
    status: str
    entry_trade_id: Optional[int]
    exit_trade_id: Optional[int]
    realized_pnl: Optional[float]
    partial_pnl: float
    opened_at: str
    closed_at: Optional[str]

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Position":
        return cls(**dict(row))

    @property
    def is_open(self) -> bool:
        return self.status == OPEN

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class PositionSummary:
    """Open position joined with a live price"""
    position: Position
    current_price: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    pnl_pct: Optional[float] = None
    distance_to_sl_pct: Optional[float] = None
    distance_to_tp_pct: Optional[float] = None


@dataclass
class ExitCheck:
    """Result of evaluating one position against a price"""
    reason: Optional[str]  # "stop_loss", "take_profit" or None
    effective_stop: Optional[float]
    new_high_water_mark: Optional[float] = None  # set only when the mark rises


def position_pnl(side: str, entry_price: float, exit_price: float, amount: float) -> float:
    """Realized P&L for a given exit; long is (exit - entry) * amount."""
    if side == "short":
        return (entry_price - exit_price) * amount
    return (exit_price - entry_price) * amount


def evaluate_exit(position: Position, price: float) -> ExitCheck:
    """
    Decide whether a long position must be exited at price.

    Trailing stops ratchet the high-water mark upward first, then the
    effective stop is the higher of the fixed stop and the trailing level.
    Stop-loss takes priority over take-profit.
    """
    hwm = position.high_water_mark or position.entry_price
    new_hwm = None
    trailing_level = None

    if position.trailing_stop_pct and position.side == "long":
        if price > hwm:
            hwm = price
            new_hwm = price
        trailing_level = hwm * (1 - position.trailing_stop_pct / 100)

    levels = [lvl for lvl in (position.stop_loss, trailing_level) if lvl is not None]
    effective_stop = max(levels) if levels else None

    if effective_stop is not None and price <= effective_stop:
        return ExitCheck("stop_loss", effective_stop, new_hwm)
    if position.take_profit is not None and price >= position.take_profit:
        return ExitCheck("take_profit", effective_stop, new_hwm)
    return ExitCheck(None, effective_stop, new_hwm)


class PositionLedger:
    """
    Open/closed positions stored in StateStore.

    Responsibilities:
    - Open positions with default protective levels from trading config
    - Close positions idempotently
    - Partial reductions after partially filled exits
    - Join open positions with live tickers for P&L summaries
    """

    def __init__(self, store: StateStore):
        self.store = store

    def open_position(
        self,
        symbol: str,
        entry_price: float,
        amount: float,
        side: str = "long",
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        trailing_stop_pct: Optional[float] = None,
        entry_trade_id: Optional[int] = None,
        defaults: Optional[TradingConfig] = None,
    ) -> Position:
        """
        Record a new open position.

        Missing stop-loss/take-profit levels are derived from the default
        percentages; trailing applies when enabled in defaults.

        Raises:
            PositionConflictError: If symbol already has an open position
        """
        defaults = defaults or TradingConfig()
        if entry_price <= 0 or amount <= 0:
            raise ValueError(f"Invalid position for {symbol}: price={entry_price}, amount={amount}")

        if stop_loss is None:
            stop_loss = entry_price * (1 - defaults.default_stop_loss_pct / 100)
        if take_profit is None:
            take_profit = entry_price * (1 + defaults.default_take_profit_pct / 100)
        if trailing_stop_pct is None and defaults.trailing_stop_enabled:
            trailing_stop_pct = defaults.trailing_stop_pct

        try:
            with self.store.connection() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO positions (
                        symbol, side, entry_price, amount, cost_basis, stop_loss, take_profit,
                        trailing_stop_pct, high_water_mark, status, entry_trade_id, opened_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'open', ?, ?)
                    """,
                    (
                        symbol, side, entry_price, amount, entry_price * amount, stop_loss,
                        take_profit, trailing_stop_pct, entry_price, entry_trade_id, utc_now_iso(),
                    ),
                )
                position_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise PositionConflictError(f"{symbol} already has an open position") from e

        logger.info(
            f"Opened position #{position_id}: {side} {amount:.8f} {symbol} @ ${entry_price:.2f} "
            f"(SL=${stop_loss:.2f}, TP=${take_profit:.2f}, trail={trailing_stop_pct})"
        )
        return self.get_position(position_id)

    def close_position(
        self,
        position_id: int,
        exit_price: float,
        exit_trade_id: Optional[int] = None,
        status: str = "closed",
    ) -> Optional[float]:
        """
        Close an open position.

        Returns:
            Realized P&L, or None when the position was not open (no-op)
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Invalid terminal status: {status}")

        with self.store.connection() as conn:
            row = conn.execute(
                "SELECT * FROM positions WHERE id = ? AND status = 'open'", (position_id,)
            ).fetchone()
            if row is None:
                logger.debug(f"Position #{position_id} not open, close ignored")
                return None
            position = Position.from_row(row)
            realized = position.partial_pnl + position_pnl(
                position.side, position.entry_price, exit_price, position.amount
            )
            conn.execute(
                """
                UPDATE positions SET status = ?, exit_trade_id = ?, realized_pnl = ?, closed_at = ?
                WHERE id = ? AND status = 'open'
                """,
                (status, exit_trade_id, realized, utc_now_iso(), position_id),
            )

        logger.info(
            f"Closed position #{position_id} {position.symbol} as {status} @ ${exit_price:.2f}: "
            f"P&L ${realized:+.2f}"
        )
        return realized

    def reduce_position(self, position_id: int, sold_amount: float, fill_price: float) -> Optional[float]:
        """
        Shrink an open position after a partial exit.

        Returns:
            P&L realized on the sold part, or None if the position is not open
        """
        with self.store.connection() as conn:
            row = conn.execute(
                "SELECT * FROM positions WHERE id = ? AND status = 'open'", (position_id,)
            ).fetchone()
            if row is None:
                return None
            position = Position.from_row(row)
            sold = min(sold_amount, position.amount)
            pnl = position_pnl(position.side, position.entry_price, fill_price, sold)
            remaining = position.amount - sold
            conn.execute(
                """
                UPDATE positions SET amount = ?, cost_basis = ?, partial_pnl = partial_pnl + ?
                WHERE id = ? AND status = 'open'
                """,
                (remaining, position.entry_price * remaining, pnl, position_id),
            )

        logger.info(
            f"Reduced position #{position_id} {position.symbol} by {sold:.8f} "
            f"({remaining:.8f} left), partial P&L ${pnl:+.2f}"
        )
        return pnl

    def update_position_levels(
        self,
        position_id: int,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        trailing_stop_pct: Optional[float] = None,
        high_water_mark: Optional[float] = None,
    ) -> bool:
        """Partial update of protective levels; None leaves a field unchanged."""
        updates = {
            "stop_loss": stop_loss,
            "take_profit": take_profit,
            "trailing_stop_pct": trailing_stop_pct,
            "high_water_mark": high_water_mark,
        }
        updates = {k: v for k, v in updates.items() if v is not None}
        if not updates:
            return False

        assignments = ", ".join(f"{column} = ?" for column in updates)
        with self.store.connection() as conn:
            cursor = conn.execute(
                f"UPDATE positions SET {assignments} WHERE id = ? AND status = 'open'",
                (*updates.values(), position_id),
            )
        return cursor.rowcount > 0

    def link_entry_trade(self, position_id: int, trade_id: int) -> None:
        with self.store.connection() as conn:
            conn.execute(
                "UPDATE positions SET entry_trade_id = ? WHERE id = ? AND entry_trade_id IS NULL",
                (trade_id, position_id),
            )

    def get_position(self, position_id: int) -> Optional[Position]:
        with self.store.connection() as conn:
            row = conn.execute("SELECT * FROM positions WHERE id = ?", (position_id,)).fetchone()
        return Position.from_row(row) if row else None

    def get_open_positions(self) -> List[Position]:
        with self.store.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM positions WHERE status = 'open' ORDER BY opened_at ASC"
            ).fetchall()
        return [Position.from_row(r) for r in rows]

    def get_position_for_symbol(self, symbol: str) -> Optional[Position]:
        with self.store.connection() as conn:
            row = conn.execute(
                "SELECT * FROM positions WHERE symbol = ? AND status = 'open'", (symbol,)
            ).fetchone()
        return Position.from_row(row) if row else None

    def get_positions_closed_since(self, since: datetime) -> List[Position]:
        with self.store.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM positions WHERE status != 'open' AND closed_at >= ? ORDER BY closed_at ASC",
                (to_utc_iso(since),),
            ).fetchall()
        return [Position.from_row(r) for r in rows]

    def get_open_position_summaries(self, gateway) -> List[PositionSummary]:
        """
        Join open positions with live tickers.

        Ticker failures leave that summary's live fields as None.
        """
        positions = self.get_open_positions()
        if not positions:
            return []

        prices = gateway.fetch_prices([p.symbol for p in positions])
        summaries = []
        for position in positions:
            price = prices.get(position.symbol)
            summary = PositionSummary(position=position)
            if price:
                pnl = position_pnl(position.side, position.entry_price, price, position.amount)
                summary.current_price = price
                summary.unrealized_pnl = pnl
                summary.pnl_pct = pnl / position.cost_basis * 100 if position.cost_basis else 0.0
                if position.stop_loss is not None:
                    summary.distance_to_sl_pct = (price - position.stop_loss) / price * 100
                if position.take_profit is not None:
                    summary.distance_to_tp_pct = (position.take_profit - price) / price * 100
            summaries.append(summary)
        return summaries

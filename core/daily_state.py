"""
crypto-sentinel Core: Daily Risk State

Per-day trade count and realized P&L shared by every trade-executing path.

Reads reset lazily: a stored state from an earlier local date is reported
as a fresh zeroed state for today without writing anything. Mutations go
through apply_trade(), which holds the lock across re-read, apply and
persist so concurrent loops cannot lose updates.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional, Union

from infra.state_store import StateStore

logger = logging.getLogger(__name__)

STATE_KEY = "daily_state"


@dataclass
class DailyState:
    last_reset_date: date
    trades_today: int = 0
    pnl_today: Decimal = field(default_factory=lambda: Decimal("0"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trades_today": self.trades_today,
            "pnl_today": str(self.pnl_today),
            "last_reset_date": self.last_reset_date.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DailyState":
        try:
            pnl = Decimal(str(data.get("pnl_today", "0")))
        except InvalidOperation:
            pnl = Decimal("0")
        return cls(
            last_reset_date=date.fromisoformat(str(data["last_reset_date"])),
            trades_today=int(data.get("trades_today", 0)),
            pnl_today=pnl,
        )


class DailyRiskState:
    """
    Guarded access to the DailyState singleton.

    One instance must be shared by all loops in the process; the lock it
    owns is the mutual-exclusion point for daily counters.
    """

    def __init__(self, store: StateStore, today_fn: Optional[Callable[[], date]] = None):
        self.store = store
        self._today = today_fn or date.today
        self._lock = threading.Lock()

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def read(self) -> DailyState:
        """Current state; stale or missing records read as a fresh day."""
        today = self._today()
        raw = self.store.get_value(STATE_KEY)
        if not raw:
            return DailyState(last_reset_date=today)
        try:
            state = DailyState.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Unreadable daily state, treating as fresh: {e}")
            return DailyState(last_reset_date=today)
        if state.last_reset_date != today:
            logger.debug(f"Daily state from {state.last_reset_date} is stale, reading as fresh")
            return DailyState(last_reset_date=today)
        return state

    def write(self, state: DailyState) -> None:
        self.store.set_value(STATE_KEY, state.to_dict())

    def apply_trade(self, pnl_delta: Union[Decimal, float] = 0, trades: int = 1) -> DailyState:
        """
        Record executed trade(s) and realized P&L.

        Holds the lock across re-read, apply and persist.
        """
        delta = pnl_delta if isinstance(pnl_delta, Decimal) else Decimal(str(pnl_delta))
        with self._lock:
            state = self.read()
            state.trades_today += trades
            state.pnl_today += delta
            self.write(state)
        logger.info(
            f"Daily state: trades_today={state.trades_today}, pnl_today=${state.pnl_today:.2f}"
        )
        return state

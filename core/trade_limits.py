"""
crypto-sentinel Core: Trading-Safety Gate

Decides whether automated trades may execute right now. Checks
short-circuit in priority order:

1. trading disabled
2. auto-confirm disabled (preview only)
3. daily trade-count limit reached
4. daily loss limit reached

A closed gate is an expected outcome, not an error; its label is shown to
the reasoning service in the next prompt's trading section.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
import logging

from core.daily_state import DailyState
from tools.config_validator import TradingConfig

logger = logging.getLogger(__name__)

DISABLED = "DISABLED"
PREVIEW_ONLY = "PREVIEW ONLY"
DAILY_LIMIT = "DAILY LIMIT REACHED"
LOSS_LIMIT = "LOSS LIMIT REACHED"


@dataclass
class GateResult:
    """Result of trading gate check"""
    permitted: bool
    label: Optional[str] = None  # one of the constants above when closed
    reason: str = ""


class TradeLimits:
    """
    Evaluates the trading gate against config and today's DailyState.
    """

    @staticmethod
    def check(trading: TradingConfig, state: DailyState, require_auto_confirm: bool = True) -> GateResult:
        """
        Args:
            trading: Current trading config
            state: Today's daily state (read fresh by the caller)
            require_auto_confirm: False for explicit user trades

        Returns:
            GateResult; permitted=True only when every check passes
        """
        if not trading.enabled:
            return GateResult(False, DISABLED, "Trading is disabled")

        if require_auto_confirm and not trading.auto_confirm:
            return GateResult(False, PREVIEW_ONLY, "Auto-confirm is off; recommendations are preview only")

        if state.trades_today >= trading.max_trades_per_day:
            return GateResult(
                False,
                DAILY_LIMIT,
                f"Daily trade limit reached ({state.trades_today}/{trading.max_trades_per_day})",
            )

        loss_limit = Decimal(str(trading.daily_loss_limit_usd))
        if state.pnl_today <= -loss_limit:
            return GateResult(
                False,
                LOSS_LIMIT,
                f"Daily loss limit reached (${state.pnl_today:.2f} vs -${loss_limit:.2f})",
            )

        return GateResult(True)

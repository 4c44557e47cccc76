"""
crypto-sentinel Core: Guardian

Fast, rule-based protection loop. Each tick prices every open position
and fires a market sell when the effective stop-loss (fixed or trailing)
or the take-profit is crossed.

No AI - the Guardian must keep working when the reasoning service is down.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from analytics.trade_log import TradeLog, TradeRecord
from core.daily_state import DailyRiskState
from core.exchange import ExchangeGateway
from core.execution import PARTIAL_FILL_RATIO, extract_fill
from core.position_manager import Position, PositionLedger, evaluate_exit
from infra.alerting import AlertService, AlertSeverity, OnceLogger
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

EXIT_STATUS = {"stop_loss": "stopped_out", "take_profit": "took_profit"}
EXIT_LABEL = {"stop_loss": "STOP-LOSS", "take_profit": "TAKE-PROFIT"}


@dataclass
class ProtectiveExitResult:
    position_id: int
    symbol: str
    reason: str
    success: bool
    fill_price: Optional[float] = None
    sold_amount: float = 0.0
    realized_pnl: Optional[float] = None
    partial: bool = False
    error: Optional[str] = None


@dataclass
class GuardianTickResult:
    status: str  # idle / ok / unavailable / no_prices
    checked: int = 0
    exits: List[ProtectiveExitResult] = field(default_factory=list)


class Guardian:
    """
    Enforces stop-loss, take-profit and trailing stops on open positions.

    Failure semantics:
    - Exchange unavailable or zero prices: count a consecutive failure,
      log CRITICAL at the threshold, skip the tick
    - Any successful price fetch resets the counter
    - Exit order failures are logged and notified, never retried in-tick
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        ledger: PositionLedger,
        trade_log: TradeLog,
        daily_state: DailyRiskState,
        notifier: AlertService,
        metrics: Optional[MetricsRecorder] = None,
        failure_threshold: int = 3,
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.trade_log = trade_log
        self.daily_state = daily_state
        self.notifier = notifier
        self.metrics = metrics
        self.failure_threshold = failure_threshold
        self.consecutive_failures = 0
        self._once = OnceLogger(logger)

    def tick(self) -> GuardianTickResult:
        positions = self.ledger.get_open_positions()
        if self.metrics:
            self.metrics.record_open_positions(len(positions))
        if not positions:
            return GuardianTickResult(status="idle")

        symbols = sorted({p.symbol for p in positions})
        try:
            prices = self.gateway.fetch_prices(symbols)
        except Exception as e:
            self._record_failure(f"Exchange unavailable: {e}")
            return GuardianTickResult(status="unavailable")

        if not prices:
            self._record_failure("No prices fetched")
            return GuardianTickResult(status="no_prices")

        if self.consecutive_failures:
            logger.info(f"Guardian recovered after {self.consecutive_failures} failed tick(s)")
        self.consecutive_failures = 0
        self._once.reset()

        result = GuardianTickResult(status="ok")
        for position in positions:
            price = prices.get(position.symbol)
            if not price:
                continue
            result.checked += 1

            check = evaluate_exit(position, price)
            if check.new_high_water_mark is not None:
                self.ledger.update_position_levels(position.id, high_water_mark=check.new_high_water_mark)
                position.high_water_mark = check.new_high_water_mark
                logger.debug(f"{position.symbol} high-water mark raised to ${price:.2f}")

            if check.reason is None:
                continue

            if check.reason == "stop_loss":
                logger.warning(
                    f"STOP-LOSS triggered for {position.symbol}: price ${price:.2f} <= SL ${check.effective_stop:.2f}"
                )
            else:
                logger.info(
                    f"TAKE-PROFIT triggered for {position.symbol}: price ${price:.2f} >= TP ${position.take_profit:.2f}"
                )
            result.exits.append(self.protective_exit(position, price, check.reason))

        if self.metrics:
            self.metrics.record_guardian_tick("ok", 0)
        return result

    def _record_failure(self, message: str) -> None:
        self.consecutive_failures += 1
        self._once.error(f"Guardian tick failed: {message}")
        logger.debug(f"{message} (failure #{self.consecutive_failures})")
        if self.consecutive_failures >= self.failure_threshold:
            logger.critical(
                f"CRITICAL: {self.consecutive_failures} consecutive Guardian failures. "
                f"SL/TP protection may be offline!"
            )
            if self.consecutive_failures == self.failure_threshold:
                self._notify(
                    f"{self.consecutive_failures} consecutive failures, SL/TP protection may be offline: {message}",
                    AlertSeverity.CRITICAL,
                )
        if self.metrics:
            self.metrics.record_guardian_tick("failed", self.consecutive_failures)

    def protective_exit(self, position: Position, current_price: float, reason: str) -> ProtectiveExitResult:
        """
        Market-sell the full position and book the exit.

        A partial fill (< 95%) books the filled part and leaves the rest
        open for the next tick.
        """
        label = EXIT_LABEL[reason]
        sandbox = self.gateway.is_sandbox
        try:
            order = self.gateway.create_market_order(position.symbol, "sell", position.amount)
            fill = extract_fill(order, position.symbol, current_price, position.amount)
            partial = fill.filled < position.amount * PARTIAL_FILL_RATIO

            trade_id = self.trade_log.log_trade(TradeRecord(
                symbol=position.symbol,
                side="sell",
                amount=fill.filled,
                price=fill.price,
                cost=fill.cost,
                order_id=fill.order_id,
                source=reason,
                reasoning=f"{label.title()} triggered at ${current_price:.2f}",
                position_id=position.id,
                sandbox=sandbox,
            ))

            if partial:
                logger.warning(
                    f"Partial fill on {reason} for {position.symbol}: {fill.filled:.8f}/{position.amount:.8f}. "
                    f"Remainder stays open for next tick."
                )
                realized = self.ledger.reduce_position(position.id, fill.filled, fill.price)
                pnl_delta = realized or 0.0
            else:
                realized = self.ledger.close_position(
                    position.id, fill.price, exit_trade_id=trade_id, status=EXIT_STATUS[reason]
                )
                # Earlier partial legs were already booked to the daily state.
                pnl_delta = realized - position.partial_pnl if realized is not None else 0.0

            self.daily_state.apply_trade(pnl_delta=Decimal(str(pnl_delta)))
            if self.metrics:
                self.metrics.record_trade(reason, "sell")
                self.metrics.record_protective_exit(reason, "partial" if partial else "filled")

            pnl = realized or 0.0
            prefix = "PARTIAL " if partial else ""
            self._notify(
                f"{prefix}{label} {position.symbol}: Sold {fill.filled:g} @ ${fill.price:.2f} | "
                f"P&L: {'+' if pnl >= 0 else '-'}${abs(pnl):.2f} | {'SANDBOX' if sandbox else 'LIVE'}",
                AlertSeverity.WARNING if reason == "stop_loss" else AlertSeverity.INFO,
            )
            return ProtectiveExitResult(
                position_id=position.id,
                symbol=position.symbol,
                reason=reason,
                success=True,
                fill_price=fill.price,
                sold_amount=fill.filled,
                realized_pnl=realized,
                partial=partial,
            )
        except Exception as e:
            logger.error(f"Failed to execute {reason} for {position.symbol}: {e}", exc_info=True)
            if self.metrics:
                self.metrics.record_protective_exit(reason, "failed")
            self._notify(f"FAILED {reason.upper()} for {position.symbol}: {e}", AlertSeverity.CRITICAL)
            return ProtectiveExitResult(
                position_id=position.id,
                symbol=position.symbol,
                reason=reason,
                success=False,
                error=str(e),
            )

    def _notify(self, message: str, severity: AlertSeverity) -> None:
        try:
            self.notifier.notify(f"[Guardian] {message}", severity=severity)
        except Exception as e:
            logger.error(f"Guardian notification failed: {e}")

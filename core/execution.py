"""
crypto-sentinel Core: Execution Engine

Market-order execution shared by the Sentinel's automated actions and the
user's manual trade path. Every executed order is logged to the trade log,
opens or closes the matching position, and updates the daily risk state
under its lock.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional
import logging

from analytics.trade_log import TradeLog, TradeRecord
from core.daily_state import DailyRiskState
from core.exceptions import OrderExecutionError
from core.exchange import ExchangeGateway, floor_amount
from core.position_manager import PositionLedger
from core.trade_limits import TradeLimits
from infra.metrics import MetricsRecorder
from tools.config_validator import TradingConfig

logger = logging.getLogger(__name__)

FAILED_ORDER_STATUSES = {"canceled", "cancelled", "expired", "rejected"}
PARTIAL_FILL_RATIO = 0.95


@dataclass
class Fill:
    """Normalized fill details from a ccxt order"""
    order_id: Optional[str]
    status: Optional[str]
    filled: float
    price: float
    cost: float


@dataclass
class ExecutionResult:
    """Result of one execution attempt"""
    success: bool
    message: str
    symbol: Optional[str] = None
    side: Optional[str] = None
    amount: float = 0.0
    price: float = 0.0
    cost: float = 0.0
    order_id: Optional[str] = None
    trade_id: Optional[int] = None
    position_id: Optional[int] = None
    realized_pnl: Optional[float] = None
    preview: bool = False


def normalize_symbol(symbol: str, quote: str = "USD") -> str:
    symbol = symbol.strip().upper()
    return symbol if "/" in symbol else f"{symbol}/{quote.upper()}"


def extract_fill(order: Dict[str, Any], symbol: str, fallback_price: float, requested: float) -> Fill:
    """
    Normalize a ccxt order response.

    Raises:
        OrderExecutionError: Order came back canceled, expired or rejected
    """
    status = (order.get("status") or "").lower() or None
    order_id = order.get("id")
    if status in FAILED_ORDER_STATUSES:
        raise OrderExecutionError(symbol, f"order {status}", order_id=order_id)

    filled = order.get("filled")
    if filled is None:
        filled = order.get("amount") or requested
    filled = float(filled)
    price = float(order.get("average") or order.get("price") or fallback_price)
    cost = float(order.get("cost") or price * filled)
    return Fill(order_id=order_id, status=status, filled=filled, price=price, cost=cost)


class TradeExecutor:
    """
    Executes market orders behind the trading gate and per-trade USD cap.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        ledger: PositionLedger,
        trade_log: TradeLog,
        daily_state: DailyRiskState,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.trade_log = trade_log
        self.daily_state = daily_state
        self.metrics = metrics

    def execute(
        self,
        symbol: str,
        side: str,
        trading: TradingConfig,
        amount: Optional[float] = None,
        source: str = "sentinel",
        reasoning: Optional[str] = None,
        sentinel_run_id: Optional[int] = None,
        require_auto_confirm: bool = True,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        quote: str = "USD",
    ) -> ExecutionResult:
        """
        Place a market order and book it.

        Gate closures and cap violations return an unsuccessful result.
        Exchange errors and OrderExecutionError propagate.
        """
        side = side.lower()
        symbol = normalize_symbol(symbol, quote)

        gate = TradeLimits.check(trading, self.daily_state.read(), require_auto_confirm=require_auto_confirm)
        if not gate.permitted:
            logger.info(f"Trade {side} {symbol} blocked: {gate.reason}")
            return ExecutionResult(False, gate.reason, symbol=symbol, side=side)

        price = self.gateway.fetch_price(symbol)
        position = self.ledger.get_position_for_symbol(symbol)

        if side == "buy" and position is not None:
            return ExecutionResult(
                False, f"{symbol} already has an open position (#{position.id})", symbol=symbol, side=side
            )
        if side == "sell" and position is not None:
            amount = position.amount
        if not amount:
            amount = floor_amount(trading.max_trade_usd / price)
        if amount <= 0:
            return ExecutionResult(False, f"Invalid amount for {symbol}", symbol=symbol, side=side)

        # The cap limits new exposure; closing a tracked position is never capped.
        estimated_usd = amount * price
        closing = side == "sell" and position is not None
        if not closing and estimated_usd > trading.max_trade_usd:
            message = f"Trade value ${estimated_usd:.2f} exceeds max ${trading.max_trade_usd:.2f}"
            logger.info(f"Trade {side} {symbol} rejected: {message}")
            return ExecutionResult(False, message, symbol=symbol, side=side)

        logger.info(
            f"Executing {side} {amount:.8f} {symbol} @ ~${price:.2f} "
            f"({'sandbox' if self.gateway.is_sandbox else 'LIVE'}, source={source})"
        )
        order = self.gateway.create_market_order(symbol, side, amount)
        fill = extract_fill(order, symbol, price, amount)

        realized: Optional[float] = None
        pnl_delta = 0.0
        position_id = position.id if position else None

        if side == "buy":
            opened = self.ledger.open_position(
                symbol, fill.price, fill.filled, stop_loss=stop_loss, take_profit=take_profit, defaults=trading,
            )
            position_id = opened.id

        trade_id = self.trade_log.log_trade(TradeRecord(
            symbol=symbol,
            side=side,
            amount=fill.filled,
            price=fill.price,
            cost=fill.cost,
            order_id=fill.order_id,
            source=source,
            reasoning=reasoning,
            sentinel_run_id=sentinel_run_id,
            position_id=position_id,
            sandbox=self.gateway.is_sandbox,
        ))

        if side == "buy":
            self.ledger.link_entry_trade(position_id, trade_id)
        elif position is not None:
            if fill.filled < position.amount * PARTIAL_FILL_RATIO:
                logger.warning(
                    f"Partial fill on {symbol}: {fill.filled:.8f}/{position.amount:.8f}, position stays open"
                )
                realized = self.ledger.reduce_position(position.id, fill.filled, fill.price)
                pnl_delta = realized or 0.0
            else:
                realized = self.ledger.close_position(position.id, fill.price, exit_trade_id=trade_id)
                # Earlier partial legs were already booked to the daily state.
                pnl_delta = realized - position.partial_pnl if realized is not None else 0.0

        self.daily_state.apply_trade(pnl_delta=Decimal(str(pnl_delta)))
        if self.metrics:
            self.metrics.record_trade(source, side)

        message = f"{side.upper()} {fill.filled:g} {symbol} @ ${fill.price:.2f}"
        if realized is not None:
            message += f" (P&L ${realized:+.2f})"
        logger.info(f"Trade executed: {message}")
        return ExecutionResult(
            True,
            message,
            symbol=symbol,
            side=side,
            amount=fill.filled,
            price=fill.price,
            cost=fill.cost,
            order_id=fill.order_id,
            trade_id=trade_id,
            position_id=position_id,
            realized_pnl=realized,
        )

    def manual_trade(
        self,
        symbol: str,
        side: str,
        trading: TradingConfig,
        amount: Optional[float] = None,
        quote_amount: Optional[float] = None,
        confirm: bool = False,
        reasoning: Optional[str] = None,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
    ) -> ExecutionResult:
        """
        User-initiated trade.

        Without confirm=True only a preview is returned. Explicit
        confirmation stands in for the auto-confirm gate; every other gate
        and the USD cap still apply.
        """
        side = side.lower()
        if side not in ("buy", "sell"):
            return ExecutionResult(False, f"Invalid side: {side}")
        for name, value in (("amount", amount), ("quote_amount", quote_amount)):
            if value is not None and value <= 0:
                return ExecutionResult(False, f"{name} must be positive")

        symbol = normalize_symbol(symbol)
        if not trading.enabled:
            return ExecutionResult(False, "Trading is disabled", symbol=symbol, side=side)

        price = self.gateway.fetch_price(symbol)
        if quote_amount:
            amount = floor_amount(quote_amount / price)

        if not confirm:
            base = amount or floor_amount(trading.max_trade_usd / price)
            estimated = base * price
            return ExecutionResult(
                True,
                f"ORDER PREVIEW: {side.upper()} {base:g} {symbol} (~${estimated:.2f} @ ${price:.2f}, "
                f"{'sandbox' if self.gateway.is_sandbox else 'LIVE'}). Confirm to execute.",
                symbol=symbol,
                side=side,
                amount=base,
                price=price,
                cost=estimated,
                preview=True,
            )

        return self.execute(
            symbol,
            side,
            trading,
            amount=amount,
            source="user",
            reasoning=reasoning,
            require_auto_confirm=False,
            stop_loss=stop_loss,
            take_profit=take_profit,
        )

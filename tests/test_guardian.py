"""
Tests for the Guardian protective-exit loop.

Coverage:
- Stop-loss exit closes the position with realized P&L and notifies
- Take-profit and trailing-stop exits
- No action between levels
- Exchange outages count consecutive failures; CRITICAL once at threshold
- Failed exit orders leave the position open
- Partial fills book the filled part and keep the remainder
- Daily P&L after partial fill plus final close matches realized P&L
"""

from decimal import Decimal

import ccxt
import pytest

from core.guardian import Guardian
from infra.alerting import AlertSeverity
from infra.metrics import MetricsRecorder


@pytest.fixture
def guardian(gateway, ledger, trade_log, daily_state, notifier):
    return Guardian(
        gateway, ledger, trade_log, daily_state, notifier,
        metrics=MetricsRecorder(enabled=False), failure_threshold=3,
    )


@pytest.fixture
def btc_position(ledger):
    return ledger.open_position("BTC/USD", 60000.0, 0.5, stop_loss=57000.0, take_profit=66000.0)


class TestExits:
    """SL/TP triggering"""

    def test_stop_loss(self, guardian, btc_position, ledger, trade_log, daily_state, exchange_client, notifier):
        exchange_client.prices["BTC/USD"] = 56900.0

        result = guardian.tick()

        assert result.status == "ok"
        (exit_result,) = result.exits
        assert exit_result.success
        assert exit_result.realized_pnl == pytest.approx(-1550.0)

        closed = ledger.get_position(btc_position.id)
        assert closed.status == "stopped_out"
        assert closed.realized_pnl == pytest.approx(-1550.0)

        trade = trade_log.get_trade(closed.exit_trade_id)
        assert trade.source == "stop_loss"
        assert trade.side == "sell"

        state = daily_state.read()
        assert state.trades_today == 1
        assert state.pnl_today == Decimal("-1550.0")

        message = notifier.notify.call_args[0][0]
        assert message.startswith("[Guardian] STOP-LOSS BTC/USD")
        assert "P&L: -$1550.00" in message
        assert "SANDBOX" in message
        assert notifier.notify.call_args[1]["severity"] == AlertSeverity.WARNING

    def test_take_profit(self, guardian, btc_position, ledger, exchange_client):
        exchange_client.prices["BTC/USD"] = 66500.0
        guardian.tick()

        closed = ledger.get_position(btc_position.id)
        assert closed.status == "took_profit"
        assert closed.realized_pnl == pytest.approx(3250.0)

    def test_between_levels_no_action(self, guardian, btc_position, ledger, exchange_client):
        exchange_client.prices["BTC/USD"] = 61000.0
        result = guardian.tick()

        assert result.checked == 1
        assert result.exits == []
        assert ledger.get_position(btc_position.id).is_open
        exchange_client.create_order.assert_not_called()

    def test_trailing_stop(self, guardian, ledger, exchange_client):
        position = ledger.open_position(
            "ETH/USD", 3000.0, 1.0, stop_loss=2500.0, take_profit=5000.0, trailing_stop_pct=5.0
        )
        exchange_client.prices["ETH/USD"] = 3600.0
        guardian.tick()
        assert ledger.get_position(position.id).high_water_mark == 3600.0

        exchange_client.prices["ETH/USD"] = 3400.0
        result = guardian.tick()

        (exit_result,) = result.exits
        assert exit_result.reason == "stop_loss"
        assert ledger.get_position(position.id).realized_pnl == pytest.approx(400.0)

    def test_idle_without_positions(self, guardian, exchange_client):
        assert guardian.tick().status == "idle"
        exchange_client.fetch_tickers.assert_not_called()


class TestFailures:
    """Exchange outages and failed orders"""

    def test_consecutive_failures_alert_once(self, guardian, btc_position, exchange_client, notifier):
        exchange_client.fetch_tickers.side_effect = ccxt.NetworkError("down")
        exchange_client.fetch_ticker.side_effect = ccxt.NetworkError("down")

        statuses = [guardian.tick().status for _ in range(4)]

        assert statuses == ["no_prices"] * 4
        assert guardian.consecutive_failures == 4
        critical = [c for c in notifier.notify.call_args_list if c[1]["severity"] == AlertSeverity.CRITICAL]
        assert len(critical) == 1

    def test_recovery_resets_counter(self, guardian, btc_position, exchange_client):
        exchange_client.fetch_tickers.side_effect = ccxt.NetworkError("down")
        exchange_client.fetch_ticker.side_effect = ccxt.NetworkError("down")
        guardian.tick()
        guardian.tick()

        exchange_client.fetch_tickers.side_effect = None
        exchange_client.fetch_tickers.return_value = {"BTC/USD": {"last": 61000.0}}
        assert guardian.tick().status == "ok"
        assert guardian.consecutive_failures == 0

    def test_unconstructible_client_counts_failure(self, guardian, btc_position, gateway):
        gateway._known_exchanges = set()
        gateway.clear_cache()

        assert guardian.tick().status == "unavailable"
        assert guardian.consecutive_failures == 1

    def test_canceled_exit_order(self, guardian, btc_position, ledger, trade_log, exchange_client, notifier):
        exchange_client.prices["BTC/USD"] = 56000.0
        exchange_client.create_order.side_effect = None
        exchange_client.create_order.return_value = {"id": "c1", "status": "canceled", "filled": 0}

        (exit_result,) = guardian.tick().exits

        assert not exit_result.success
        assert ledger.get_position(btc_position.id).is_open
        assert trade_log.get_recent_trades() == []
        assert notifier.notify.call_args[1]["severity"] == AlertSeverity.CRITICAL

    def test_notifier_failure_does_not_break_exit(self, guardian, btc_position, ledger, exchange_client, notifier):
        notifier.notify.side_effect = RuntimeError("webhook down")
        exchange_client.prices["BTC/USD"] = 56000.0

        (exit_result,) = guardian.tick().exits

        assert exit_result.success
        assert not ledger.get_position(btc_position.id).is_open


class TestPartialFill:
    def test_partial_fill_keeps_remainder(self, guardian, btc_position, ledger, daily_state, exchange_client):
        exchange_client.prices["BTC/USD"] = 56000.0
        exchange_client.create_order.side_effect = None
        exchange_client.create_order.return_value = {
            "id": "p1", "status": "closed", "filled": 0.2, "average": 56000.0,
        }

        (exit_result,) = guardian.tick().exits

        assert exit_result.partial
        assert exit_result.realized_pnl == pytest.approx(-800.0)
        remaining = ledger.get_position(btc_position.id)
        assert remaining.is_open
        assert remaining.amount == pytest.approx(0.3)
        assert remaining.partial_pnl == pytest.approx(-800.0)
        assert daily_state.read().trades_today == 1

    def test_final_close_after_partial_books_pnl_once(
        self, guardian, btc_position, ledger, daily_state, exchange_client
    ):
        exchange_client.prices["BTC/USD"] = 56000.0
        exchange_client.create_order.side_effect = None
        exchange_client.create_order.return_value = {
            "id": "p1", "status": "closed", "filled": 0.2, "average": 56000.0,
        }
        guardian.tick()

        exchange_client.create_order.return_value = {
            "id": "p2", "status": "closed", "filled": 0.3, "average": 56000.0,
        }
        (exit_result,) = guardian.tick().exits

        assert not exit_result.partial
        assert exit_result.realized_pnl == pytest.approx(-2000.0)
        closed = ledger.get_position(btc_position.id)
        assert closed.status == "stopped_out"
        assert closed.realized_pnl == pytest.approx(-2000.0)

        state = daily_state.read()
        assert state.trades_today == 2
        assert float(state.pnl_today) == pytest.approx(-2000.0)

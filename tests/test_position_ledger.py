"""
Tests for the position ledger and exit evaluation.

Coverage:
- Default stop-loss/take-profit/trailing from trading config
- At most one open position per symbol
- Idempotent close and terminal statuses
- Partial reductions accumulate into realized P&L
- Live summaries (P&L, distances) and ticker failures
- evaluate_exit priority and trailing ratchet
"""

import pytest

from core.exceptions import PositionConflictError
from core.position_manager import evaluate_exit, position_pnl
from tools.config_validator import TradingConfig


class TestOpenPosition:
    """open_position()"""

    def test_default_levels(self, ledger):
        position = ledger.open_position("BTC/USD", 60000.0, 0.5)

        assert position.is_open
        assert position.stop_loss == pytest.approx(57000.0)
        assert position.take_profit == pytest.approx(66000.0)
        assert position.trailing_stop_pct is None
        assert position.high_water_mark == 60000.0
        assert position.cost_basis == pytest.approx(30000.0)

    def test_trailing_from_defaults(self, ledger):
        defaults = TradingConfig(trailing_stop_enabled=True, trailing_stop_pct=2.0)
        position = ledger.open_position("ETH/USD", 3000.0, 1.0, defaults=defaults)
        assert position.trailing_stop_pct == 2.0

    def test_explicit_levels_win(self, ledger):
        position = ledger.open_position("BTC/USD", 60000.0, 0.1, stop_loss=50000.0, take_profit=80000.0)
        assert (position.stop_loss, position.take_profit) == (50000.0, 80000.0)

    def test_second_open_for_symbol_rejected(self, ledger):
        ledger.open_position("BTC/USD", 60000.0, 0.1)
        with pytest.raises(PositionConflictError):
            ledger.open_position("BTC/USD", 61000.0, 0.1)
        assert len(ledger.get_open_positions()) == 1

    def test_reopen_after_close(self, ledger):
        first = ledger.open_position("BTC/USD", 60000.0, 0.1)
        ledger.close_position(first.id, 61000.0)
        second = ledger.open_position("BTC/USD", 62000.0, 0.1)
        assert second.id != first.id

    def test_invalid_values(self, ledger):
        with pytest.raises(ValueError):
            ledger.open_position("BTC/USD", 0, 0.1)


class TestClosePosition:
    """close_position()"""

    def test_close_realizes_pnl(self, ledger):
        position = ledger.open_position("BTC/USD", 60000.0, 0.5)
        pnl = ledger.close_position(position.id, 56900.0, status="stopped_out")

        assert pnl == pytest.approx(-1550.0)
        closed = ledger.get_position(position.id)
        assert closed.status == "stopped_out"
        assert closed.realized_pnl == pytest.approx(-1550.0)
        assert closed.closed_at is not None

    def test_close_is_idempotent(self, ledger):
        position = ledger.open_position("BTC/USD", 60000.0, 0.5)
        ledger.close_position(position.id, 66000.0, status="took_profit")

        assert ledger.close_position(position.id, 10.0) is None
        closed = ledger.get_position(position.id)
        assert closed.status == "took_profit"
        assert closed.realized_pnl == pytest.approx(3000.0)

    def test_invalid_status(self, ledger):
        position = ledger.open_position("BTC/USD", 60000.0, 0.5)
        with pytest.raises(ValueError):
            ledger.close_position(position.id, 60000.0, status="open")


class TestReducePosition:
    """reduce_position()"""

    def test_partial_then_close(self, ledger):
        position = ledger.open_position("BTC/USD", 60000.0, 1.0)

        partial = ledger.reduce_position(position.id, 0.4, 55000.0)
        assert partial == pytest.approx(-2000.0)

        reduced = ledger.get_position(position.id)
        assert reduced.is_open
        assert reduced.amount == pytest.approx(0.6)
        assert reduced.cost_basis == pytest.approx(36000.0)

        total = ledger.close_position(position.id, 55000.0)
        assert total == pytest.approx(-5000.0)

    def test_reduce_closed_position(self, ledger):
        position = ledger.open_position("BTC/USD", 60000.0, 1.0)
        ledger.close_position(position.id, 60000.0)
        assert ledger.reduce_position(position.id, 0.5, 60000.0) is None


class TestLevelsAndQueries:
    """Level updates and lookups"""

    def test_update_levels_partial(self, ledger):
        position = ledger.open_position("BTC/USD", 60000.0, 1.0)
        assert ledger.update_position_levels(position.id, high_water_mark=63000.0)

        updated = ledger.get_position(position.id)
        assert updated.high_water_mark == 63000.0
        assert updated.stop_loss == pytest.approx(57000.0)

    def test_update_without_fields(self, ledger):
        position = ledger.open_position("BTC/USD", 60000.0, 1.0)
        assert ledger.update_position_levels(position.id) is False

    def test_position_for_symbol(self, ledger):
        ledger.open_position("ETH/USD", 3000.0, 1.0)
        assert ledger.get_position_for_symbol("ETH/USD").symbol == "ETH/USD"
        assert ledger.get_position_for_symbol("BTC/USD") is None

    def test_link_entry_trade_once(self, ledger):
        position = ledger.open_position("ETH/USD", 3000.0, 1.0)
        ledger.link_entry_trade(position.id, 7)
        ledger.link_entry_trade(position.id, 8)
        assert ledger.get_position(position.id).entry_trade_id == 7


class TestSummaries:
    """get_open_position_summaries()"""

    def test_summary_fields(self, ledger, gateway):
        ledger.open_position("BTC/USD", 50000.0, 0.1, stop_loss=45000.0, take_profit=66000.0)

        (summary,) = ledger.get_open_position_summaries(gateway)

        assert summary.current_price == 60000.0
        assert summary.unrealized_pnl == pytest.approx(1000.0)
        assert summary.pnl_pct == pytest.approx(20.0)
        assert summary.distance_to_sl_pct == pytest.approx(25.0)
        assert summary.distance_to_tp_pct == pytest.approx(10.0)

    def test_missing_ticker_leaves_none(self, ledger, gateway):
        ledger.open_position("SOL/USD", 150.0, 1.0)
        (summary,) = ledger.get_open_position_summaries(gateway)
        assert summary.current_price is None
        assert summary.unrealized_pnl is None

    def test_no_positions(self, ledger, gateway):
        assert ledger.get_open_position_summaries(gateway) == []


class TestEvaluateExit:
    """Pure exit decision"""

    def _position(self, ledger, **levels):
        return ledger.open_position("BTC/USD", 60000.0, 0.5, **levels)

    def test_stop_loss(self, ledger):
        check = evaluate_exit(self._position(ledger), 56900.0)
        assert check.reason == "stop_loss"
        assert check.effective_stop == pytest.approx(57000.0)

    def test_take_profit(self, ledger):
        assert evaluate_exit(self._position(ledger), 66000.0).reason == "take_profit"

    def test_between_levels(self, ledger):
        check = evaluate_exit(self._position(ledger), 61000.0)
        assert check.reason is None
        assert check.new_high_water_mark is None

    def test_trailing_ratchets_and_triggers(self, ledger):
        position = self._position(ledger, trailing_stop_pct=3.0, take_profit=100000.0)

        check = evaluate_exit(position, 70000.0)
        assert check.reason is None
        assert check.new_high_water_mark == 70000.0

        position.high_water_mark = 70000.0
        check = evaluate_exit(position, 67800.0)
        assert check.reason == "stop_loss"
        assert check.effective_stop == pytest.approx(67900.0)

    def test_fixed_stop_wins_when_higher(self, ledger):
        position = self._position(ledger, stop_loss=59000.0, trailing_stop_pct=5.0)
        assert evaluate_exit(position, 59500.0).effective_stop == pytest.approx(59000.0)

    def test_stop_priority_over_take_profit(self, ledger):
        position = self._position(ledger, stop_loss=61000.0, take_profit=60500.0)
        assert evaluate_exit(position, 60800.0).reason == "stop_loss"


def test_position_pnl_short():
    assert position_pnl("short", 100.0, 90.0, 2.0) == 20.0

#!/usr/bin/env python3
"""
Quick portfolio check - open positions with live P&L and today's stats
"""
import argparse
import sys
from pathlib import Path

# Add project to path
sys.path.insert(0, str(Path(__file__).parent))

from analytics.trade_log import TradeLog
from core.daily_state import DailyRiskState
from core.exchange import ExchangeGateway
from core.position_manager import PositionLedger
from infra.state_store import StateStore
from tools.config_validator import load_app_config


def _fmt(value, pattern="{:.2f}", missing="n/a"):
    return pattern.format(value) if value is not None else missing


def main(argv=None):
    parser = argparse.ArgumentParser(description="Show open positions and daily stats")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    args = parser.parse_args(argv)

    config = load_app_config(args.config_dir)
    store = StateStore(config.storage.db_path)
    ledger = PositionLedger(store)
    gateway = ExchangeGateway(config.exchange)

    print("\n" + "=" * 90)
    print(f"CRYPTO-SENTINEL PORTFOLIO CHECK ({config.exchange.id}, {'SANDBOX' if gateway.is_sandbox else 'LIVE'})")
    print("=" * 90)
    print()

    try:
        summaries = ledger.get_open_position_summaries(gateway)
    except Exception as e:
        print(f"⚠️  Could not fetch live prices: {e}")
        summaries = []
        for position in ledger.get_open_positions():
            print(f"   #{position.id} {position.symbol} {position.amount:.8f} @ ${position.entry_price:.2f}")

    if summaries:
        print(f"{'Symbol':<12} {'Amount':>14} {'Entry':>12} {'Current':>12} {'P&L':>12} {'P&L %':>8} {'to SL %':>8} {'to TP %':>8}")
        print("-" * 90)
        total_pnl = 0.0
        for s in summaries:
            p = s.position
            total_pnl += s.unrealized_pnl or 0.0
            print(
                f"{p.symbol:<12} {p.amount:>14.8f} {p.entry_price:>12.2f} {_fmt(s.current_price):>12} "
                f"{_fmt(s.unrealized_pnl, '{:+.2f}'):>12} {_fmt(s.pnl_pct, '{:+.1f}'):>8} "
                f"{_fmt(s.distance_to_sl_pct, '{:.1f}'):>8} {_fmt(s.distance_to_tp_pct, '{:.1f}'):>8}"
            )
        print("=" * 90)
        print(f"{'UNREALIZED':<12} ${total_pnl:+.2f}")
    elif not ledger.get_open_positions():
        print("No open positions")
    print()

    stats = TradeLog(store).get_daily_trade_stats()
    state = DailyRiskState(store).read()
    trading = config.trading
    print("Today:")
    print(f"  • Trades:       {state.trades_today}/{trading.max_trades_per_day}")
    print(f"  • Daily P&L:    ${float(state.pnl_today):+.2f} (limit -${trading.daily_loss_limit_usd:g})")
    print(f"  • Volume:       ${stats.volume_usd:.2f}")
    print(f"  • Win/Loss:     {stats.winners}/{stats.losers}")
    print(f"  • Trading:      {'ENABLED' if trading.enabled else 'disabled'}"
          f"{' (auto-confirm)' if trading.enabled and trading.auto_confirm else ''}")
    print()


if __name__ == '__main__':
    main()

"""
Tests for the Sentinel analysis loop.

Coverage:
- Disabled/overlapping ticks
- Degraded context skips the reasoning call but records the run
- Null decisions are stored without actions and never trade
- Gate closure blocks execution and is shown in the prompt
- Executed trades link back to the run; failures are reported
- Reasoning errors produce an error run and a notification
- Context fetch failures fall back to empty values
"""

import ccxt
import pytest

from ai.model_client import MockClient
from core.sentinel import DEGRADED_ERROR
from infra.alerting import AlertSeverity

BUY_RESPONSE = (
    "BTC momentum is strong.\n"
    "```sentinel-output\n"
    '{"sentiment": {"BTC": {"score": 0.8, "label": "bullish"}}, "signals": ["MACD cross"], '
    '"actions": [{"type": "buy", "symbol": "BTC", "reason": "momentum"}, '
    '{"type": "hold", "symbol": "ETH", "reason": "wait"}], '
    '"summary": "Buying BTC on momentum"}\n'
    "```"
)


class TimeoutClient(MockClient):
    def _complete(self, system_prompt, user_prompt):
        raise TimeoutError("timed out")


def _last_notification(notifier):
    args, kwargs = notifier.notify.call_args
    return args[0], kwargs["severity"]


class TestTickGuards:
    """Enabled flag and no-overlap rule"""

    def test_disabled(self, sentinel, app_config, sentinel_model):
        app_config.sentinel.enabled = False
        assert sentinel.tick().status == "disabled"
        assert sentinel_model.calls == []

    def test_force_runs_when_disabled(self, sentinel, app_config):
        app_config.sentinel.enabled = False
        assert sentinel.tick(force=True).status == "ok"

    def test_overlapping_tick_skipped(self, sentinel, sentinel_model):
        sentinel._running.acquire()
        try:
            assert sentinel.tick().status == "skipped"
        finally:
            sentinel._running.release()
        assert sentinel_model.calls == []


class TestDegradedContext:
    def test_no_portfolio_or_indicators(self, sentinel, exchange_client, sentinel_model):
        exchange_client.fetch_balance.side_effect = ccxt.NetworkError("down")
        exchange_client.fetch_ohlcv.side_effect = ccxt.NetworkError("down")

        result = sentinel.tick()

        assert result.status == "degraded"
        assert sentinel_model.calls == []
        run = sentinel.get_run(result.run_id)
        assert run.error == DEGRADED_ERROR

    def test_portfolio_alone_is_enough(self, sentinel, exchange_client, sentinel_model):
        exchange_client.fetch_ohlcv.side_effect = ccxt.NetworkError("down")
        assert sentinel.tick().status == "ok"
        assert len(sentinel_model.calls) == 1


class TestDecisions:
    """Parsing outcome and execution"""

    def test_null_decision_stored_without_actions(self, sentinel, sentinel_model, exchange_client):
        sentinel_model.response = "I am unsure about the market today."

        result = sentinel.tick()

        assert result.status == "ok"
        assert result.decision is None
        run = sentinel.get_run(result.run_id)
        assert run.actions is None
        assert run.summary == "I am unsure about the market today."
        assert run.model_used == "mock-sentinel"
        exchange_client.create_order.assert_not_called()

    def test_buy_action_executed_and_linked(self, sentinel, sentinel_model, trade_log, ledger, notifier):
        sentinel_model.response = BUY_RESPONSE

        result = sentinel.tick()

        assert len(result.trades) == 1
        assert result.failures == []
        (trade,) = trade_log.get_recent_trades()
        assert trade.source == "sentinel"
        assert trade.sentinel_run_id == result.run_id
        assert trade.reasoning == "momentum"
        assert ledger.get_position_for_symbol("BTC/USD") is not None

        run = sentinel.get_run(result.run_id)
        assert run.summary == "Buying BTC on momentum"
        assert run.signals == ["MACD cross"]
        assert [a["type"] for a in run.actions] == ["buy", "hold"]
        assert "BTC/USD" in run.indicators

        message, severity = _last_notification(notifier)
        assert message.startswith("[Sentinel] Buying BTC on momentum")
        assert "Trades executed:" in message
        assert severity == AlertSeverity.INFO

    def test_gate_closed_blocks_execution(self, sentinel, sentinel_model, app_config, exchange_client):
        app_config.trading.auto_confirm = False
        sentinel_model.response = BUY_RESPONSE

        result = sentinel.tick()

        assert result.trades == []
        exchange_client.create_order.assert_not_called()
        _, user_prompt = sentinel_model.calls[0]
        assert "## Trading: PREVIEW ONLY." in user_prompt

    def test_exchange_failure_reported(self, sentinel, sentinel_model, exchange_client, notifier):
        sentinel_model.response = BUY_RESPONSE
        exchange_client.create_order.side_effect = ccxt.InsufficientFunds("no money")

        result = sentinel.tick()

        assert result.trades == []
        assert result.failures == ["BUY BTC: no money"]
        message, severity = _last_notification(notifier)
        assert "Trades failed:" in message
        assert severity == AlertSeverity.WARNING


class TestFailures:
    def test_reasoning_error(self, sentinel, notifier):
        sentinel.model_client = TimeoutClient()

        result = sentinel.tick()

        assert result.status == "error"
        assert sentinel.get_run(result.run_id).error == "timed out"
        message, _ = _last_notification(notifier)
        assert message == "[Sentinel] Run failed: timed out"

    def test_context_fetch_failure_falls_back(self, sentinel, sources, sentinel_model):
        sources.fetch_reddit_sentiment.side_effect = RuntimeError("reddit 503")

        assert sentinel.tick().status == "ok"
        _, user_prompt = sentinel_model.calls[0]
        assert "No Reddit data available." in user_prompt


class TestContext:
    def test_web_queries_per_coin(self, sentinel, sources, app_config):
        sentinel.gather_context(app_config)
        queries = [c.args[0] for c in sources.web_search.call_args_list]
        assert sorted(queries) == [
            "BTC crypto sentiment analysis today",
            "ETH crypto sentiment analysis today",
        ]
        assert all(c.kwargs["limit"] == 3 for c in sources.web_search.call_args_list)

    def test_disabled_sources_not_fetched(self, sentinel, sources, app_config):
        app_config.sentinel.sources = ["news"]
        ctx = sentinel.gather_context(app_config)
        sources.web_search.assert_not_called()
        sources.fetch_reddit_sentiment.assert_not_called()
        assert ctx.coin_list == ["BTC/USD", "ETH/USD"]

    def test_previous_runs_newest_first(self, sentinel, app_config):
        for i in range(4):
            sentinel.save_run({}, {}, None, f"run {i}", 10)
        ctx = sentinel.gather_context(app_config)
        assert [r.summary for r in ctx.previous_runs] == ["run 3", "run 2", "run 1"]

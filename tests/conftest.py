"""
Pytest configuration and fixtures for crypto-sentinel tests.

Provides a MetricsRecorder reset between tests, tmp_path-backed SQLite
stores, a gateway wired to a MagicMock ccxt client, and a Sentinel
assembled from those pieces with a MockClient reasoning service.
"""
from unittest.mock import MagicMock

import pytest

from ai.model_client import MockClient
from analytics.trade_log import TradeLog
from core.daily_state import DailyRiskState
from core.exchange import ExchangeGateway
from core.execution import TradeExecutor
from core.indicators import IndicatorService
from core.position_manager import PositionLedger
from core.sentinel import Sentinel
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore
from tests.helpers.exchange_stubs import StaticConfigSource, make_candles, make_exchange_client
from tools.config_validator import AppConfig, ExchangeConfig


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def store(tmp_path):
    return StateStore(str(tmp_path / "sentinel.db"))


@pytest.fixture
def ledger(store):
    return PositionLedger(store)


@pytest.fixture
def trade_log(store):
    return TradeLog(store)


@pytest.fixture
def daily_state(store):
    return DailyRiskState(store)


@pytest.fixture
def exchange_client():
    return make_exchange_client({"BTC/USD": 60000.0, "ETH/USD": 3000.0})


@pytest.fixture
def gateway(exchange_client):
    config = ExchangeConfig(api_key="test-key", api_secret="test-secret", sandbox=True)
    return ExchangeGateway(
        config,
        exchange_factory=lambda exchange_id, params: exchange_client,
        known_exchanges={"coinbase", "kraken"},
    )


@pytest.fixture
def notifier():
    return MagicMock(name="notifier")


@pytest.fixture
def sources():
    stub = MagicMock(name="sources")
    stub.web_search.return_value = []
    stub.fetch_reddit_sentiment.return_value = []
    stub.fetch_crypto_news.return_value = []
    return stub


@pytest.fixture
def app_config():
    return AppConfig(
        trading={"enabled": True, "auto_confirm": True, "max_trade_usd": 100.0},
        sentinel={"enabled": True, "coins": ["BTC", "ETH"]},
        ceo={"enabled": True, "briefing_hour": 6},
        ai={"provider": "mock"},
    )


@pytest.fixture
def config_source(app_config):
    return StaticConfigSource(app_config)


@pytest.fixture
def sentinel_model():
    return MockClient(model="mock-sentinel")


@pytest.fixture
def sentinel(config_source, gateway, exchange_client, ledger, trade_log, daily_state, sources,
             sentinel_model, notifier, store):
    exchange_client.fetch_ohlcv.return_value = make_candles([60000.0 + i * 10 for i in range(60)])
    metrics = MetricsRecorder(enabled=False)
    executor = TradeExecutor(gateway, ledger, trade_log, daily_state, metrics=metrics)
    return Sentinel(
        config_source, gateway, IndicatorService(gateway), ledger, trade_log, daily_state,
        executor, sources, sentinel_model, notifier, store, metrics=metrics, max_workers=2,
    )

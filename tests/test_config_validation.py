"""
Tests for configuration validation.

Validates that config_validator rejects invalid app.yaml files, applies
safe defaults, reports sanity contradictions, and that ConfigSource keeps
the last good config across bad edits.
"""
import pytest
import yaml
from pydantic import ValidationError

from tools.config_validator import (
    AppConfig,
    ConfigSource,
    ExchangeConfig,
    SentinelConfig,
    load_app_config,
    validate_all_configs,
    validate_sanity_checks,
)


def _write(config_dir, data):
    (config_dir / "app.yaml").write_text(yaml.safe_dump(data) if isinstance(data, dict) else data)


class TestDefaults:
    """Empty or missing config is safe"""

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_app_config(str(tmp_path))
        assert config.exchange.sandbox is True
        assert config.trading.enabled is False
        assert config.trading.auto_confirm is False

    def test_empty_file(self, tmp_path):
        _write(tmp_path, "")
        config = load_app_config(str(tmp_path))
        assert config.trading.max_trade_usd == 100.0
        assert config.sentinel.symbols() == ["BTC/USD", "ETH/USD"]


class TestSchema:
    """Field-level validation"""

    def test_negative_trade_cap(self):
        with pytest.raises(ValidationError):
            AppConfig(trading={"max_trade_usd": 0})

    def test_unknown_source(self):
        with pytest.raises(ValidationError):
            SentinelConfig(sources=["twitter"])

    def test_coins_normalized(self):
        config = SentinelConfig(coins=[" sol ", "eth/eur", ""], quote_currency="usd")
        assert config.coins == ["SOL", "ETH/EUR"]
        assert config.symbols() == ["SOL/USD", "ETH/EUR"]

    def test_empty_coin_list(self):
        with pytest.raises(ValidationError):
            SentinelConfig(coins=[" "])

    def test_bad_provider(self):
        with pytest.raises(ValidationError):
            AppConfig(ai={"provider": "local-llama"})

    def test_exchange_id_normalized(self):
        assert ExchangeConfig(id=" Kraken ").id == "kraken"

    def test_credentials_prefer_inline(self, monkeypatch):
        monkeypatch.setenv("EXCHANGE_API_KEY", "from-env")
        monkeypatch.setenv("EXCHANGE_API_SECRET", "secret-env")
        creds = ExchangeConfig(api_key="inline").credentials()
        assert creds["api_key"] == "inline"
        assert creds["secret"] == "secret-env"


class TestSanityChecks:
    """Cross-field contradictions"""

    def test_take_profit_below_stop(self):
        config = AppConfig(trading={"default_stop_loss_pct": 8, "default_take_profit_pct": 4})
        errors = validate_sanity_checks(config)
        assert any("default_take_profit_pct" in e for e in errors)

    def test_zero_loss_limit_with_trading(self):
        config = AppConfig(trading={"enabled": True, "daily_loss_limit_usd": 0})
        assert any("daily_loss_limit_usd" in e for e in validate_sanity_checks(config))

    def test_zero_loss_limit_with_trading_disabled(self):
        config = AppConfig(trading={"enabled": False, "daily_loss_limit_usd": 0})
        assert any("daily_loss_limit_usd" in e for e in validate_sanity_checks(config))

    def test_wide_trailing_stop(self):
        config = AppConfig(trading={"trailing_stop_enabled": True, "trailing_stop_pct": 20, "default_stop_loss_pct": 5})
        assert any("trailing_stop_pct" in e for e in validate_sanity_checks(config))

    def test_defaults_clean(self):
        assert validate_sanity_checks(AppConfig()) == []


class TestValidateAll:
    def test_valid_file(self, tmp_path):
        _write(tmp_path, {"trading": {"enabled": True, "auto_confirm": True}})
        assert validate_all_configs(str(tmp_path)) == []

    def test_missing_file_reported(self, tmp_path):
        errors = validate_all_configs(str(tmp_path))
        assert len(errors) == 1
        assert errors[0].startswith("app.yaml:")

    def test_schema_error_names_field(self, tmp_path):
        _write(tmp_path, {"guardian": {"interval_seconds": 1}})
        errors = validate_all_configs(str(tmp_path))
        assert any("guardian -> interval_seconds" in e for e in errors)

    def test_malformed_yaml(self, tmp_path):
        _write(tmp_path, "trading: [unclosed\n")
        errors = validate_all_configs(str(tmp_path))
        assert any("Invalid YAML" in e for e in errors)


class TestConfigSource:
    """Per-tick reload"""

    def test_picks_up_edits(self, tmp_path):
        _write(tmp_path, {"trading": {"max_trade_usd": 50}})
        source = ConfigSource(str(tmp_path))
        assert source.load().trading.max_trade_usd == 50

        _write(tmp_path, {"trading": {"max_trade_usd": 75}})
        assert source.load().trading.max_trade_usd == 75

    def test_bad_edit_keeps_last_good(self, tmp_path):
        _write(tmp_path, {"trading": {"max_trade_usd": 50}})
        source = ConfigSource(str(tmp_path))
        source.load()

        _write(tmp_path, {"trading": {"max_trade_usd": -1}})
        assert source.load().trading.max_trade_usd == 50

    def test_bad_first_load_raises(self, tmp_path):
        _write(tmp_path, "trading: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            ConfigSource(str(tmp_path)).load()

"""
Configuration Validation Module

Validates config/app.yaml against Pydantic schemas and exposes the typed
AppConfig used by every loop. Each section carries explicit defaults so an
empty file still produces a safe (sandboxed, trading disabled) configuration.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError

logger = logging.getLogger(__name__)

APP_CONFIG_FILE = "app.yaml"


# ===== App Schema =====
class ExchangeConfig(BaseModel):
    """Exchange connection parameters"""
    id: str = Field(default="coinbase", min_length=1, description="ccxt exchange id")
    sandbox: bool = Field(default=True, description="Use exchange sandbox/testnet")
    timeout_ms: int = Field(default=15000, ge=1000, le=60000, description="Per-request timeout (ms)")
    api_key: Optional[str] = Field(default=None, description="Inline API key (prefer env)")
    api_secret: Optional[str] = Field(default=None, description="Inline API secret (prefer env)")
    passphrase: Optional[str] = Field(default=None, description="Inline passphrase (prefer env)")
    api_key_env: str = Field(default="EXCHANGE_API_KEY", description="Env var holding API key")
    api_secret_env: str = Field(default="EXCHANGE_API_SECRET", description="Env var holding API secret")
    passphrase_env: str = Field(default="EXCHANGE_PASSPHRASE", description="Env var holding passphrase")

    @field_validator('id')
    @classmethod
    def normalize_id(cls, v: str) -> str:
        return v.strip().lower()

    def credentials(self) -> Dict[str, str]:
        """Resolve credentials, inline values first then environment."""
        return {
            "api_key": self.api_key or os.getenv(self.api_key_env, ""),
            "secret": self.api_secret or os.getenv(self.api_secret_env, ""),
            "password": self.passphrase or os.getenv(self.passphrase_env, ""),
        }


class TradingConfig(BaseModel):
    """Trading interlocks and protective defaults"""
    enabled: bool = Field(default=False, description="Master switch for order placement")
    auto_confirm: bool = Field(default=False, description="Execute Sentinel actions without confirmation")
    max_trade_usd: float = Field(default=100.0, gt=0, description="Per-trade USD cap")
    default_stop_loss_pct: float = Field(default=5.0, gt=0, lt=100, description="Default stop-loss %")
    default_take_profit_pct: float = Field(default=10.0, gt=0, description="Default take-profit %")
    trailing_stop_enabled: bool = Field(default=False, description="Attach trailing stop to new positions")
    trailing_stop_pct: float = Field(default=3.0, gt=0, lt=100, description="Trailing stop distance %")
    max_trades_per_day: int = Field(default=5, ge=0, description="Daily trade-count limit")
    daily_loss_limit_usd: float = Field(default=50.0, ge=0, description="Daily realized loss limit (USD)")


class GuardianConfig(BaseModel):
    """Protective exit loop"""
    enabled: bool = Field(default=True, description="Run the Guardian loop")
    interval_seconds: float = Field(default=120.0, ge=5, description="Seconds between ticks")
    failure_alert_threshold: int = Field(default=3, gt=0, description="Consecutive failures before CRITICAL")


class SentinelConfig(BaseModel):
    """Market analysis loop"""
    enabled: bool = Field(default=False, description="Run the Sentinel loop")
    coins: List[str] = Field(default_factory=lambda: ["BTC", "ETH"], description="Tracked coins or symbols")
    quote_currency: str = Field(default="USD", min_length=1, description="Quote for bare coin names")
    interval_minutes: float = Field(default=30.0, gt=0, description="Minutes between runs")
    initial_delay_seconds: float = Field(default=10.0, ge=0, description="Delay before first run")
    timeframe: str = Field(default="1h", description="OHLCV timeframe")
    candle_limit: int = Field(default=60, ge=10, le=1000, description="Candles fetched per symbol")
    sources: List[str] = Field(default_factory=lambda: ["web", "reddit", "news"], description="External sources")
    strategy_notes: str = Field(default="", description="Manual strategy notes appended to prompt")

    @field_validator('coins')
    @classmethod
    def validate_coins(cls, v: List[str]) -> List[str]:
        cleaned = [c.strip().upper() for c in v if c and c.strip()]
        if not cleaned:
            raise ValueError("At least one coin must be tracked")
        return cleaned

    @field_validator('sources')
    @classmethod
    def validate_sources(cls, v: List[str]) -> List[str]:
        allowed = {"web", "reddit", "news"}
        for source in v:
            if source not in allowed:
                raise ValueError(f"Unknown source '{source}', expected one of {sorted(allowed)}")
        return v

    def symbols(self) -> List[str]:
        """Coins expanded to exchange symbols (BTC -> BTC/USD)."""
        quote = self.quote_currency.upper()
        return [c if "/" in c else f"{c}/{quote}" for c in self.coins]


class CEOConfig(BaseModel):
    """Daily strategic directive layer"""
    enabled: bool = Field(default=False, description="Run the CEO overlay")
    briefing_hour: int = Field(default=6, ge=0, le=23, description="Earliest local hour for daily briefing")
    escalation_enabled: bool = Field(default=True, description="Allow Sentinel-triggered escalations")
    check_interval_minutes: float = Field(default=60.0, gt=0, description="Scheduler check interval")
    initial_delay_seconds: float = Field(default=30.0, ge=0, description="Delay before first check")
    escalation_debounce_hours: float = Field(default=4.0, ge=0, description="Min hours between escalations")
    directive_ttl_hours: float = Field(default=24.0, gt=0, description="Directive validity window")


class AIConfig(BaseModel):
    """Reasoning service"""
    provider: str = Field(default="anthropic", pattern="^(anthropic|openai|mock)$", description="Model provider")
    sentinel_model: str = Field(default="claude-3-5-haiku-latest", description="Model for Sentinel runs")
    ceo_model: str = Field(default="claude-sonnet-4-5", description="Model for CEO briefings")
    api_key_env: str = Field(default="AI_API_KEY", description="Env var holding provider API key")
    base_url: Optional[str] = Field(default=None, description="Optional custom endpoint")
    timeout_seconds: float = Field(default=30.0, ge=1, le=300, description="Per-call timeout")
    max_tokens: int = Field(default=4096, gt=0, description="Max output tokens")

    def api_key(self) -> str:
        return os.getenv(self.api_key_env, "")


class SourcesConfig(BaseModel):
    """External sentiment sources"""
    timeout_seconds: float = Field(default=10.0, gt=0, le=60, description="Per-request timeout")
    cryptopanic_api_key_env: str = Field(default="CRYPTOPANIC_API_KEY", description="Env var for CryptoPanic")
    reddit_delay_seconds: float = Field(default=1.0, ge=0, description="Pause between subreddit fetches")
    user_agent: str = Field(default="crypto-sentinel/1.0", description="HTTP User-Agent")
    web_results_per_coin: int = Field(default=3, gt=0, le=10, description="Search results per coin")


class NotificationsConfig(BaseModel):
    """User notifications"""
    enabled: bool = Field(default=False, description="Send notifications")
    webhook_url: Optional[str] = Field(default=None, description="Generic JSON webhook")
    webhook_env: str = Field(default="ALERT_WEBHOOK_URL", description="Env var fallback for webhook")
    telegram_bot_token_env: str = Field(default="TELEGRAM_BOT_TOKEN", description="Env var for bot token")
    telegram_chat_id: Optional[str] = Field(default=None, description="Telegram chat id")
    min_severity: str = Field(default="info", pattern="^(info|warning|critical)$", description="Lowest severity sent")
    dry_run: bool = Field(default=False, description="Log instead of sending")
    timeout_seconds: float = Field(default=5.0, gt=0, description="Delivery timeout")


class StorageConfig(BaseModel):
    """Local database"""
    db_path: str = Field(default="data/sentinel.db", min_length=1, description="SQLite file")
    sentinel_run_retention_days: int = Field(default=90, gt=0, description="Keep sentinel runs N days")
    trade_retention_days: int = Field(default=365, gt=0, description="Keep trades N days")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = Field(default="logs/crypto-sentinel.log")


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = Field(default=False, description="Expose Prometheus metrics")
    metrics_port: int = Field(default=9100, gt=0, lt=65536, description="Metrics HTTP port")


class AppConfig(BaseModel):
    """Complete app.yaml schema"""
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    guardian: GuardianConfig = Field(default_factory=GuardianConfig)
    sentinel: SentinelConfig = Field(default_factory=SentinelConfig)
    ceo: CEOConfig = Field(default_factory=CEOConfig)
    ai: AIConfig = Field(default_factory=AIConfig)
    sources: SourcesConfig = Field(default_factory=SourcesConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)


# ===== Loading =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return message with line/column context for YAML errors."""
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return f"Malformed YAML in {file_path}: {error}"
    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def load_app_config(config_dir: str = "config") -> AppConfig:
    """
    Load and validate app.yaml.

    A missing file yields the all-defaults configuration.

    Raises:
        yaml.YAMLError: If YAML is malformed
        ValidationError: If values violate the schema
    """
    path = Path(config_dir) / APP_CONFIG_FILE
    if not path.exists():
        logger.warning(f"{path} not found, using defaults")
        return AppConfig()
    return AppConfig(**load_yaml_file(path))


class ConfigSource:
    """
    Re-reads app.yaml on demand so loops pick up edits at their next tick.

    A file that fails to load or validate keeps the last good config.
    """

    def __init__(self, config_dir: str = "config", initial: Optional[AppConfig] = None):
        self.config_dir = config_dir
        self._lock = threading.Lock()
        self._last_good: Optional[AppConfig] = initial
        self._last_error: Optional[str] = None

    def load(self) -> AppConfig:
        try:
            config = load_app_config(self.config_dir)
        except (yaml.YAMLError, ValidationError, OSError) as e:
            message = str(e)
            with self._lock:
                if message != self._last_error:
                    logger.error(f"Config reload failed, keeping last good config: {message}")
                    self._last_error = message
                if self._last_good is None:
                    raise
                return self._last_good
        with self._lock:
            self._last_good = config
            self._last_error = None
        return config


# ===== Validation Functions =====
def validate_app(config_dir: Path) -> List[str]:
    """
    Validate app.yaml against schema.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    app_path = config_dir / APP_CONFIG_FILE

    try:
        config = load_yaml_file(app_path)
        AppConfig(**config)
        logger.info("✅ app.yaml validation passed")
    except FileNotFoundError as e:
        errors.append(f"app.yaml: {e}")
    except yaml.YAMLError as e:
        errors.append(f"app.yaml: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"app.yaml: {field}: {error['msg']}")

    return errors


def validate_sanity_checks(config: AppConfig) -> List[str]:
    """
    Logical consistency checks that a field-level schema cannot express.

    Detects:
    - Take-profit tighter than stop-loss
    - Non-positive daily loss limit
    - Trailing stop wider than the fixed stop
    """
    errors = []
    trading = config.trading

    if trading.default_take_profit_pct < trading.default_stop_loss_pct:
        errors.append(
            f"UNSAFE: trading.default_take_profit_pct ({trading.default_take_profit_pct}) "
            f"< default_stop_loss_pct ({trading.default_stop_loss_pct})"
        )

    if trading.daily_loss_limit_usd <= 0:
        errors.append(
            f"UNSAFE: trading.daily_loss_limit_usd ({trading.daily_loss_limit_usd}) must be > 0; "
            f"a zero limit blocks every trade"
        )

    if trading.trailing_stop_enabled and trading.trailing_stop_pct > trading.default_stop_loss_pct * 2:
        errors.append(
            f"CONTRADICTION: trailing_stop_pct ({trading.trailing_stop_pct}) is more than twice "
            f"default_stop_loss_pct; the trailing level would never tighten the stop"
        )

    if trading.enabled and not config.exchange.sandbox:
        logger.warning("⚠️  Trading enabled against LIVE exchange (sandbox=false)")

    if config.ceo.enabled and not config.sentinel.enabled:
        logger.warning("⚠️  CEO enabled without Sentinel; directives will not be consumed")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = validate_app(config_path)

    if not all_errors:
        all_errors.extend(validate_sanity_checks(load_app_config(config_dir)))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)

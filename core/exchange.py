"""
crypto-sentinel Core: Exchange Gateway

Single point of contact with the exchange via ccxt.

Sandbox enforcement: when sandbox is requested the client must accept
sandbox activation AND report sandbox mode afterwards, otherwise
construction fails. There is no fallback to a live client.
"""

import hashlib
import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import ccxt

from core.exceptions import ConfigurationError, SandboxActivationError
from infra.alerting import OnceLogger
from tools.config_validator import ExchangeConfig

logger = logging.getLogger(__name__)


@dataclass
class Candle:
    """Candlestick data"""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_ccxt(cls, row: List[Any]) -> "Candle":
        ts, o, h, l, c, v = row[:6]
        return cls(
            timestamp=datetime.fromtimestamp(ts / 1000, tz=timezone.utc),
            open=float(o),
            high=float(h),
            low=float(l),
            close=float(c),
            volume=float(v or 0.0),
        )


def _default_factory(exchange_id: str, params: Dict[str, Any]):
    return getattr(ccxt, exchange_id)(params)


def credential_fingerprint(api_key: str, secret: str) -> str:
    """Short stable digest of credentials used as a cache key."""
    return hashlib.sha256(f"{api_key}:{secret}".encode("utf-8")).hexdigest()[:16]


def floor_amount(amount: float, decimals: int = 8) -> float:
    factor = 10 ** decimals
    return math.floor(amount * factor) / factor


class ExchangeGateway:
    """
    Cached, authenticated ccxt client plus market/order primitives.

    The client is rebuilt whenever exchange id, credentials or sandbox flag
    change. Errors from ccxt (NetworkError, AuthenticationError,
    InvalidOrder, ...) propagate unchanged, except in the best-effort batch
    price fetch.
    """

    def __init__(
        self,
        config: Optional[ExchangeConfig] = None,
        exchange_factory: Optional[Callable[[str, Dict[str, Any]], Any]] = None,
        known_exchanges: Optional[Iterable[str]] = None,
    ):
        self._config = config or ExchangeConfig()
        self._factory = exchange_factory or _default_factory
        self._known_exchanges = set(known_exchanges) if known_exchanges is not None else set(ccxt.exchanges)
        self._lock = threading.Lock()
        self._client = None
        self._cache_key: Optional[Tuple[str, str, bool]] = None
        self._once = OnceLogger(logger)

    def configure(self, config: ExchangeConfig) -> None:
        """Swap in a freshly loaded config; the client is rebuilt lazily if needed."""
        self._config = config

    @property
    def is_sandbox(self) -> bool:
        return bool(self._config.sandbox)

    def get_client(self):
        """
        Return the cached client, building it if config changed.

        Raises:
            ConfigurationError: Unknown exchange id or missing credentials
            SandboxActivationError: Sandbox requested but not active
        """
        config = self._config
        creds = config.credentials()
        key = (config.id, credential_fingerprint(creds["api_key"], creds["secret"]), bool(config.sandbox))

        with self._lock:
            if self._client is not None and self._cache_key == key:
                return self._client
            client = self._build_client(config, creds)
            self._client = client
            self._cache_key = key
            return client

    def clear_cache(self) -> None:
        with self._lock:
            self._client = None
            self._cache_key = None

    def _build_client(self, config: ExchangeConfig, creds: Dict[str, str]):
        if config.id not in self._known_exchanges:
            raise ConfigurationError(f"Unknown exchange id: {config.id}")
        if not creds["api_key"] or not creds["secret"]:
            raise ConfigurationError(
                f"Missing exchange credentials (set {config.api_key_env} and {config.api_secret_env})"
            )

        params: Dict[str, Any] = {
            "apiKey": creds["api_key"],
            "secret": creds["secret"].replace("\\n", "\n"),
            "enableRateLimit": True,
            "timeout": config.timeout_ms,
        }
        if creds.get("password"):
            params["password"] = creds["password"]

        client = self._factory(config.id, params)

        if config.sandbox:
            try:
                client.set_sandbox_mode(True)
            except Exception as e:
                raise SandboxActivationError(config.id, f"set_sandbox_mode raised {e}") from e
            if not getattr(client, "isSandboxModeEnabled", False):
                raise SandboxActivationError(config.id, "client does not report sandbox mode")
            logger.info(f"Exchange client ready: {config.id} (SANDBOX)")
        else:
            logger.warning(f"Exchange client ready: {config.id} (LIVE - real funds)")

        return client

    # ----- Market data -----

    def load_markets(self, reload: bool = False) -> Dict[str, Any]:
        return self.get_client().load_markets(reload)

    def fetch_ticker(self, symbol: str) -> Dict[str, Any]:
        return self.get_client().fetch_ticker(symbol)

    def fetch_price(self, symbol: str) -> float:
        """Last traded price (falls back to close/bid)."""
        ticker = self.fetch_ticker(symbol)
        price = ticker.get("last") or ticker.get("close") or ticker.get("bid")
        if not price:
            raise ValueError(f"No price in ticker for {symbol}")
        return float(price)

    def fetch_prices(self, symbols: List[str]) -> Dict[str, float]:
        """
        Best-effort batch price fetch.

        Tries a single batch call, then falls back to per-symbol fetches.
        Symbols that fail are omitted (logged once per distinct error).
        The client itself must be constructible; configuration errors
        propagate so callers can tell "exchange unavailable" apart.
        """
        client = self.get_client()
        if not symbols:
            return {}

        prices: Dict[str, float] = {}
        try:
            tickers = client.fetch_tickers(symbols)
            for symbol in symbols:
                ticker = tickers.get(symbol) or {}
                price = ticker.get("last") or ticker.get("close")
                if price:
                    prices[symbol] = float(price)
        except Exception as e:
            self._once.warning(f"Batch ticker fetch failed, falling back per symbol: {e}")

        for symbol in symbols:
            if symbol in prices:
                continue
            try:
                prices[symbol] = self.fetch_price(symbol)
            except Exception as e:
                self._once.warning(f"Ticker fetch failed for {symbol}: {e}")

        return prices

    def fetch_ohlcv(self, symbol: str, timeframe: str = "1h", limit: int = 60) -> List[Candle]:
        rows = self.get_client().fetch_ohlcv(symbol, timeframe, None, limit)
        return [Candle.from_ccxt(r) for r in rows or []]

    # ----- Account -----

    def fetch_balance(self) -> Dict[str, Any]:
        return self.get_client().fetch_balance()

    def fetch_portfolio(self) -> Dict[str, Dict[str, float]]:
        """Non-zero holdings: asset -> {total, free}."""
        balance = self.fetch_balance()
        totals = balance.get("total") or {}
        free = balance.get("free") or {}
        return {
            asset: {"total": float(amount), "free": float(free.get(asset) or 0.0)}
            for asset, amount in totals.items()
            if amount and float(amount) > 0
        }

    # ----- Orders -----

    def create_market_order(self, symbol: str, side: str, amount: float) -> Dict[str, Any]:
        side = side.lower()
        if side not in ("buy", "sell"):
            raise ValueError(f"Invalid side: {side}")
        logger.info(
            f"Placing market {side.upper()} {amount:.8f} {symbol} "
            f"({'sandbox' if self.is_sandbox else 'LIVE'})"
        )
        return self.get_client().create_order(symbol, "market", side, amount)

    def fetch_order(self, order_id: str, symbol: str) -> Dict[str, Any]:
        return self.get_client().fetch_order(order_id, symbol)

    def cancel_order(self, order_id: str, symbol: str) -> Dict[str, Any]:
        return self.get_client().cancel_order(order_id, symbol)

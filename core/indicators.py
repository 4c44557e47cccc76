"""
crypto-sentinel Core: Technical Indicators

Pure functions over OHLCV candles: SMA, EMA, RSI (Wilder), MACD,
support/resistance, volume trend, trend votes and readable signals.

No AI - just math on candles. IndicatorService adds the exchange fetch.
"""

from typing import Dict, List, Literal, Sequence, Tuple
from dataclasses import dataclass, field, asdict
import logging

from core.exceptions import InsufficientData
from infra.alerting import OnceLogger

logger = logging.getLogger(__name__)

MIN_CANDLES = 10
NEAR_LEVEL_PCT = 2.0

Trend = Literal["bullish", "bearish", "neutral"]
VolumeTrend = Literal["increasing", "decreasing", "stable"]


@dataclass
class TechnicalIndicators:
    """Indicator snapshot for one symbol"""
    symbol: str
    timeframe: str
    price: float
    sma7: float
    sma20: float
    sma50: float
    ema12: float
    ema26: float
    rsi14: float
    macd: float
    macd_signal: float
    macd_histogram: float
    support: float
    resistance: float
    volume_trend: VolumeTrend
    trend: Trend
    signals: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return asdict(self)


def sma(values: Sequence[float], period: int) -> float:
    """Simple moving average of the last `period` values (last value if too short)."""
    if len(values) < period:
        return values[-1]
    window = values[-period:]
    return sum(window) / period


def ema(values: Sequence[float], period: int) -> float:
    """EMA seeded with the SMA of the first `period` values."""
    if len(values) < period:
        return values[-1]
    k = 2 / (period + 1)
    current = sum(values[:period]) / period
    for value in values[period:]:
        current = value * k + current * (1 - k)
    return current


def ema_series(values: Sequence[float], period: int) -> List[float]:
    """
    Full EMA series aligned with values.

    The seed (SMA of the first `period` values) fills the first `period`
    slots so MACD can subtract series index by index.
    """
    if len(values) < period:
        return [values[0]] * len(values)
    k = 2 / (period + 1)
    current = sum(values[:period]) / period
    series = [current] * period
    for value in values[period:]:
        current = value * k + current * (1 - k)
        series.append(current)
    return series


def rsi(closes: Sequence[float], period: int = 14) -> float:
    """RSI with Wilder's smoothing; 50 when too short, 100 when no losses."""
    if len(closes) < period + 1:
        return 50.0

    avg_gain = 0.0
    avg_loss = 0.0
    for i in range(1, period + 1):
        change = closes[i] - closes[i - 1]
        if change > 0:
            avg_gain += change
        else:
            avg_loss += -change
    avg_gain /= period
    avg_loss /= period

    for i in range(period + 1, len(closes)):
        change = closes[i] - closes[i - 1]
        gain = change if change > 0 else 0.0
        loss = -change if change < 0 else 0.0
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100 - 100 / (1 + rs)


def macd(closes: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9) -> Tuple[float, float, float]:
    """
    MACD line, signal line and histogram (latest values).

    The signal is a proper EMA over the full MACD series.
    """
    fast_series = ema_series(closes, fast)
    slow_series = ema_series(closes, slow)
    macd_line = [f - s for f, s in zip(fast_series, slow_series)]
    signal_line = ema_series(macd_line, signal)
    latest = macd_line[-1]
    latest_signal = signal_line[-1]
    return latest, latest_signal, latest - latest_signal


def support_resistance(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    window: int = 5,
) -> Tuple[float, float]:
    """
    Support/resistance from swing points.

    A swing high/low is strictly above/below the `window` candles on each
    side. Support is the highest swing low under price, resistance the
    lowest swing high above it; fallbacks use the last 20 candles.
    """
    swing_highs = []
    swing_lows = []
    for i in range(window, len(highs) - window):
        neighbors = [i - j for j in range(1, window + 1)] + [i + j for j in range(1, window + 1)]
        if all(highs[i] > highs[n] for n in neighbors):
            swing_highs.append(highs[i])
        if all(lows[i] < lows[n] for n in neighbors):
            swing_lows.append(lows[i])

    price = closes[-1]
    supports = [low for low in swing_lows if low < price]
    resistances = [high for high in swing_highs if high > price]
    support = max(supports) if supports else min(lows[-20:])
    resistance = min(resistances) if resistances else max(highs[-20:])
    return support, resistance


def volume_trend(volumes: Sequence[float]) -> VolumeTrend:
    """Mean of last 5 volumes vs prior 5: >1.2 increasing, <0.8 decreasing."""
    if len(volumes) < 10:
        return "stable"
    recent = sum(volumes[-5:]) / 5
    prior = sum(volumes[-10:-5]) / 5
    ratio = recent / (prior or 1)
    if ratio > 1.2:
        return "increasing"
    if ratio < 0.8:
        return "decreasing"
    return "stable"


def classify_trend(price: float, sma7: float, sma20: float, sma50: float, rsi14: float, histogram: float) -> Trend:
    """Five votes; four or more in one direction decide the trend."""
    bullish = 0
    bearish = 0
    for average in (sma7, sma20, sma50):
        if price > average:
            bullish += 1
        else:
            bearish += 1
    if rsi14 > 50:
        bullish += 1
    elif rsi14 < 50:
        bearish += 1
    if histogram > 0:
        bullish += 1
    elif histogram < 0:
        bearish += 1

    if bullish >= 4:
        return "bullish"
    if bearish >= 4:
        return "bearish"
    return "neutral"


def build_signals(
    price: float,
    sma7: float,
    sma20: float,
    sma50: float,
    rsi14: float,
    macd_value: float,
    macd_signal: float,
    histogram: float,
    support: float,
    resistance: float,
    vol_trend: VolumeTrend,
) -> List[str]:
    """Human-readable signal strings for the prompt."""
    signals = []

    if rsi14 < 30:
        signals.append(f"RSI oversold ({rsi14:.0f})")
    elif rsi14 > 70:
        signals.append(f"RSI overbought ({rsi14:.0f})")

    if histogram > 0 and macd_value > macd_signal:
        signals.append("MACD bullish crossover")
    elif histogram < 0 and macd_value < macd_signal:
        signals.append("MACD bearish crossover")

    if sma7 > sma20 > sma50:
        signals.append("Golden alignment SMA7>20>50")
    elif sma7 < sma20 < sma50:
        signals.append("Death alignment SMA7<20<50")

    if price > sma7 and price > sma20:
        signals.append("Price above all short MAs")
    elif price < sma7 and price < sma20:
        signals.append("Price below all short MAs")

    if vol_trend == "increasing":
        signals.append("Volume increasing")
    elif vol_trend == "decreasing":
        signals.append("Volume decreasing")

    if (price - support) / price * 100 < NEAR_LEVEL_PCT:
        signals.append(f"Near support (${support:.0f})")
    if (resistance - price) / price * 100 < NEAR_LEVEL_PCT:
        signals.append(f"Near resistance (${resistance:.0f})")

    return signals


def analyze_candles(symbol: str, candles: Sequence, timeframe: str = "1h") -> TechnicalIndicators:
    """
    Compute the full indicator snapshot from candles (oldest first).

    Raises:
        InsufficientData: Fewer than 10 candles
    """
    if len(candles) < MIN_CANDLES:
        raise InsufficientData(symbol, len(candles), MIN_CANDLES)

    closes = [c.close for c in candles]
    highs = [c.high for c in candles]
    lows = [c.low for c in candles]
    volumes = [c.volume for c in candles]
    price = closes[-1]

    sma7, sma20, sma50 = sma(closes, 7), sma(closes, 20), sma(closes, 50)
    rsi14 = rsi(closes, 14)
    macd_value, macd_signal, histogram = macd(closes)
    support, resistance = support_resistance(highs, lows, closes)
    vol_trend = volume_trend(volumes)

    return TechnicalIndicators(
        symbol=symbol,
        timeframe=timeframe,
        price=price,
        sma7=sma7,
        sma20=sma20,
        sma50=sma50,
        ema12=ema(closes, 12),
        ema26=ema(closes, 26),
        rsi14=rsi14,
        macd=macd_value,
        macd_signal=macd_signal,
        macd_histogram=histogram,
        support=support,
        resistance=resistance,
        volume_trend=vol_trend,
        trend=classify_trend(price, sma7, sma20, sma50, rsi14, histogram),
        signals=build_signals(
            price, sma7, sma20, sma50, rsi14, macd_value, macd_signal, histogram,
            support, resistance, vol_trend,
        ),
    )


class IndicatorService:
    """Fetches candles through the gateway and computes indicators per symbol."""

    def __init__(self, gateway):
        self.gateway = gateway
        self._once = OnceLogger(logger)

    def compute(self, symbol: str, timeframe: str = "1h", limit: int = 60) -> TechnicalIndicators:
        candles = self.gateway.fetch_ohlcv(symbol, timeframe, limit)
        return analyze_candles(symbol, candles, timeframe)

    def compute_all(
        self,
        symbols: List[str],
        timeframe: str = "1h",
        limit: int = 60,
    ) -> Dict[str, TechnicalIndicators]:
        """Indicators per symbol; failures are logged once and omitted."""
        results: Dict[str, TechnicalIndicators] = {}
        for symbol in symbols:
            try:
                results[symbol] = self.compute(symbol, timeframe, limit)
            except Exception as e:
                self._once.warning(f"Indicator computation failed for {symbol}: {e}")
        return results

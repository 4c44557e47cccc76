"""
Reasoning-service decision schemas.

Defines the contract between the loops and the structured blocks the
reasoning service returns. Parsing is lenient about key style (the model
writes camelCase, storage uses snake_case) but strict about types: bad
numbers become None and unknown enum values fall back to neutral.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple

ActionType = Literal["buy", "sell", "hold"]
MarketRegime = Literal["risk-on", "risk-off", "neutral", "volatile"]
Bias = Literal["bullish", "bearish", "neutral"]

REGIMES = ("risk-on", "risk-off", "neutral", "volatile")
BIASES = ("bullish", "bearish", "neutral")


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_zone(value: Any) -> Optional[Tuple[float, float]]:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        return None
    low, high = _to_float(value[0]), _to_float(value[1])
    if low is None or high is None:
        return None
    return (min(low, high), max(low, high))


def _parse_time(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class TradeAction:
    """One recommended action from a Sentinel run."""
    type: ActionType
    symbol: str
    amount: Optional[float] = None  # base units; None means default sizing
    reason: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["TradeAction"]:
        action_type = str(data.get("type") or data.get("action") or "").lower()
        symbol = str(data.get("symbol") or "").strip().upper()
        if action_type not in ("buy", "sell", "hold") or not symbol:
            return None
        amount = _to_float(data.get("amount"))
        return cls(
            type=action_type,  # type: ignore[arg-type]
            symbol=symbol,
            amount=amount if amount and amount > 0 else None,
            reason=str(data.get("reason") or "")[:500],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "symbol": self.symbol, "amount": self.amount, "reason": self.reason}


@dataclass
class SentinelDecision:
    """Parsed sentinel-output block."""
    sentiment: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    signals: List[str] = field(default_factory=list)
    actions: List[TradeAction] = field(default_factory=list)
    summary: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SentinelDecision":
        sentiment = data.get("sentiment") if isinstance(data.get("sentiment"), dict) else {}
        signals = [str(s) for s in data.get("signals") or [] if s]
        actions = []
        for raw in data.get("actions") or []:
            if isinstance(raw, dict):
                action = TradeAction.from_dict(raw)
                if action:
                    actions.append(action)
        return cls(
            sentiment=sentiment,
            signals=signals,
            actions=actions,
            summary=str(data.get("summary") or ""),
        )


@dataclass
class CoinGuidance:
    bias: Bias = "neutral"
    action: str = ""
    max_position_pct: Optional[float] = None
    notes: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CoinGuidance":
        bias = str(data.get("bias") or "neutral").lower()
        return cls(
            bias=bias if bias in BIASES else "neutral",  # type: ignore[arg-type]
            action=str(data.get("action") or ""),
            max_position_pct=_to_float(_pick(data, "max_position_pct", "maxPositionPct")),
            notes=str(data.get("notes") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bias": self.bias,
            "action": self.action,
            "max_position_pct": self.max_position_pct,
            "notes": self.notes,
        }


@dataclass
class KeyLevel:
    buy_zone: Optional[Tuple[float, float]] = None
    sell_zone: Optional[Tuple[float, float]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KeyLevel":
        return cls(
            buy_zone=_to_zone(_pick(data, "buy_zone", "buyZone")),
            sell_zone=_to_zone(_pick(data, "sell_zone", "sellZone")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "buy_zone": list(self.buy_zone) if self.buy_zone else None,
            "sell_zone": list(self.sell_zone) if self.sell_zone else None,
        }


@dataclass
class CEODirective:
    """Current strategic directive; exactly one is current at a time."""
    generated_at: datetime
    valid_until: datetime
    model_used: str = ""
    market_regime: MarketRegime = "neutral"
    overall_bias: Bias = "neutral"
    risk_level: int = 5
    coins: Dict[str, CoinGuidance] = field(default_factory=dict)
    key_levels: Dict[str, KeyLevel] = field(default_factory=dict)
    risk_guidelines: str = ""
    avoid: List[str] = field(default_factory=list)
    escalation_triggers: List[str] = field(default_factory=list)
    summary: str = ""

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        now: Optional[datetime] = None,
        ttl_hours: float = 24.0,
        model_used: str = "",
    ) -> "CEODirective":
        """Build from a parsed block or a stored record, filling defaults."""
        now = now or datetime.now(timezone.utc)
        generated_at = _parse_time(_pick(data, "generated_at", "generatedAt")) or now
        valid_until = _parse_time(_pick(data, "valid_until", "validUntil")) or (
            generated_at + timedelta(hours=ttl_hours)
        )

        regime = str(_pick(data, "market_regime", "marketRegime", default="neutral")).lower()
        bias = str(_pick(data, "overall_bias", "overallBias", default="neutral")).lower()
        risk = _to_float(_pick(data, "risk_level", "riskLevel"))
        risk_level = int(round(risk)) if risk is not None else 5

        coins = {
            str(coin).upper(): CoinGuidance.from_dict(raw)
            for coin, raw in (data.get("coins") or {}).items()
            if isinstance(raw, dict)
        }
        key_levels = {
            str(symbol).upper(): KeyLevel.from_dict(raw)
            for symbol, raw in (_pick(data, "key_levels", "keyLevels", default={}) or {}).items()
            if isinstance(raw, dict)
        }

        return cls(
            generated_at=generated_at,
            valid_until=valid_until,
            model_used=str(_pick(data, "model_used", "modelUsed", default=model_used) or model_used),
            market_regime=regime if regime in REGIMES else "neutral",  # type: ignore[arg-type]
            overall_bias=bias if bias in BIASES else "neutral",  # type: ignore[arg-type]
            risk_level=max(1, min(10, risk_level)),
            coins=coins,
            key_levels=key_levels,
            risk_guidelines=str(_pick(data, "risk_guidelines", "riskGuidelines", default="")),
            avoid=[str(a) for a in data.get("avoid") or []],
            escalation_triggers=[str(t) for t in _pick(data, "escalation_triggers", "escalationTriggers", default=[]) or []],
            summary=str(data.get("summary") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "valid_until": self.valid_until.isoformat(),
            "model_used": self.model_used,
            "market_regime": self.market_regime,
            "overall_bias": self.overall_bias,
            "risk_level": self.risk_level,
            "coins": {coin: g.to_dict() for coin, g in self.coins.items()},
            "key_levels": {symbol: lvl.to_dict() for symbol, lvl in self.key_levels.items()},
            "risk_guidelines": self.risk_guidelines,
            "avoid": list(self.avoid),
            "escalation_triggers": list(self.escalation_triggers),
            "summary": self.summary,
        }

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.valid_until

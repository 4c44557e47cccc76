"""
crypto-sentinel Core: CEO Overlay

Daily strategic directive that constrains the Sentinel. A briefing runs
once per local day at or after the configured hour, or out of cycle when
the Sentinel detects an escalation condition:

- the current directive has expired
- a tracked price moved more than 10% outside its directive zone
- today's realized loss passed half of the daily loss limit

Escalations are debounced; the briefing itself runs on a background
thread so the Sentinel tick is never blocked by it.
"""

import logging
import threading
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from ai.decision_parser import parse_ceo_directive
from ai.model_client import ModelClient
from ai.prompts import build_ceo_prompt
from ai.schemas import CEODirective
from analytics.trade_log import TradeLog
from core.daily_state import DailyRiskState, DailyState
from core.position_manager import PositionLedger
from core.sentinel import Sentinel, SentinelContext, SentinelRun
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore
from tools.config_validator import AppConfig

logger = logging.getLogger(__name__)

DIRECTIVE_KEY = "ceo_directive"
LAST_RUN_AT_KEY = "ceo_last_run_at"
LAST_RUN_DATE_KEY = "ceo_last_run_date"
LAST_ESCALATION_KEY = "ceo_last_escalation_at"

ZONE_BREACH = 0.10
LOSS_ESCALATION_FRACTION = 0.5


@dataclass
class CEOContext(SentinelContext):
    """Sentinel context enriched with directive history"""
    recent_runs_24h: List[SentinelRun] = field(default_factory=list)
    current_directive: Optional[CEODirective] = None
    trades_since_directive: int = 0
    pnl_since_directive: float = 0.0


@dataclass
class BriefingResult:
    success: bool
    directive: Optional[CEODirective] = None
    error: Optional[str] = None


def _parse_stored_time(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.astimezone()


def should_escalate(
    context: SentinelContext,
    directive: CEODirective,
    daily_state: DailyState,
    loss_limit: float,
    now: Optional[datetime] = None,
) -> Tuple[bool, str]:
    """
    Check whether the directive needs an out-of-cycle refresh.

    Zone checks cover every tracked symbol with key levels, whether or not
    the directive also carries coin guidance for it.

    Returns:
        (escalate, reason); reason is empty when escalate is False
    """
    now = now or datetime.now(timezone.utc)
    if directive.is_expired(now):
        return True, "Directive expired"

    for symbol, ta in context.indicators.items():
        if not ta.price:
            continue
        levels = directive.key_levels.get(symbol) or directive.key_levels.get(symbol.split("/")[0])
        if levels is None:
            continue
        if levels.buy_zone:
            buy_low = levels.buy_zone[0]
            if ta.price < buy_low * (1 - ZONE_BREACH):
                return True, f"{symbol} at ${ta.price:,.0f} crashed >10% below buy zone (${buy_low:,.0f})"
        if levels.sell_zone:
            sell_high = levels.sell_zone[1]
            if ta.price > sell_high * (1 + ZONE_BREACH):
                return True, f"{symbol} at ${ta.price:,.0f} surged >10% above sell zone (${sell_high:,.0f})"

    pnl_today = float(daily_state.pnl_today)
    if pnl_today <= -(loss_limit * LOSS_ESCALATION_FRACTION):
        return True, f"Daily loss ${pnl_today:.2f} exceeds 50% of limit (${loss_limit:g})"

    return False, ""


class CEOOverlay:
    """
    Generates, stores and serves the strategic directive.

    Stored records (kv):
    - ceo_directive: the current directive, fully replaced on each briefing
    - ceo_last_run_at / ceo_last_run_date: once-per-day guard
    - ceo_last_escalation_at: escalation debounce
    """

    def __init__(
        self,
        config_source,
        sentinel: Sentinel,
        trade_log: TradeLog,
        ledger: PositionLedger,
        daily_state: DailyRiskState,
        model_client: ModelClient,
        notifier: AlertService,
        store: StateStore,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.config_source = config_source
        self.sentinel = sentinel
        self.trade_log = trade_log
        self.ledger = ledger
        self.daily_state = daily_state
        self.model_client = model_client
        self.notifier = notifier
        self.store = store
        self.metrics = metrics
        self._briefing_lock = threading.Lock()
        self.escalation_thread: Optional[threading.Thread] = None

    # ----- Directive record -----

    def get_current_directive(self) -> Optional[CEODirective]:
        raw = self.store.get_value(DIRECTIVE_KEY)
        if not raw:
            return None
        try:
            return CEODirective.from_dict(raw)
        except (TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Stored CEO directive unreadable, ignoring: {e}")
            return None

    def save_directive(self, directive: CEODirective, now: datetime) -> None:
        self.store.set_value(DIRECTIVE_KEY, directive.to_dict())
        self.store.set_value(LAST_RUN_AT_KEY, now.astimezone(timezone.utc).isoformat())
        self.store.set_value(LAST_RUN_DATE_KEY, now.date().isoformat())

    # ----- Briefing -----

    def gather_context(self, config: AppConfig, now: datetime) -> CEOContext:
        base = self.sentinel.gather_context(config)
        directive = self.get_current_directive()

        trades_since = 0
        pnl_since = 0.0
        if directive is not None:
            trades_since = len(self.trade_log.get_trades_since(directive.generated_at))
            pnl_since = sum(
                p.realized_pnl or 0.0 for p in self.ledger.get_positions_closed_since(directive.generated_at)
            )

        return CEOContext(
            **{f.name: getattr(base, f.name) for f in fields(base)},
            recent_runs_24h=self.sentinel.get_runs_since(now - timedelta(hours=24)),
            current_directive=directive,
            trades_since_directive=trades_since,
            pnl_since_directive=pnl_since,
        )

    def run_briefing(self, trigger: str = "scheduled", now: Optional[datetime] = None) -> BriefingResult:
        """
        Generate and persist a new directive.

        Re-entry is refused while a briefing is in progress. Any failure
        leaves the previous directive in place.
        """
        if not self._briefing_lock.acquire(blocking=False):
            logger.info("CEO briefing already in progress, skipping")
            return BriefingResult(False, error="CEO briefing already in progress")

        now = (now or datetime.now()).astimezone()
        try:
            config = self.config_source.load()
            logger.info(f"Starting CEO briefing (trigger={trigger})")
            ctx = self.gather_context(config, now)
            system_prompt, user_prompt = build_ceo_prompt(
                ctx,
                self.daily_state.read(),
                config.trading,
                sentinel_interval_minutes=int(config.sentinel.interval_minutes),
                now=now,
            )

            text = self.model_client.generate(system_prompt, user_prompt, history_limit=0, tools_allowed=False)
            directive = parse_ceo_directive(
                text or "", model_used=self.model_client.model, now=now, ttl_hours=config.ceo.directive_ttl_hours
            )
            if directive is None:
                logger.error(f"Failed to parse CEO directive. Raw response (first 500 chars): {(text or '')[:500]}")
                self._record(trigger, "parse_failed")
                return BriefingResult(False, error="Failed to parse directive from response")

            self.save_directive(directive, now)
            logger.info(
                f"Directive saved: {directive.market_regime} / {directive.overall_bias} / "
                f"risk {directive.risk_level}/10"
            )
            self._notify(
                f"CEO Briefing complete. Regime: {directive.market_regime}, Bias: {directive.overall_bias}, "
                f"Risk: {directive.risk_level}/10. {directive.summary}",
                AlertSeverity.INFO,
            )
            self._record(trigger, "ok")
            return BriefingResult(True, directive=directive)

        except Exception as e:
            logger.error(f"CEO briefing failed: {e}", exc_info=True)
            self._record(trigger, "error")
            return BriefingResult(False, error=str(e))
        finally:
            self._briefing_lock.release()

    # ----- Scheduling -----

    def scheduled_check(self, now: Optional[datetime] = None) -> Optional[BriefingResult]:
        """Hourly check: brief once per local day, at or after briefing_hour."""
        config = self.config_source.load()
        if not config.ceo.enabled:
            return None

        now = (now or datetime.now()).astimezone()
        if self.store.get_value(LAST_RUN_DATE_KEY) == now.date().isoformat():
            return None
        if now.hour < config.ceo.briefing_hour:
            return None

        logger.info("Scheduled CEO briefing triggered")
        return self.run_briefing("scheduled", now=now)

    def maybe_escalate(
        self,
        context: SentinelContext,
        config: AppConfig,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """
        Escalation check run by the Sentinel after every tick.

        Returns:
            The escalation reason when a briefing was started, else None
        """
        if not (config.ceo.enabled and config.ceo.escalation_enabled):
            return None
        directive = self.get_current_directive()
        if directive is None:
            return None

        now = now or datetime.now(timezone.utc)
        escalate, reason = should_escalate(
            context, directive, self.daily_state.read(), config.trading.daily_loss_limit_usd, now
        )
        if not escalate:
            return None

        stamps = [
            _parse_stored_time(self.store.get_value(LAST_ESCALATION_KEY)),
            _parse_stored_time(self.store.get_value(LAST_RUN_AT_KEY)),
        ]
        stamps = [s for s in stamps if s is not None]
        if stamps:
            hours_since = (now - max(stamps)).total_seconds() / 3600
            if hours_since < config.ceo.escalation_debounce_hours:
                logger.info(f"CEO escalation needed ({reason}) but debounced (last {hours_since:.1f}h ago)")
                return None

        self.store.set_value(LAST_ESCALATION_KEY, now.astimezone(timezone.utc).isoformat())
        logger.warning(f"CEO escalation triggered: {reason}")
        if self.metrics:
            self.metrics.record_ceo_escalation()
        self._notify(f"Escalation: {reason}. Running out-of-cycle briefing.", AlertSeverity.WARNING)

        self.escalation_thread = threading.Thread(
            target=self.run_briefing, args=("escalation",), name="ceo-escalation", daemon=True
        )
        self.escalation_thread.start()
        return reason

    # ----- Helpers -----

    def _notify(self, message: str, severity: AlertSeverity) -> None:
        try:
            self.notifier.notify(f"[CEO] {message}", severity=severity)
        except Exception as e:
            logger.error(f"CEO notification failed: {e}")

    def _record(self, trigger: str, outcome: str) -> None:
        if self.metrics:
            self.metrics.record_ceo_briefing(trigger, outcome)

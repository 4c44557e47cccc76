"""
crypto-sentinel Core: Sentinel

Periodic reasoning-assisted analysis loop. One run is a five-stage
pipeline:

1. Gather context in parallel (portfolio, positions, indicators, trades,
   daily stats, external sentiment sources)
2. Render the prompt
3. Call the reasoning service (no tools)
4. Parse the sentinel-output block (null decision on failure)
5. Execute permitted actions, check CEO escalation, notify

Runs never overlap; a tick that finds the previous run still active is
skipped.
"""

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ai.decision_parser import parse_sentinel_output
from ai.model_client import ModelClient
from ai.prompts import build_sentinel_prompt
from ai.schemas import SentinelDecision
from analytics.trade_log import DailyTradeStats, TradeLog, TradeRecord
from core.daily_state import DailyRiskState
from core.exchange import ExchangeGateway
from core.execution import TradeExecutor
from core.indicators import IndicatorService, TechnicalIndicators
from core.position_manager import PositionLedger, PositionSummary
from core.sources import NewsItem, RedditPost, SentimentSources, WebSearchResult
from core.trade_limits import TradeLimits
from infra.alerting import AlertService, AlertSeverity, OnceLogger
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore, to_utc_iso, utc_now_iso
from tools.config_validator import AppConfig

logger = logging.getLogger(__name__)

DEGRADED_ERROR = "Degraded context: no portfolio or indicator data"
PREVIOUS_RUNS = 3
RECENT_TRADES = 10


@dataclass
class SentinelContext:
    """Everything the Sentinel prompt is rendered from"""
    coin_list: List[str] = field(default_factory=list)
    portfolio: Dict[str, Dict[str, float]] = field(default_factory=dict)
    positions: List[PositionSummary] = field(default_factory=list)
    indicators: Dict[str, TechnicalIndicators] = field(default_factory=dict)
    web_results: List[WebSearchResult] = field(default_factory=list)
    reddit: List[RedditPost] = field(default_factory=list)
    news: List[NewsItem] = field(default_factory=list)
    recent_trades: List[TradeRecord] = field(default_factory=list)
    previous_runs: List["SentinelRun"] = field(default_factory=list)
    daily_stats: DailyTradeStats = field(default_factory=DailyTradeStats)

    @property
    def is_degraded(self) -> bool:
        return not self.portfolio and not self.indicators


@dataclass
class SentinelRun:
    """Stored record of one Sentinel run"""
    id: int
    created_at: str
    indicators: Optional[Dict[str, Any]]
    portfolio: Optional[Dict[str, Any]]
    sentiment: Optional[Dict[str, Any]]
    signals: Optional[List[str]]
    actions: Optional[List[Dict[str, Any]]]
    summary: Optional[str]
    duration_ms: Optional[int]
    error: Optional[str]
    model_used: Optional[str]

    @classmethod
    def from_row(cls, row) -> "SentinelRun":
        data = dict(row)
        for column in ("indicators", "portfolio", "sentiment", "signals", "actions"):
            raw = data.get(column)
            data[column] = json.loads(raw) if raw else None
        return cls(**data)


@dataclass
class SentinelTickResult:
    status: str  # ok / degraded / error / skipped / disabled
    run_id: Optional[int] = None
    decision: Optional[SentinelDecision] = None
    trades: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    escalation: Optional[str] = None
    error: Optional[str] = None


def _json_or_none(value: Any) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


class Sentinel:
    """
    Market-analysis loop.

    The config is re-read through config_source at the start of every
    tick. The optional ceo overlay is consulted for the current directive
    and for escalation after trades execute.
    """

    def __init__(
        self,
        config_source,
        gateway: ExchangeGateway,
        indicators: IndicatorService,
        ledger: PositionLedger,
        trade_log: TradeLog,
        daily_state: DailyRiskState,
        executor: TradeExecutor,
        sources: SentimentSources,
        model_client: ModelClient,
        notifier: AlertService,
        store: StateStore,
        ceo=None,
        metrics: Optional[MetricsRecorder] = None,
        max_workers: int = 6,
    ):
        self.config_source = config_source
        self.gateway = gateway
        self.indicators = indicators
        self.ledger = ledger
        self.trade_log = trade_log
        self.daily_state = daily_state
        self.executor = executor
        self.sources = sources
        self.model_client = model_client
        self.notifier = notifier
        self.store = store
        self.ceo = ceo
        self.metrics = metrics
        self.max_workers = max_workers
        self._running = threading.Lock()
        self._once = OnceLogger(logger)

    # ----- Loop entry -----

    def tick(self, force: bool = False) -> SentinelTickResult:
        """One scheduled run; skipped when disabled or already running."""
        config = self.config_source.load()
        if not (force or config.sentinel.enabled):
            return SentinelTickResult(status="disabled")

        if not self._running.acquire(blocking=False):
            logger.info("Previous Sentinel run still in progress, skipping")
            if self.metrics:
                self.metrics.record_sentinel_run("skipped")
            return SentinelTickResult(status="skipped")
        try:
            return self.run_analysis(config)
        finally:
            self._running.release()

    def run_analysis(self, config: AppConfig) -> SentinelTickResult:
        start = time.monotonic()
        try:
            logger.info("Gathering Sentinel context")
            ctx = self.gather_context(config)

            if ctx.is_degraded:
                logger.warning(f"{DEGRADED_ERROR}. Skipping analysis.")
                run_id = self.save_run({}, {}, None, "", self._elapsed_ms(start), error=DEGRADED_ERROR)
                self._record_run("degraded", start)
                return SentinelTickResult(status="degraded", run_id=run_id, error=DEGRADED_ERROR)

            state = self.daily_state.read()
            gate = TradeLimits.check(config.trading, state)
            directive = self.ceo.get_current_directive() if self.ceo else None
            system_prompt, user_prompt = build_sentinel_prompt(
                ctx,
                gate,
                state,
                config.trading,
                directive=directive,
                strategy_notes=config.sentinel.strategy_notes,
                timeframe=config.sentinel.timeframe,
            )

            logger.info("Running Sentinel analysis")
            text = self.model_client.generate(system_prompt, user_prompt, history_limit=0, tools_allowed=False)
            decision = parse_sentinel_output(text) if text else None

            run_id = self.save_run(
                {symbol: ind.to_dict() for symbol, ind in ctx.indicators.items()},
                ctx.portfolio,
                decision,
                text or "",
                self._elapsed_ms(start),
                model_used=self.model_client.model,
            )
            result = SentinelTickResult(status="ok", run_id=run_id, decision=decision)

            if decision is not None and gate.permitted:
                result.trades, result.failures = self.execute_actions(decision, config, run_id)
            elif decision is not None and decision.actions:
                logger.info(f"Trading gate closed ({gate.label}); {len(decision.actions)} action(s) not executed")

            if self.ceo is not None:
                result.escalation = self.ceo.maybe_escalate(ctx, config)

            self._notify_summary(decision, text, result)
            self._record_run("ok", start)
            return result

        except Exception as e:
            logger.error(f"Sentinel run failed: {e}", exc_info=True)
            run_id = None
            try:
                run_id = self.save_run({}, {}, None, "", self._elapsed_ms(start), error=str(e))
            except Exception as save_error:
                logger.error(f"Failed to record failed Sentinel run: {save_error}")
            self._notify(f"Run failed: {e}", AlertSeverity.WARNING)
            self._record_run("error", start)
            return SentinelTickResult(status="error", run_id=run_id, error=str(e))

    # ----- Stage 1: context -----

    def gather_context(self, config: AppConfig) -> SentinelContext:
        """
        Fetch every context input in parallel.

        Each fetch is fault tolerant: a failure is logged once and yields
        an empty value.
        """
        symbols = config.sentinel.symbols()
        coins = [s.split("/")[0] for s in symbols]
        enabled_sources = set(config.sentinel.sources)
        per_coin = config.sources.web_results_per_coin

        def web() -> List[WebSearchResult]:
            results = []
            for coin in coins:
                results.extend(self.sources.web_search(f"{coin} crypto sentiment analysis today", limit=per_coin))
            return results

        tasks: Dict[str, Callable[[], Any]] = {
            "portfolio": self.gateway.fetch_portfolio,
            "positions": lambda: self.ledger.get_open_position_summaries(self.gateway),
            "indicators": lambda: self.indicators.compute_all(
                symbols, config.sentinel.timeframe, config.sentinel.candle_limit
            ),
            "recent_trades": lambda: self.trade_log.get_recent_trades(RECENT_TRADES),
            "daily_stats": self.trade_log.get_daily_trade_stats,
        }
        if "web" in enabled_sources:
            tasks["web_results"] = web
        if "reddit" in enabled_sources:
            tasks["reddit"] = lambda: self.sources.fetch_reddit_sentiment(coins)
        if "news" in enabled_sources:
            tasks["news"] = lambda: self.sources.fetch_crypto_news(coins)

        defaults = SentinelContext()
        values: Dict[str, Any] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="sentinel-ctx") as pool:
            futures = {name: pool.submit(fn) for name, fn in tasks.items()}
            for name, future in futures.items():
                try:
                    values[name] = future.result()
                except Exception as e:
                    self._once.warning(f"Context fetch '{name}' failed: {e}")
                    values[name] = getattr(defaults, name)

        return SentinelContext(
            coin_list=symbols,
            previous_runs=self.get_recent_runs(PREVIOUS_RUNS),
            **values,
        )

    # ----- Stage 5: execution -----

    def execute_actions(self, decision: SentinelDecision, config: AppConfig, run_id: int):
        """
        Execute each non-hold action through the shared trade path.

        Returns:
            (executed trade descriptions, failure descriptions)
        """
        executed: List[str] = []
        failures: List[str] = []
        for action in decision.actions:
            if action.type == "hold":
                continue
            try:
                result = self.executor.execute(
                    action.symbol,
                    action.type,
                    config.trading,
                    amount=action.amount,
                    source="sentinel",
                    reasoning=action.reason,
                    sentinel_run_id=run_id,
                    quote=config.sentinel.quote_currency,
                )
            except Exception as e:
                logger.error(f"Sentinel trade {action.type} {action.symbol} failed: {e}")
                failures.append(f"{action.type.upper()} {action.symbol}: {e}")
                continue
            if result.success:
                executed.append(result.message)
            else:
                logger.info(f"Sentinel trade {action.type} {action.symbol} not executed: {result.message}")
        return executed, failures

    # ----- Run records -----

    def save_run(
        self,
        indicators: Dict[str, Any],
        portfolio: Dict[str, Any],
        decision: Optional[SentinelDecision],
        raw_text: str,
        duration_ms: int,
        error: Optional[str] = None,
        model_used: Optional[str] = None,
    ) -> int:
        """Append a run record; summary falls back to the first 1000 chars of raw text."""
        summary = decision.summary if decision and decision.summary else raw_text[:1000]
        with self.store.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sentinel_runs (
                    created_at, indicators, portfolio, sentiment, signals, actions,
                    summary, duration_ms, error, model_used
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    utc_now_iso(),
                    _json_or_none(indicators),
                    _json_or_none(portfolio),
                    _json_or_none(decision.sentiment if decision else None),
                    _json_or_none(decision.signals if decision else None),
                    _json_or_none([a.to_dict() for a in decision.actions] if decision else None),
                    summary,
                    duration_ms,
                    error,
                    model_used,
                ),
            )
            return cursor.lastrowid

    def get_recent_runs(self, limit: int = 20) -> List[SentinelRun]:
        with self.store.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM sentinel_runs ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [SentinelRun.from_row(r) for r in rows]

    def get_run(self, run_id: int) -> Optional[SentinelRun]:
        with self.store.connection() as conn:
            row = conn.execute("SELECT * FROM sentinel_runs WHERE id = ?", (run_id,)).fetchone()
        return SentinelRun.from_row(row) if row else None

    def get_runs_since(self, since: datetime) -> List[SentinelRun]:
        with self.store.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM sentinel_runs WHERE created_at >= ? ORDER BY created_at DESC, id DESC",
                (to_utc_iso(since),),
            ).fetchall()
        return [SentinelRun.from_row(r) for r in rows]

    # ----- Helpers -----

    def _notify_summary(self, decision: Optional[SentinelDecision], text: str, result: SentinelTickResult) -> None:
        message = (decision.summary if decision and decision.summary else text) or "Analysis complete"
        if result.trades:
            message += "\n\nTrades executed:\n" + "\n".join(f"- {t}" for t in result.trades)
        if result.failures:
            message += "\n\nTrades failed:\n" + "\n".join(f"- {f}" for f in result.failures)
        severity = AlertSeverity.WARNING if result.failures else AlertSeverity.INFO
        self._notify(message, severity)

    def _notify(self, message: str, severity: AlertSeverity) -> None:
        try:
            self.notifier.notify(f"[Sentinel] {message}", severity=severity)
        except Exception as e:
            logger.error(f"Sentinel notification failed: {e}")

    def _record_run(self, status: str, start: float) -> None:
        if self.metrics:
            self.metrics.record_sentinel_run(status, time.monotonic() - start)

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)

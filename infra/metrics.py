"""Prometheus-backed metrics hooks for the Guardian, Sentinel and CEO loops."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from prometheus_client import Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

_METRIC_PREFIXES = ("guardian_", "sentinel_", "ceo_", "trader_", "reasoning_")


class MetricsRecorder:
    """
    Expose loop stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    When disabled, every record_* call only updates the in-memory snapshot.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._counts: Dict[str, float] = {}
        self._guardian_failures = 0

        if not self._enabled:
            self._guardian_ticks = None
            self._guardian_failures_gauge = None
            self._protective_exits = None
            self._sentinel_runs = None
            self._sentinel_duration = None
            self._reasoning_latency = None
            self._trades = None
            self._ceo_briefings = None
            self._ceo_escalations = None
            self._open_positions = None
            return

        self._guardian_ticks = Counter(  # type: ignore[assignment]
            "guardian_ticks_total",
            "Guardian ticks by outcome",
            labelnames=("status",),
        )
        self._guardian_failures_gauge = Gauge(  # type: ignore[assignment]
            "guardian_consecutive_failures",
            "Consecutive Guardian ticks without exchange data",
        )
        self._protective_exits = Counter(  # type: ignore[assignment]
            "guardian_protective_exits_total",
            "Protective exits by reason and outcome",
            labelnames=("reason", "outcome"),
        )
        self._sentinel_runs = Counter(  # type: ignore[assignment]
            "sentinel_runs_total",
            "Sentinel runs by status",
            labelnames=("status",),
        )
        self._sentinel_duration = Summary(  # type: ignore[assignment]
            "sentinel_run_duration_seconds",
            "Duration of a full Sentinel run",
        )
        self._reasoning_latency = Summary(  # type: ignore[assignment]
            "reasoning_latency_seconds",
            "Latency of reasoning service calls",
            labelnames=("caller",),
        )
        self._trades = Counter(  # type: ignore[assignment]
            "trader_trades_executed_total",
            "Executed trades by source and side",
            labelnames=("source", "side"),
        )
        self._ceo_briefings = Counter(  # type: ignore[assignment]
            "ceo_briefings_total",
            "CEO briefings by trigger and outcome",
            labelnames=("trigger", "outcome"),
        )
        self._ceo_escalations = Counter(  # type: ignore[assignment]
            "ceo_escalations_total",
            "Escalations raised by the Sentinel",
        )
        self._open_positions = Gauge(  # type: ignore[assignment]
            "trader_open_positions",
            "Number of currently open positions",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._enabled:
            from prometheus_client import REGISTRY
            collectors_to_remove = []
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(_METRIC_PREFIXES) for name in names):
                    collectors_to_remove.append(collector)
            for collector in collectors_to_remove:
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def _bump(self, key: str, amount: float = 1.0) -> None:
        self._counts[key] = self._counts.get(key, 0.0) + amount

    def snapshot(self) -> Dict[str, float]:
        """In-memory counters (available even when Prometheus is disabled)."""
        data = dict(self._counts)
        data["guardian_consecutive_failures"] = self._guardian_failures
        return data

    def record_guardian_tick(self, status: str, consecutive_failures: int = 0) -> None:
        self._bump(f"guardian_tick:{status}")
        self._guardian_failures = consecutive_failures
        if self._enabled and self._guardian_ticks:
            self._guardian_ticks.labels(status=status).inc()
            self._guardian_failures_gauge.set(consecutive_failures)

    def record_protective_exit(self, reason: str, outcome: str) -> None:
        self._bump(f"protective_exit:{reason}:{outcome}")
        if self._enabled and self._protective_exits:
            self._protective_exits.labels(reason=reason, outcome=outcome).inc()

    def record_sentinel_run(self, status: str, duration_seconds: Optional[float] = None) -> None:
        self._bump(f"sentinel_run:{status}")
        if self._enabled and self._sentinel_runs:
            self._sentinel_runs.labels(status=status).inc()
            if duration_seconds is not None:
                self._sentinel_duration.observe(duration_seconds)

    def record_reasoning_latency(self, caller: str, seconds: float) -> None:
        self._bump(f"reasoning_calls:{caller}")
        if self._enabled and self._reasoning_latency:
            self._reasoning_latency.labels(caller=caller).observe(seconds)

    def record_trade(self, source: str, side: str) -> None:
        self._bump(f"trade:{source}:{side}")
        if self._enabled and self._trades:
            self._trades.labels(source=source, side=side).inc()

    def record_ceo_briefing(self, trigger: str, outcome: str) -> None:
        self._bump(f"ceo_briefing:{trigger}:{outcome}")
        if self._enabled and self._ceo_briefings:
            self._ceo_briefings.labels(trigger=trigger, outcome=outcome).inc()

    def record_ceo_escalation(self) -> None:
        self._bump("ceo_escalation")
        if self._enabled and self._ceo_escalations:
            self._ceo_escalations.inc()

    def record_open_positions(self, count: int) -> None:
        self._counts["open_positions"] = count
        if self._enabled and self._open_positions:
            self._open_positions.set(count)

"""
crypto-sentinel Runner: Main Loop

Owns the long-lived service objects and schedules the three loops:

- Guardian: fast SL/TP enforcement (no AI)
- Sentinel: periodic reasoning-assisted analysis and trading
- CEO: hourly check for the daily directive briefing

plus a daily retention cleanup. Each loop runs on its own thread and never
starts a tick while its previous tick is unfinished.
"""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Callable, List, Optional

from ai.model_client import ModelClient, create_model_client
from analytics.trade_log import TradeLog
from core.ceo import CEOOverlay
from core.daily_state import DailyRiskState
from core.exchange import ExchangeGateway
from core.execution import TradeExecutor
from core.guardian import Guardian
from core.indicators import IndicatorService
from core.position_manager import PositionLedger
from core.sentinel import Sentinel
from core.sources import SentimentSources
from infra.alerting import AlertService
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore
from tools.config_validator import AppConfig, ConfigSource, validate_all_configs

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 24 * 3600


class PeriodicLoop:
    """
    Runs tick() on a daemon thread every interval_fn() seconds.

    The interval is re-evaluated after each tick so config edits apply at
    the next wait. A tick that would overlap a running one is skipped.
    stop() lets an in-flight tick finish.
    """

    def __init__(
        self,
        name: str,
        interval_fn: Callable[[], float],
        tick: Callable[[], object],
        initial_delay: float = 0.0,
    ):
        self.name = name
        self.interval_fn = interval_fn
        self.tick = tick
        self.initial_delay = initial_delay
        self.ticks = 0
        self._stop = threading.Event()
        self._running = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"loop-{self.name}", daemon=True)
        self._thread.start()
        logger.info(f"{self.name} loop started (first tick in {self.initial_delay:.0f}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        logger.info(f"{self.name} loop stopped")

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> bool:
        """Run one guarded tick; False when skipped because one is in flight."""
        if not self._running.acquire(blocking=False):
            logger.info(f"{self.name} tick still in progress, skipping")
            return False
        try:
            self.tick()
            self.ticks += 1
        except Exception as e:
            logger.error(f"{self.name} tick failed: {e}", exc_info=True)
        finally:
            self._running.release()
        return True

    def _run(self) -> None:
        if self._stop.wait(self.initial_delay):
            return
        while not self._stop.is_set():
            self.run_once()
            try:
                interval = max(1.0, float(self.interval_fn()))
            except Exception as e:
                logger.error(f"{self.name} interval lookup failed, using 60s: {e}")
                interval = 60.0
            if self._stop.wait(interval):
                break


class TradingService:
    """
    Single owner of shared state: gateway client cache, store, ledger,
    daily risk state (and its lock), notifier, metrics and model clients.
    """

    def __init__(
        self,
        config_dir: str = "config",
        config: Optional[AppConfig] = None,
        gateway: Optional[ExchangeGateway] = None,
        sentinel_client: Optional[ModelClient] = None,
        ceo_client: Optional[ModelClient] = None,
        notifier: Optional[AlertService] = None,
    ):
        self.config_source = ConfigSource(config_dir, initial=config)
        config = config or self.config_source.load()

        self.metrics = MetricsRecorder(enabled=config.monitoring.metrics_enabled, port=config.monitoring.metrics_port)
        self.store = StateStore(config.storage.db_path)
        self.gateway = gateway or ExchangeGateway(config.exchange)
        self.ledger = PositionLedger(self.store)
        self.trade_log = TradeLog(self.store)
        self.daily_state = DailyRiskState(self.store)
        self.notifier = notifier or AlertService.from_config(config.notifications.model_dump())
        self.executor = TradeExecutor(self.gateway, self.ledger, self.trade_log, self.daily_state, self.metrics)

        self.guardian = Guardian(
            self.gateway,
            self.ledger,
            self.trade_log,
            self.daily_state,
            self.notifier,
            metrics=self.metrics,
            failure_threshold=config.guardian.failure_alert_threshold,
        )

        self.sentinel_client = sentinel_client or self._build_client(config, config.ai.sentinel_model, "sentinel")
        self.ceo_client = ceo_client or self._build_client(config, config.ai.ceo_model, "ceo")

        self.sentinel = Sentinel(
            self.config_source,
            self.gateway,
            IndicatorService(self.gateway),
            self.ledger,
            self.trade_log,
            self.daily_state,
            self.executor,
            SentimentSources(config.sources),
            self.sentinel_client,
            self.notifier,
            self.store,
            metrics=self.metrics,
        )
        self.ceo = CEOOverlay(
            self.config_source,
            self.sentinel,
            self.trade_log,
            self.ledger,
            self.daily_state,
            self.ceo_client,
            self.notifier,
            self.store,
            metrics=self.metrics,
        )
        self.sentinel.ceo = self.ceo
        self.loops: List[PeriodicLoop] = []

    def _build_client(self, config: AppConfig, model: str, caller: str) -> ModelClient:
        return create_model_client(
            config.ai.provider,
            api_key=config.ai.api_key(),
            model=model,
            timeout=config.ai.timeout_seconds,
            max_tokens=config.ai.max_tokens,
            base_url=config.ai.base_url,
            metrics=self.metrics,
            caller=caller,
        )

    def _refresh(self) -> AppConfig:
        config = self.config_source.load()
        self.gateway.configure(config.exchange)
        return config

    # ----- Ticks -----

    def guardian_tick(self):
        config = self._refresh()
        if not config.guardian.enabled:
            return None
        self.guardian.failure_threshold = config.guardian.failure_alert_threshold
        return self.guardian.tick()

    def sentinel_tick(self, force: bool = False):
        self._refresh()
        return self.sentinel.tick(force=force)

    def ceo_tick(self):
        self._refresh()
        return self.ceo.scheduled_check()

    def cleanup_tick(self):
        config = self.config_source.load()
        removed = self.store.cleanup_old_records(
            run_days=config.storage.sentinel_run_retention_days,
            trade_days=config.storage.trade_retention_days,
        )
        logger.info(f"Retention cleanup: {removed}")
        return removed

    def run_once(self, component: str):
        if component == "guardian":
            return self.guardian_tick()
        if component == "sentinel":
            return self.sentinel_tick(force=True)
        if component == "ceo":
            return self.ceo.run_briefing("manual")
        raise ValueError(f"Unknown component: {component}")

    # ----- Lifecycle -----

    def start(self) -> None:
        config = self.config_source.load()
        self.metrics.start()
        logger.info(
            f"Starting crypto-sentinel (exchange={config.exchange.id}, sandbox={config.exchange.sandbox}, "
            f"trading={'on' if config.trading.enabled else 'off'})"
        )

        if config.guardian.enabled:
            self.loops.append(PeriodicLoop(
                "guardian",
                lambda: self.config_source.load().guardian.interval_seconds,
                self.guardian_tick,
            ))
        if config.sentinel.enabled:
            self.loops.append(PeriodicLoop(
                "sentinel",
                lambda: self.config_source.load().sentinel.interval_minutes * 60,
                self.sentinel_tick,
                initial_delay=config.sentinel.initial_delay_seconds,
            ))
        if config.ceo.enabled:
            self.loops.append(PeriodicLoop(
                "ceo",
                lambda: self.config_source.load().ceo.check_interval_minutes * 60,
                self.ceo_tick,
                initial_delay=config.ceo.initial_delay_seconds,
            ))
        self.loops.append(PeriodicLoop(
            "cleanup", lambda: CLEANUP_INTERVAL_SECONDS, self.cleanup_tick, initial_delay=60.0
        ))

        for loop in self.loops:
            loop.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        logger.warning("Stopping crypto-sentinel loops")
        for loop in self.loops:
            loop.stop(timeout)
        self.loops = []


def setup_logging(config: AppConfig) -> None:
    log_path = Path(config.logging.file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_path), logging.StreamHandler()],
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    parser = argparse.ArgumentParser(description="crypto-sentinel trading service")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument(
        "--once", choices=["guardian", "sentinel", "ceo"], help="Run one tick of a component and exit"
    )
    parser.add_argument("--validate-config", action="store_true", help="Validate config and exit")
    args = parser.parse_args(argv)

    if args.validate_config:
        errors = validate_all_configs(args.config_dir)
        for error in errors:
            print(f"❌ {error}")
        if not errors:
            print("✅ Configuration valid")
        return 1 if errors else 0

    errors = validate_all_configs(args.config_dir)
    if errors:
        for idx, error in enumerate(errors, start=1):
            print(f"{idx:>2}. {error}", file=sys.stderr)
        return 1

    config = ConfigSource(args.config_dir).load()
    setup_logging(config)
    service = TradingService(config_dir=args.config_dir, config=config)

    if args.once:
        result = service.run_once(args.once)
        logger.info(f"{args.once} tick result: {result}")
        return 0

    stopped = threading.Event()

    def _handle_stop(*_):
        logger.warning("Shutdown signal received")
        stopped.set()

    signal.signal(signal.SIGINT, _handle_stop)
    signal.signal(signal.SIGTERM, _handle_stop)

    service.start()
    stopped.wait()
    service.stop()
    logger.info("crypto-sentinel stopped cleanly")
    return 0


if __name__ == "__main__":
    sys.exit(main())

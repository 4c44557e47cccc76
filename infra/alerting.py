"""Notification helpers for webhook/Telegram delivery."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Set

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"
MAX_MESSAGE_CHARS = 4000


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()

    @classmethod
    def from_string(cls, value: str, default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        if not value:
            return default or cls.INFO
        normalized = value.strip().lower()
        for member in cls:
            if member.name.lower() == normalized:
                return member
        return default or cls.INFO


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    telegram_token: Optional[str]
    telegram_chat_id: Optional[str]
    min_severity: AlertSeverity
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 60.0  # Suppress identical messages within 60s


class OnceLogger:
    """
    Log each distinct message once per owner.

    Used for transient I/O failures that would otherwise repeat every tick.
    The set is bounded; when full it is cleared and messages may log again.
    """

    MAX_ENTRIES = 500

    def __init__(self, target: logging.Logger):
        self._logger = target
        self._seen: Set[str] = set()
        self._lock = threading.Lock()

    def _first(self, message: str) -> bool:
        with self._lock:
            if message in self._seen:
                return False
            if len(self._seen) >= self.MAX_ENTRIES:
                self._seen.clear()
            self._seen.add(message)
            return True

    def warning(self, message: str) -> None:
        if self._first(message):
            self._logger.warning(message)

    def error(self, message: str) -> None:
        if self._first(message):
            self._logger.error(message)

    def reset(self) -> None:
        with self._lock:
            self._seen.clear()


class AlertService:
    """
    Send user notifications for trading events.

    Best-effort: delivery failures are logged and never raised to callers.
    Disabled or unconfigured services are a silent no-op.
    """

    def __init__(self, config: AlertConfig) -> None:
        self._config = config
        has_channel = bool(config.webhook_url or (config.telegram_token and config.telegram_chat_id))
        self._enabled = bool(config.enabled and (has_channel or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Notifications enabled but no webhook or Telegram chat configured; disabling")
        self._recent: Dict[str, float] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        raw_config = raw_config or {}

        webhook_url = raw_config.get("webhook_url")
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)
        if not webhook_url:
            webhook_url = os.getenv(raw_config.get("webhook_env", "ALERT_WEBHOOK_URL"), "")

        token = os.getenv(raw_config.get("telegram_bot_token_env", "TELEGRAM_BOT_TOKEN"), "")

        config = AlertConfig(
            enabled=bool(raw_config.get("enabled", False)),
            webhook_url=webhook_url or None,
            telegram_token=token or None,
            telegram_chat_id=raw_config.get("telegram_chat_id") or None,
            min_severity=AlertSeverity.from_string(raw_config.get("min_severity", "info")),
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 60.0)),
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(
        self,
        message: str,
        severity: AlertSeverity = AlertSeverity.INFO,
        title: Optional[str] = None,
    ) -> bool:
        """
        Deliver a message to every configured channel.

        Returns:
            True if at least one channel accepted the message
        """
        if not self._enabled:
            return False
        if severity.value < self._config.min_severity.value:
            return False

        text = f"{title}\n{message}" if title else message
        if len(text) > MAX_MESSAGE_CHARS:
            text = text[: MAX_MESSAGE_CHARS - 3] + "..."

        if self._is_duplicate(text):
            logger.debug(f"Notification deduped: {text[:60]}")
            return False

        if self._config.dry_run:
            logger.info("[NOTIFY:%s] %s", severity.name, text)
            return True

        delivered = False
        if self._config.webhook_url:
            delivered |= self._post_json(
                self._config.webhook_url,
                {"text": text, "severity": str(severity)},
            )
        if self._config.telegram_token and self._config.telegram_chat_id:
            delivered |= self._post_json(
                f"{TELEGRAM_API}/bot{self._config.telegram_token}/sendMessage",
                {"chat_id": self._config.telegram_chat_id, "text": text},
            )
        return delivered

    def _is_duplicate(self, text: str) -> bool:
        fingerprint = hashlib.sha256(text.encode("utf-8")).hexdigest()
        now = time.monotonic()
        with self._lock:
            self._recent = {
                fp: seen for fp, seen in self._recent.items()
                if now - seen <= self._config.dedupe_seconds
            }
            if fingerprint in self._recent:
                return True
            self._recent[fingerprint] = now
            return False

    def _post_json(self, url: str, payload: Dict[str, Any]) -> bool:
        request = urllib.request.Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    logger.error("Notification rejected with HTTP %s", response.status)
                    return False
                return True
        except (urllib.error.URLError, urllib.error.HTTPError, socket.timeout) as exc:
            logger.error("Failed to deliver notification: %s", exc)
            return False


__all__ = ["AlertService", "AlertSeverity", "OnceLogger"]

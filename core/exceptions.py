"""Shared exception types for core trading logic."""

from typing import Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class ConfigurationError(RuntimeError):
    """Missing credentials, unknown exchange id, or otherwise unusable settings."""


class SandboxActivationError(ConfigurationError):
    """Sandbox mode was requested but could not be activated or verified."""

    def __init__(self, exchange_id: str, reason: str):
        super().__init__(f"Sandbox activation failed for {exchange_id}: {reason}")
        self.exchange_id = exchange_id
        self.reason = reason


class InsufficientData(ValueError):
    """Not enough candles to compute indicators."""

    def __init__(self, symbol: str, available: int, required: int):
        super().__init__(f"{symbol}: {available} candles available, {required} required")
        self.symbol = symbol
        self.available = available
        self.required = required


class OrderExecutionError(RuntimeError):
    """Order was rejected, canceled or expired by the exchange."""

    def __init__(self, symbol: str, message: str, order_id: Optional[str] = None):
        super().__init__(f"{symbol}: {message}")
        self.symbol = symbol
        self.order_id = order_id


class PositionConflictError(RuntimeError):
    """An open position already exists for the symbol."""

"""Test helpers for crypto-sentinel test suite"""

from tests.helpers.exchange_stubs import StaticConfigSource, make_candles, make_exchange_client

__all__ = ["StaticConfigSource", "make_candles", "make_exchange_client"]

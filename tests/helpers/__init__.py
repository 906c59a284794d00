"""Test helpers for the turntrader test suite"""

from tests.helpers.exchange_stubs import (
    BASE_OPEN_TIME,
    CLOSE_TIME,
    INTERVAL_MS,
    FakeExchange,
    PagedKlineSource,
    make_candle,
    make_series,
)

__all__ = [
    "BASE_OPEN_TIME",
    "CLOSE_TIME",
    "INTERVAL_MS",
    "FakeExchange",
    "PagedKlineSource",
    "make_candle",
    "make_series",
]

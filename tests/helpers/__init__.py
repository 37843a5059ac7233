"""Test helpers for perptrader test suite"""

from tests.helpers.exchange_stubs import (
    FakeExchange,
    FrozenClock,
    make_candles,
    flat_candles,
    trending_closes,
)

__all__ = [
    "FakeExchange",
    "FrozenClock",
    "make_candles",
    "flat_candles",
    "trending_closes",
]

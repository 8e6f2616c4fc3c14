"""Test helpers for levelbounce test suite"""

from tests.helpers.exchange_stubs import (
    FakeExchange,
    FakeLevelAnalyzer,
    make_candles,
    make_levels,
    make_position,
    resting_order,
)

__all__ = [
    "FakeExchange",
    "FakeLevelAnalyzer",
    "make_candles",
    "make_levels",
    "make_position",
    "resting_order",
]

"""
levelbounce Core: Level Analysis

Produces the multi-timeframe support ("hold") / resistance snapshot the
engine trades against. The engine only depends on the LevelAnalyzer
contract; SwingLevelAnalyzer is the default producer, built on confirmed
swing pivots in each timeframe's recent candles.
"""

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.exchange import Candle, Exchange
from core.models import TIMEFRAMES, LevelAnalysis, PriceLevel, fixed_number

logger = logging.getLogger(__name__)

CANDLE_LIMITS = {"4h": 80, "1h": 320, "15m": 1280, "5m": 3840}

TIMEFRAME_MS = {
    "4h": 4 * 60 * 60 * 1000,
    "1h": 60 * 60 * 1000,
    "15m": 15 * 60 * 1000,
    "5m": 5 * 60 * 1000,
}

MAX_CANDLES_PER_REQUEST = 1500


class LevelAnalyzer(ABC):
    @abstractmethod
    def analyze_levels(self, symbol: str) -> LevelAnalysis:
        ...


def find_pivot_lows(candles: List[Candle], window: int = 2) -> List[Candle]:
    pivots: List[Candle] = []
    for idx in range(window, len(candles) - window):
        low_value = candles[idx].low
        if all(low_value <= candles[idx - offset].low for offset in range(1, window + 1)) and \
           all(low_value < candles[idx + offset].low for offset in range(1, window + 1)):
            pivots.append(candles[idx])
    return pivots


def find_pivot_highs(candles: List[Candle], window: int = 2) -> List[Candle]:
    pivots: List[Candle] = []
    for idx in range(window, len(candles) - window):
        high_value = candles[idx].high
        if all(high_value >= candles[idx - offset].high for offset in range(1, window + 1)) and \
           all(high_value > candles[idx + offset].high for offset in range(1, window + 1)):
            pivots.append(candles[idx])
    return pivots


def merge_levels(levels: List[PriceLevel], tolerance: float, max_levels: int) -> List[PriceLevel]:
    """
    Collapse levels within `tolerance` (relative) of one another.

    Input is expected most-recent-first; the most recent touch of a zone is kept.
    """
    merged: List[PriceLevel] = []
    for level in levels:
        if any(abs(level.price - kept.price) / kept.price <= tolerance for kept in merged):
            continue
        merged.append(level)
        if len(merged) >= max_levels:
            break
    return merged


class SwingLevelAnalyzer(LevelAnalyzer):
    """
    Swing-pivot support/resistance per timeframe.

    Config keys (the `levels` section):
        swing_window: candles on each side a pivot must dominate (default 2)
        merge_tolerance: relative distance under which pivots are one level (default 0.001)
        max_levels_per_timeframe: cap per list (default 10)
        candle_limits: {timeframe: candles} overrides
    """

    def __init__(self, exchange: Exchange, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.exchange = exchange
        self.window = int(config.get("swing_window", 2))
        self.merge_tolerance = float(config.get("merge_tolerance", 0.001))
        self.max_levels = int(config.get("max_levels_per_timeframe", 10))
        self.candle_limits = dict(CANDLE_LIMITS)
        self.candle_limits.update(config.get("candle_limits") or {})

    def analyze_levels(self, symbol: str) -> LevelAnalysis:
        analysis = LevelAnalysis(timestamp=datetime.now(timezone.utc))
        for timeframe in TIMEFRAMES:
            candles = self._fetch_candles(symbol, timeframe, int(self.candle_limits[timeframe]))
            analysis.hold[timeframe] = self._levels(find_pivot_lows(candles, self.window), "low")
            analysis.resistance[timeframe] = self._levels(find_pivot_highs(candles, self.window), "high")
            logger.debug(
                f"{symbol} {timeframe}: {len(candles)} candles -> "
                f"{len(analysis.hold[timeframe])} supports, {len(analysis.resistance[timeframe])} resistances"
            )
        logger.info(
            f"Level analysis for {symbol}: {len(analysis.supports())} supports, "
            f"{len(analysis.resistances())} resistances"
        )
        return analysis

    def _levels(self, pivots: List[Candle], attr: str) -> List[PriceLevel]:
        levels = [
            PriceLevel(price=fixed_number(getattr(c, attr)), time=c.timestamp)
            for c in reversed(pivots)
        ]
        return merge_levels(levels, self.merge_tolerance, self.max_levels)

    def _fetch_candles(self, symbol: str, timeframe: str, limit: int) -> List[Candle]:
        """Fetch the most recent `limit` candles, paging past the per-request cap."""
        if limit <= MAX_CANDLES_PER_REQUEST:
            return self.exchange.fetch_ohlcv(symbol, timeframe, limit=limit)

        step = TIMEFRAME_MS[timeframe]
        since = int(time.time() * 1000) - limit * step
        candles: List[Candle] = []
        while len(candles) < limit:
            batch = self.exchange.fetch_ohlcv(
                symbol, timeframe, since=since, limit=min(MAX_CANDLES_PER_REQUEST, limit - len(candles))
            )
            if not batch:
                break
            candles.extend(batch)
            since = int(batch[-1].timestamp.timestamp() * 1000) + step
        return candles[-limit:]

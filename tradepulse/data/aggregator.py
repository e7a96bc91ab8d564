"""
Candle Aggregator - bounded one-minute candle series for one symbol.

Accepts raw price ticks (polling, simulation) and pre-formed exchange
klines. Only the last candle (the live bucket) is ever modified in place;
anything older than the live bucket is ignored so the series stays
ascending and duplicate-free.
"""

from __future__ import annotations

from collections import deque
from typing import Callable, Deque, Iterable, List, Optional

import numpy as np

from tradepulse.core.logger import get_logger
from tradepulse.data.models import Candle, bucket_of

logger = get_logger("aggregator")

CandleListener = Callable[[Candle], None]
HistoryListener = Callable[[List[Candle]], None]


class CandleAggregator:
    """Maintains the last ``max_candles`` candles of a symbol.

    Every mutation (merge or append) emits exactly one ``on_candle`` event
    carrying a copy of the affected candle.
    """

    def __init__(
        self,
        symbol: str,
        max_candles: int = 50,
        on_candle: Optional[CandleListener] = None,
        on_history: Optional[HistoryListener] = None,
    ):
        self.symbol = symbol
        self.max_candles = max_candles
        self._candles: Deque[Candle] = deque(maxlen=max_candles)
        self._on_candle = on_candle
        self._on_history = on_history
        self._seeded = False
        self.updates = 0

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def apply_tick(self, price: float, timestamp_ms: float, volume_delta: float = 0.0) -> bool:
        """Fold a price tick into its minute bucket. Returns True on mutation."""
        if not price or price <= 0:
            return False
        bucket = bucket_of(timestamp_ms)
        last = self._candles[-1] if self._candles else None

        if last is not None and last.time == bucket:
            last.close = price
            last.high = max(last.high, price)
            last.low = min(last.low, price)
            last.volume += max(0.0, volume_delta)
            self._emit(last)
            return True

        if last is not None and bucket < last.time:
            logger.debug("Stale tick dropped", symbol=self.symbol, bucket=bucket, live=last.time)
            return False

        candle = Candle.flat(bucket, price, max(0.0, volume_delta))
        self._candles.append(candle)
        self._emit(candle)
        return True

    def apply_candle(self, candle: Candle) -> bool:
        """Merge an exchange kline into the series. Returns True on mutation."""
        if candle.close <= 0:
            return False
        bucket = bucket_of(candle.time)
        last = self._candles[-1] if self._candles else None

        if last is not None and last.time == bucket:
            last.close = candle.close
            last.high = max(last.high, candle.high)
            last.low = min(last.low, candle.low)
            # Kline volume is cumulative for the bucket
            last.volume = candle.volume
            self._emit(last)
            return True

        if last is not None and bucket < last.time:
            logger.debug("Stale kline dropped", symbol=self.symbol, bucket=bucket, live=last.time)
            return False

        fresh = Candle(bucket, candle.open, candle.high, candle.low, candle.close, candle.volume)
        self._candles.append(fresh)
        self._emit(fresh)
        return True

    def seed(self, history: Iterable[Candle]) -> int:
        """Merge a backfilled history under the live candles.

        Live candles win on conflicting buckets. Emits ``on_history`` once
        with the resulting window. Returns the resulting series length.
        """
        merged = {}
        for row in history:
            if row.close <= 0:
                continue
            bucket = bucket_of(row.time)
            merged[bucket] = Candle(bucket, row.open, row.high, row.low, row.close, row.volume)
        for live in self._candles:
            merged[live.time] = live

        ordered = [merged[t] for t in sorted(merged)]
        self._candles = deque(ordered[-self.max_candles:], maxlen=self.max_candles)
        self._seeded = True

        if self._on_history:
            try:
                self._on_history(self.candles)
            except Exception as e:
                logger.error("History listener error", symbol=self.symbol, error=repr(e))
        return len(self._candles)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def candles(self) -> List[Candle]:
        """Copy of the series, oldest first."""
        return [c.copy() for c in self._candles]

    @property
    def last(self) -> Optional[Candle]:
        return self._candles[-1].copy() if self._candles else None

    @property
    def is_seeded(self) -> bool:
        return self._seeded

    def closes(self) -> np.ndarray:
        return np.array([c.close for c in self._candles], dtype=float)

    def __len__(self) -> int:
        return len(self._candles)

    def _emit(self, candle: Candle) -> None:
        self.updates += 1
        if self._on_candle is None:
            return
        try:
            self._on_candle(candle.copy())
        except Exception as e:
            logger.error("Candle listener error", symbol=self.symbol, error=repr(e))

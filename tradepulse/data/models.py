"""
Market data and signal models.

Candles carry millisecond timestamps aligned to the minute bucket; a
series of them is kept by ``CandleAggregator``. Predictions are advisory
only and never trigger orders.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

CANDLE_INTERVAL_MS = 60_000


def bucket_of(timestamp_ms: float) -> int:
    """Start of the one-minute bucket containing ``timestamp_ms``."""
    return int(timestamp_ms // CANDLE_INTERVAL_MS) * CANDLE_INTERVAL_MS


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Candle:
    """One OHLCV bar for a one-minute bucket."""
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @classmethod
    def flat(cls, time_ms: int, price: float, volume: float = 0.0) -> "Candle":
        """Degenerate candle (O=H=L=C) used for price ticks."""
        return cls(time=time_ms, open=price, high=price, low=price, close=price, volume=volume)

    def copy(self) -> "Candle":
        return Candle(self.time, self.open, self.high, self.low, self.close, self.volume)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "time": self.time,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


@dataclass(frozen=True)
class Asset:
    """Static instrument descriptor. Loaded once, never mutated."""
    symbol: str
    name: str
    category: str
    payout_percent: int
    initial_price: float
    is_simulated: bool = False


class SignalType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    WAIT = "WAIT"
    NEUTRAL = "NEUTRAL"


@dataclass(frozen=True)
class MacdValues:
    macd_line: float = 0.0
    signal_line: float = 0.0
    histogram: float = 0.0


@dataclass(frozen=True)
class Indicators:
    rsi: float = 0.0
    macd: MacdValues = field(default_factory=MacdValues)
    sma: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rsi": round(self.rsi, 4),
            "macd": {
                "macd_line": self.macd.macd_line,
                "signal_line": self.macd.signal_line,
                "histogram": self.macd.histogram,
            },
            "sma": self.sma,
        }


@dataclass
class Prediction:
    probability: int
    signal: SignalType
    rationale: str
    timestamp: int = 0

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = now_ms()
        self.probability = max(0, min(100, int(self.probability)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "probability": self.probability,
            "signal": self.signal.value,
            "rationale": self.rationale,
            "timestamp": self.timestamp,
        }


@dataclass
class ScanResult:
    asset: Asset
    prediction: Prediction
    indicators: Indicators
    price: float
    source: Optional[str] = None

    @property
    def is_available(self) -> bool:
        return self.prediction.probability > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.asset.symbol,
            "name": self.asset.name,
            "category": self.asset.category,
            "price": self.price,
            "source": self.source,
            "prediction": self.prediction.to_dict(),
            "indicators": self.indicators.to_dict(),
        }


@dataclass
class ScanReport:
    """Outcome of one full scan cycle."""
    results: List[ScanResult]
    ranked: List[ScanResult]
    started_at: float
    duration_ms: float = 0.0

    @property
    def failures(self) -> int:
        return sum(1 for r in self.results if not r.is_available)

    def opportunities(self, threshold: int = 80) -> List[ScanResult]:
        """Ranked results whose confidence clears the display threshold."""
        return [r for r in self.ranked if r.prediction.probability >= threshold]

"""
Technical indicator math over a candle window.

Pure functions on numpy arrays; ``analyze_market`` recomputes everything
from scratch on every call, there is no incremental state.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from tradepulse.data.models import Candle, Indicators, MacdValues


def calculate_rsi(closes, period: int = 14) -> float:
    """Simple-average RSI over the last ``period`` changes.

    Returns 50 when there is not enough data and 100 when there were no
    losses in the window.
    """
    prices = np.asarray(closes, dtype=float)
    if prices.size < period + 1:
        return 50.0
    diffs = np.diff(prices[-(period + 1):])
    gains = diffs[diffs >= 0].sum()
    losses = -diffs[diffs < 0].sum()
    if losses == 0:
        return 100.0
    rs = (gains / period) / (losses / period)
    return float(100.0 - (100.0 / (1.0 + rs)))


def calculate_ema(values, period: int) -> np.ndarray:
    """EMA series seeded with the first value."""
    arr = np.asarray(values, dtype=float)
    if arr.size == 0:
        return arr
    k = 2.0 / (period + 1)
    out = np.empty_like(arr)
    out[0] = arr[0]
    for i in range(1, arr.size):
        out[i] = arr[i] * k + out[i - 1] * (1 - k)
    return out


def calculate_macd(closes, fast: int = 12, slow: int = 26, signal: int = 9) -> MacdValues:
    prices = np.asarray(closes, dtype=float)
    if prices.size < slow:
        return MacdValues(0.0, 0.0, 0.0)
    macd_line = calculate_ema(prices, fast) - calculate_ema(prices, slow)
    signal_line = calculate_ema(macd_line, signal)
    current_macd = float(macd_line[-1])
    current_signal = float(signal_line[-1])
    return MacdValues(
        macd_line=current_macd,
        signal_line=current_signal,
        histogram=current_macd - current_signal,
    )


def calculate_sma(closes, period: int = 20) -> float:
    prices = np.asarray(closes, dtype=float)
    if prices.size == 0:
        return 0.0
    return float(prices[-period:].mean())


def analyze_market(candles: Sequence[Candle]) -> Indicators:
    closes = np.array([c.close for c in candles], dtype=float)
    return Indicators(
        rsi=calculate_rsi(closes),
        macd=calculate_macd(closes),
        sma=calculate_sma(closes),
    )

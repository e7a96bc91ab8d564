"""
Deterministic local rule table.

Serves the scanner on every cycle and the signal engine whenever no
remote predictor is configured. First matching row wins.
"""

from __future__ import annotations

import math
from typing import Optional

from tradepulse.core.config import RuleThresholds
from tradepulse.data.models import Indicators, Prediction, SignalType

NOISE_RATIONALE = "Noise: Market conditions unclear"


def local_prediction(
    indicators: Indicators,
    rules: Optional[RuleThresholds] = None,
    prefix: str = "",
) -> Prediction:
    r = rules or RuleThresholds()
    rsi = indicators.rsi
    hist = indicators.macd.histogram
    macd = indicators.macd.macd_line
    signal = indicators.macd.signal_line

    if rsi < r.extreme_oversold_rsi and hist > 0:
        result = (
            SignalType.BUY,
            r.extreme_probability,
            f"CRITICAL: RSI Oversold ({rsi:.2f}) + Bullish Divergence",
        )
    elif rsi > r.extreme_overbought_rsi and hist < 0:
        result = (
            SignalType.SELL,
            r.extreme_probability,
            f"CRITICAL: RSI Overbought ({rsi:.2f}) + Bearish Divergence",
        )
    elif r.trend_buy_rsi_low < rsi < r.trend_buy_rsi_high and hist > 0 and macd > signal:
        result = (SignalType.BUY, r.trend_probability, "Trend: Bullish momentum continuation")
    elif r.trend_sell_rsi_low < rsi < r.trend_sell_rsi_high and hist < 0 and macd < signal:
        result = (SignalType.SELL, r.trend_probability, "Trend: Bearish momentum continuation")
    else:
        # Low-confidence WAIT that still scales a little with momentum
        noise = math.floor(min(r.noise_floor + abs(hist) * r.noise_scale, r.noise_cap))
        result = (SignalType.WAIT, noise, NOISE_RATIONALE)

    sig, probability, rationale = result
    return Prediction(probability=probability, signal=sig, rationale=f"{prefix}{rationale}")

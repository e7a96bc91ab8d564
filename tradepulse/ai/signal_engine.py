"""
Signal Engine - single-symbol prediction with cache, timeout and fallback.

``predict`` never raises: every remote failure comes back as a WAIT result
with probability 0 and the failure kind embedded in the rationale.
"""

from __future__ import annotations

import asyncio
import time
from typing import Dict, Optional, Protocol, Tuple

from tradepulse.ai.gemini import (
    GeminiPredictor,
    PredictionErrorKind,
    PredictorError,
    StreamCallback,
)
from tradepulse.ai.rules import local_prediction
from tradepulse.core.config import PredictorConfig
from tradepulse.core.logger import get_logger
from tradepulse.data.models import Indicators, Prediction, SignalType

logger = get_logger("signal_engine")

OFFLINE_PREFIX = "[OFFLINE MODE] "
CACHED_PREFIX = "(Cached Result) "


class RemotePredictor(Protocol):
    async def predict(
        self,
        symbol: str,
        price: float,
        indicators: Indicators,
        on_stream: Optional[StreamCallback] = None,
    ) -> Prediction:
        ...


def failure_prediction(kind: PredictionErrorKind, detail: str = "") -> Prediction:
    rationale = f"[{kind.value}] System Alert: Analysis timed out or failed"
    if detail:
        rationale += f" ({detail})"
    return Prediction(probability=0, signal=SignalType.WAIT, rationale=rationale)


class SignalEngine:
    """Routes predictions to the remote predictor or the local rule table."""

    def __init__(
        self,
        config: Optional[PredictorConfig] = None,
        remote: Optional[RemotePredictor] = None,
    ):
        self.config = config or PredictorConfig()
        if remote is None and self.config.remote_enabled:
            remote = GeminiPredictor.from_config(self.config)
        self.remote = remote
        self._cache: Dict[str, Tuple[float, Prediction]] = {}
        self.stats = {"remote": 0, "cached": 0, "offline": 0, "failed": 0}

    @property
    def is_offline(self) -> bool:
        return self.remote is None

    def clear_cache(self) -> None:
        self._cache.clear()

    async def close(self) -> None:
        close = getattr(self.remote, "close", None)
        if close is not None:
            await close()

    async def predict(
        self,
        symbol: str,
        price: float,
        indicators: Indicators,
        on_stream: Optional[StreamCallback] = None,
    ) -> Prediction:
        if self.remote is None:
            self.stats["offline"] += 1
            self._stream(on_stream, "AI client not configured. Using local rule table...")
            return local_prediction(indicators, self.config.rules, prefix=OFFLINE_PREFIX)

        cached = self._cache.get(symbol)
        if cached is not None and time.time() - cached[0] < self.config.cache_ttl_seconds:
            self.stats["cached"] += 1
            prediction = cached[1]
            self._stream(on_stream, CACHED_PREFIX + prediction.rationale)
            return prediction

        relay = (lambda text: self._stream(on_stream, text)) if on_stream else None
        try:
            prediction = await asyncio.wait_for(
                self.remote.predict(symbol, price, indicators, relay),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            kind, detail = PredictionErrorKind.TIMEOUT, f"no answer within {self.config.timeout_seconds:g}s"
        except PredictorError as e:
            kind, detail = e.kind, str(e)
        except Exception as e:
            kind, detail = PredictionErrorKind.API_ERROR, repr(e)
        else:
            self.stats["remote"] += 1
            self._cache[symbol] = (time.time(), prediction)
            return prediction

        self.stats["failed"] += 1
        logger.warning("Remote prediction failed", symbol=symbol, kind=kind.value, detail=detail)
        self._stream(on_stream, f"Error: {kind.value}. Returning safe WAIT result.")
        return failure_prediction(kind, detail)

    @staticmethod
    def _stream(on_stream: Optional[StreamCallback], text: str) -> None:
        if on_stream is None:
            return
        try:
            on_stream(text)
        except Exception as e:
            logger.debug("Stream callback error", error=repr(e))

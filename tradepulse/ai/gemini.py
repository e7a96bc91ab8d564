"""
Gemini remote predictor over the public REST API.

Streams the model's ``ANALYSIS:`` text to a progress callback while the
response arrives, then parses the trailing ``JSON_RESULT`` object into a
Prediction. Failures are raised as ``PredictorError`` carrying a
``PredictionErrorKind``; the signal engine turns them into fallback
results.
"""

from __future__ import annotations

import enum
import json
import re
from typing import Any, Callable, Dict, Optional

import httpx

from tradepulse.core.config import PredictorConfig
from tradepulse.core.logger import get_logger
from tradepulse.data.models import Indicators, Prediction, SignalType

logger = get_logger("gemini")

StreamCallback = Callable[[str], None]

_JSON_TAIL_RE = re.compile(r"JSON_RESULT[\s\S]*")
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class PredictionErrorKind(str, enum.Enum):
    TIMEOUT = "TIMEOUT"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    INVALID_API_KEY = "INVALID_API_KEY"
    API_ERROR = "API_ERROR"


class PredictorError(Exception):
    def __init__(self, kind: PredictionErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind


def classify_failure(status_code: int, text: str = "") -> PredictionErrorKind:
    """Map an HTTP status plus the unstructured error body to an error kind."""
    lowered = (text or "").lower()
    if status_code == 429 or "quota" in lowered or "resource_exhausted" in lowered:
        return PredictionErrorKind.QUOTA_EXCEEDED
    if status_code in (401, 403) or "api key not valid" in lowered:
        return PredictionErrorKind.INVALID_API_KEY
    return PredictionErrorKind.API_ERROR


def build_prompt(symbol: str, price: float, indicators: Indicators) -> str:
    return (
        "ACT AS: Senior quantitative analyst.\n"
        "Analyze the telemetry below and apply the decision table.\n\n"
        "INPUT TELEMETRY (JSON):\n"
        f'{{"asset": "{symbol}", "current_price": {price}, '
        f'"rsi_14": {indicators.rsi:.4f}, '
        f'"macd_histogram": {indicators.macd.histogram:.8f}}}\n\n'
        "DECISION TABLE:\n"
        "- rsi < 15 and macd_hist > 0 -> BUY 96 (RSI oversold + bullish divergence)\n"
        "- rsi > 85 and macd_hist < 0 -> SELL 96 (RSI overbought + bearish divergence)\n"
        "- 55 < rsi < 75 and macd_hist > 0 -> BUY 82 (bullish momentum continuation)\n"
        "- 25 < rsi < 45 and macd_hist < 0 -> SELL 82 (bearish momentum continuation)\n"
        "- otherwise -> WAIT 0 (market conditions unclear)\n\n"
        "OUTPUT FORMAT:\n"
        "ANALYSIS: <1-2 sentence technical explanation>\n"
        'JSON_RESULT: {"probability": number, "signal": "BUY"|"SELL"|"WAIT", '
        '"rationale": "copy of analysis"}\n'
    )


def clean_analysis(text: str) -> str:
    """Streamed text with the JSON tail and the ANALYSIS label removed."""
    return _JSON_TAIL_RE.sub("", text).replace("ANALYSIS:", "").strip()


def parse_prediction(full_text: str) -> Prediction:
    tail = full_text
    marker = full_text.find("JSON_RESULT")
    if marker >= 0:
        tail = full_text[marker:]
    match = _JSON_OBJECT_RE.search(tail)
    if not match:
        raise PredictorError(PredictionErrorKind.API_ERROR, "No JSON found in response")
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise PredictorError(PredictionErrorKind.API_ERROR, f"Invalid JSON in response: {e}") from e
    if not isinstance(payload, dict):
        raise PredictorError(PredictionErrorKind.API_ERROR, "JSON result is not an object")

    try:
        signal = SignalType(str(payload.get("signal") or "WAIT").upper())
    except ValueError:
        signal = SignalType.WAIT
    try:
        probability = int(float(payload.get("probability") or 0))
    except (TypeError, ValueError):
        probability = 0
    rationale = str(payload.get("rationale") or clean_analysis(full_text))
    return Prediction(probability=probability, signal=signal, rationale=rationale)


def _chunk_text(chunk: Dict[str, Any]) -> str:
    parts = []
    for candidate in chunk.get("candidates") or []:
        for part in (candidate.get("content") or {}).get("parts") or []:
            text = part.get("text")
            if text:
                parts.append(text)
    return "".join(parts)


class GeminiPredictor:
    """Remote predictor backed by ``models/<model>:streamGenerateContent``."""

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-1.5-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = (api_key or "").strip()
        self.model = model
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_config(cls, config: PredictorConfig) -> "GeminiPredictor":
        return cls(config.api_key, model=config.model, base_url=config.base_url)

    @property
    def url(self) -> str:
        return f"{self.base_url}/models/{self.model}:streamGenerateContent"

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def predict(
        self,
        symbol: str,
        price: float,
        indicators: Indicators,
        on_stream: Optional[StreamCallback] = None,
    ) -> Prediction:
        if self._client is None:
            # Overall budget is enforced by the caller
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=5.0))
            self._owns_client = True

        body = {"contents": [{"role": "user", "parts": [{"text": build_prompt(symbol, price, indicators)}]}]}
        full_text = ""
        try:
            async with self._client.stream(
                "POST",
                self.url,
                params={"alt": "sse"},
                headers={"x-goog-api-key": self.api_key},
                json=body,
            ) as resp:
                if resp.status_code >= 400:
                    error_text = (await resp.aread()).decode("utf-8", errors="replace")
                    kind = classify_failure(resp.status_code, error_text)
                    raise PredictorError(kind, f"HTTP {resp.status_code}: {error_text[:200]}")

                async for line in resp.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if not data:
                        continue
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug("Skipping undecodable stream chunk", data=data[:120])
                        continue
                    full_text += _chunk_text(chunk)
                    if on_stream is not None:
                        on_stream(clean_analysis(full_text))
        except httpx.HTTPError as e:
            raise PredictorError(classify_failure(0, str(e)), f"Request failed: {e!r}") from e

        return parse_prediction(full_text)

"""
Bybit v5 spot market data: kline websocket topic and REST snapshots.

Stream:  wss://stream.bybit.com/v5/public/spot, subscribe "kline.1.<SYMBOL>"
REST:    GET /v5/market/kline?category=spot&symbol=<SYMBOL>&interval=1&limit=<N>

Bybit drops idle public connections, so the adapter sends an application
level ``{"op": "ping"}`` on a fixed interval while the stream is up.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from tradepulse.core.logger import get_logger
from tradepulse.data.models import Candle
from tradepulse.exchange.base import RestKlineClient, StreamingAdapter
from tradepulse.exchange.exceptions import (
    MalformedPayloadError,
    RateLimitError,
    TransientFeedError,
)

logger = get_logger("bybit")

# retCode returned when the IP is rate limited
_RATE_LIMIT_CODES = {10006, 10018}


def parse_kline_message(message: Any) -> Optional[Candle]:
    """Read a ``kline.*`` topic push; acks and pongs are not data."""
    if not isinstance(message, dict):
        return None
    if "success" in message or message.get("op") in ("ping", "pong"):
        return None
    topic = message.get("topic")
    if not isinstance(topic, str) or not topic.startswith("kline"):
        return None
    data = message.get("data")
    if not isinstance(data, list) or not data:
        raise MalformedPayloadError("kline topic without data rows")
    row = data[0]
    try:
        return Candle(
            time=int(row["start"]),
            open=float(row["open"]),
            high=float(row["high"]),
            low=float(row["low"]),
            close=float(row["close"]),
            volume=float(row["volume"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedPayloadError(f"bad kline payload: {e!r}") from e


def parse_rest_klines(payload: Any) -> List[Candle]:
    """``result.list`` rows are ``[start, o, h, l, c, v, turnover]``, newest first."""
    if not isinstance(payload, dict):
        raise MalformedPayloadError("kline response is not an object")
    rows = (payload.get("result") or {}).get("list")
    if not isinstance(rows, list):
        raise MalformedPayloadError("kline response without result.list")
    candles: List[Candle] = []
    try:
        for row in reversed(rows):
            candles.append(
                Candle(
                    time=int(row[0]),
                    open=float(row[1]),
                    high=float(row[2]),
                    low=float(row[3]),
                    close=float(row[4]),
                    volume=float(row[5]),
                )
            )
    except (IndexError, TypeError, ValueError) as e:
        raise MalformedPayloadError(f"bad kline row: {e!r}") from e
    return candles


class BybitStreamAdapter(StreamingAdapter):
    name = "bybit"
    label = "Bybit"

    def __init__(
        self,
        *args,
        url: str = "wss://stream.bybit.com/v5/public/spot",
        ping_interval: float = 20.0,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.url = url
        self.ping_interval = ping_interval
        self._ping_task: Optional[asyncio.Task] = None

    @property
    def ws_url(self) -> str:
        return self.url

    @property
    def topic(self) -> str:
        return f"kline.1.{self.symbol.upper()}"

    def subscribe_message(self) -> Optional[Dict[str, Any]]:
        return {"op": "subscribe", "args": [self.topic]}

    def parse(self, message: Any) -> Optional[Candle]:
        if isinstance(message, dict) and message.get("success") is False:
            logger.warning("Subscription rejected", symbol=self.symbol, ret_msg=message.get("ret_msg"))
        return parse_kline_message(message)

    async def _pump(self) -> None:
        self._ping_task = asyncio.create_task(self._heartbeat())
        try:
            await super()._pump()
        finally:
            self._ping_task.cancel()
            await asyncio.gather(self._ping_task, return_exceptions=True)
            self._ping_task = None

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.ping_interval)
            try:
                await self.send_json({"op": "ping"})
            except Exception as e:
                logger.debug("Heartbeat send failed", symbol=self.symbol, error=repr(e))
                return


class BybitRestClient(RestKlineClient):
    """Kline snapshots from the Bybit v5 public REST API."""

    name = "bybit"

    def __init__(self, base_url: str = "https://api.bybit.com", **kwargs):
        super().__init__(base_url, **kwargs)

    async def get_klines(self, symbol: str, limit: int = 50) -> List[Candle]:
        payload = await self._get_json(
            "/v5/market/kline",
            {
                "category": "spot",
                "symbol": symbol.upper(),
                "interval": "1",
                "limit": int(limit),
            },
        )
        if isinstance(payload, dict):
            code = payload.get("retCode", 0)
            if code in _RATE_LIMIT_CODES:
                raise RateLimitError(f"bybit rate limited: {payload.get('retMsg')}")
            if code not in (0, None):
                raise TransientFeedError(f"bybit retCode {code}: {payload.get('retMsg')}")
        return parse_rest_klines(payload)

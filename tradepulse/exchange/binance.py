"""
Binance spot market data: 1m kline websocket stream and REST snapshots.

Stream:  wss://stream.binance.com:9443/ws/<symbol>@kline_1m
REST:    GET /api/v3/klines?symbol=<SYMBOL>&interval=1m&limit=<N>
"""

from __future__ import annotations

from typing import Any, List, Optional

from tradepulse.data.models import Candle
from tradepulse.exchange.base import RestKlineClient, StreamingAdapter
from tradepulse.exchange.exceptions import MalformedPayloadError


def parse_kline_message(message: Any) -> Optional[Candle]:
    """Read a ``kline`` event; anything else is not a data message."""
    if not isinstance(message, dict) or message.get("e") != "kline":
        return None
    k = message.get("k")
    if not isinstance(k, dict):
        raise MalformedPayloadError("kline event without 'k' payload")
    try:
        return Candle(
            time=int(k["t"]),
            open=float(k["o"]),
            high=float(k["h"]),
            low=float(k["l"]),
            close=float(k["c"]),
            volume=float(k["v"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedPayloadError(f"bad kline payload: {e!r}") from e


def parse_rest_klines(rows: Any) -> List[Candle]:
    """Rows are ``[open_time, o, h, l, c, v, close_time, ...]``, oldest first."""
    if not isinstance(rows, list):
        raise MalformedPayloadError("klines response is not a list")
    candles: List[Candle] = []
    try:
        for row in rows:
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


class BinanceStreamAdapter(StreamingAdapter):
    name = "binance"
    label = "Binance"

    def __init__(self, *args, base_url: str = "wss://stream.binance.com:9443/ws", **kwargs):
        super().__init__(*args, **kwargs)
        self.base_url = base_url.rstrip("/")

    @property
    def ws_url(self) -> str:
        return f"{self.base_url}/{self.symbol.lower()}@kline_1m"

    def parse(self, message: Any) -> Optional[Candle]:
        return parse_kline_message(message)


class BinanceRestClient(RestKlineClient):
    """Kline snapshots from the Binance public REST API."""

    name = "binance"

    def __init__(self, base_url: str = "https://api.binance.com", **kwargs):
        super().__init__(base_url, **kwargs)

    async def get_klines(self, symbol: str, limit: int = 50) -> List[Candle]:
        payload = await self._get_json(
            "/api/v3/klines",
            {"symbol": symbol.upper(), "interval": "1m", "limit": int(limit)},
        )
        return parse_rest_klines(payload)

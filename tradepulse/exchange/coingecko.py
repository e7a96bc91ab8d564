"""
CoinGecko spot prices and the polling fallback adapter.

Used when every streaming provider has failed. Each successful poll is
folded into the live minute bucket as a zero-volume tick, so the series
stays continuous at reduced fidelity.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import httpx

from tradepulse.core.logger import get_logger
from tradepulse.data.models import Candle, bucket_of, now_ms
from tradepulse.exchange.base import ProviderAdapter
from tradepulse.exchange.exceptions import (
    FeedError,
    MalformedPayloadError,
    RateLimitError,
    TransientFeedError,
)

logger = get_logger("coingecko")


def extract_usd_price(payload: Any, coin_id: str) -> Optional[float]:
    """Read ``{"<coin_id>": {"usd": <price>}}``. None if the coin is absent."""
    if not isinstance(payload, dict):
        raise MalformedPayloadError("simple/price response is not an object")
    entry = payload.get(coin_id)
    if entry is None:
        return None
    try:
        price = float(entry["usd"])
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedPayloadError(f"bad simple/price entry: {e!r}") from e
    return price if price > 0 else None


class CoinGeckoClient:
    """Minimal async CoinGecko client for USD spot prices."""

    def __init__(
        self,
        base_url: str = "https://api.coingecko.com/api/v3",
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or "https://api.coingecko.com/api/v3").rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self._client = client
        self._owns_client = client is None

    async def initialize(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout_seconds,
                headers={"Accept": "application/json"},
            )
            self._owns_client = True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get_simple_price(self, coin_id: str) -> Dict[str, Any]:
        if self._client is None:
            await self.initialize()
        try:
            resp = await self._client.get(
                f"{self.base_url}/simple/price",
                params={"ids": coin_id, "vs_currencies": "usd"},
            )
        except httpx.HTTPError as e:
            raise TransientFeedError(f"coingecko request failed: {e!r}") from e
        if resp.status_code == 429:
            raise RateLimitError("coingecko rate limited")
        if resp.status_code >= 400:
            raise TransientFeedError(f"coingecko returned HTTP {resp.status_code}", status_code=resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise MalformedPayloadError("coingecko returned a non-JSON body") from e


class CoinGeckoPollingAdapter(ProviderAdapter):
    name = "coingecko"
    label = "CoinGecko"
    connected_status = "Polling (Fallback)"

    def __init__(
        self,
        symbol: str,
        aggregator,
        on_open=None,
        on_failure=None,
        *,
        coin_id: str,
        interval_seconds: float = 3.0,
        client: Optional[CoinGeckoClient] = None,
    ):
        super().__init__(symbol, aggregator, on_open, on_failure)
        self.coin_id = coin_id
        self.interval_seconds = interval_seconds
        self.client = client or CoinGeckoClient()
        self.polls = 0
        self.failed_polls = 0

    async def _open(self) -> None:
        logger.info("Starting price polling", symbol=self.symbol, coin_id=self.coin_id,
                    interval=self.interval_seconds)

    async def _pump(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.interval_seconds)

    async def poll_once(self) -> Optional[Candle]:
        """One fetch; a failed poll is logged and skipped."""
        self.polls += 1
        try:
            payload = await self.client.get_simple_price(self.coin_id)
            candle = self.parse(payload)
        except FeedError as e:
            self.failed_polls += 1
            logger.warning("Price poll failed", symbol=self.symbol, error=repr(e))
            return None
        if candle is None:
            return None
        self.messages += 1
        self.aggregator.apply_tick(candle.close, candle.time)
        return candle

    def parse(self, message: Any) -> Optional[Candle]:
        price = extract_usd_price(message, self.coin_id)
        if price is None:
            return None
        return Candle.flat(bucket_of(now_ms()), price)

    async def _close(self) -> None:
        await self.client.close()

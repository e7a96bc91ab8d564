"""
Provider Adapter contract and the websocket streaming base.

An adapter owns exactly one upstream connection for one symbol. It feeds
parsed data into the symbol's ``CandleAggregator`` and reports ``open`` and
``failure`` events to its owner (the failover controller). Adapters never
reconnect on their own; recovery is the controller's decision.
"""

from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import httpx
import websockets

from tradepulse.core.logger import get_logger
from tradepulse.data.aggregator import CandleAggregator
from tradepulse.data.models import Candle
from tradepulse.exchange.exceptions import (
    FeedError,
    MalformedPayloadError,
    RateLimitError,
    TransientFeedError,
)

logger = get_logger("provider")

OpenCallback = Callable[["ProviderAdapter"], None]
FailureCallback = Callable[["ProviderAdapter", str], None]


def _noop_open(_adapter: "ProviderAdapter") -> None:
    return None


def _noop_failure(_adapter: "ProviderAdapter", _reason: str) -> None:
    return None


class ProviderAdapter(ABC):
    """
    Base class for all market-data providers.

    Subclasses implement ``_open`` (establish the connection), ``_pump``
    (consume data until the source ends) and ``parse``. ``_pump`` returning
    or ``_open``/``_pump`` raising is reported once through ``on_failure``,
    unless the adapter is being stopped on purpose.
    """

    name: str = "provider"
    label: str = "Provider"
    connected_status: str = "Connected"

    def __init__(
        self,
        symbol: str,
        aggregator: CandleAggregator,
        on_open: Optional[OpenCallback] = None,
        on_failure: Optional[FailureCallback] = None,
    ):
        self.symbol = symbol
        self.aggregator = aggregator
        self._on_open = on_open or _noop_open
        self._on_failure = on_failure or _noop_failure
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self.opened = False
        self.closed = False
        self.messages = 0
        self.malformed = 0
        self.started_at: float = 0.0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Begin the connect sequence in the background."""
        if self._task is not None:
            return
        self.started_at = time.time()
        self._task = asyncio.create_task(self._run(), name=f"{self.name}:{self.symbol}")

    async def stop(self) -> None:
        """Tear down every resource this adapter holds. Idempotent."""
        self._stopping = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        try:
            await self._close()
        except Exception as e:
            logger.debug("Adapter close error", provider=self.name, error=repr(e))
        self.closed = True

    async def _run(self) -> None:
        try:
            await self._open()
            if self._stopping:
                return
            self.opened = True
            self._on_open(self)
            await self._pump()
            reason = "connection closed"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"

        if not self._stopping:
            logger.warning(
                "Provider connection lost",
                provider=self.name, symbol=self.symbol, reason=reason,
            )
            self._on_failure(self, reason)

    @abstractmethod
    async def _open(self) -> None:
        """Establish the upstream connection. Raise on failure."""

    @abstractmethod
    async def _pump(self) -> None:
        """Consume upstream data until the source ends."""

    async def _close(self) -> None:
        """Release transport resources."""
        return None

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    @abstractmethod
    def parse(self, message: Any) -> Optional[Candle]:
        """Translate one decoded upstream message into a Candle.

        Returns None for benign non-data messages (acks, heartbeats).
        Raises MalformedPayloadError for data messages that cannot be read.
        """

    def get_info(self) -> Dict[str, Any]:
        return {
            "provider": self.name,
            "symbol": self.symbol,
            "opened": self.opened,
            "closed": self.closed,
            "messages": self.messages,
            "malformed": self.malformed,
        }


class StreamingAdapter(ProviderAdapter):
    """
    Persistent websocket subscription to an exchange kline stream.

    Subclasses provide ``ws_url``, an optional ``subscribe_message`` sent
    right after the handshake, and ``parse`` for the exchange envelope.
    """

    connected_status = "Connected (Real-time)"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._ws: Optional[Any] = None

    @property
    @abstractmethod
    def ws_url(self) -> str:
        """Fully-qualified stream URL for this adapter's symbol."""

    def subscribe_message(self) -> Optional[Dict[str, Any]]:
        return None

    async def _open(self) -> None:
        logger.info("Connecting to stream", provider=self.name, url=self.ws_url)
        self._ws = await websockets.connect(
            self.ws_url,
            ping_interval=20,
            ping_timeout=10,
            close_timeout=5,
            max_size=2 ** 20,  # 1MB max message
        )
        message = self.subscribe_message()
        if message:
            await self._ws.send(json.dumps(message))
            logger.info("Subscription sent", provider=self.name, args=message.get("args"))

    async def _pump(self) -> None:
        if self._ws is None:
            return
        async for raw_message in self._ws:
            self.handle_raw(raw_message)

    async def _close(self) -> None:
        if self._ws is not None:
            ws, self._ws = self._ws, None
            await ws.close()

    async def send_json(self, payload: Dict[str, Any]) -> None:
        if self._ws is not None:
            await self._ws.send(json.dumps(payload))

    def handle_raw(self, raw_message: Any) -> Optional[Candle]:
        """Decode, parse and aggregate one raw frame. Never raises."""
        try:
            message = json.loads(raw_message)
        except (json.JSONDecodeError, TypeError):
            self.malformed += 1
            logger.warning("Invalid JSON received", provider=self.name, raw=str(raw_message)[:200])
            return None

        try:
            candle = self.parse(message)
        except MalformedPayloadError as e:
            self.malformed += 1
            logger.warning("Malformed payload dropped", provider=self.name, error=str(e))
            return None

        if candle is None:
            return None
        self.messages += 1
        self.aggregator.apply_candle(candle)
        return candle


def _retry_after(value: Optional[str]) -> float:
    try:
        return max(0.0, float(value or 0))
    except ValueError:
        return 0.0


class RestKlineClient(ABC):
    """
    Minimal async REST client for one-minute kline snapshots.

    ``get_klines`` is strict and raises typed feed errors so the scanner can
    move on to its secondary source. ``fetch_history`` fails soft to ``[]``
    for the best-effort backfill path.
    """

    name: str = "rest"

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 3.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self._client = client
        self._owns_client = client is None

    async def initialize(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
            self._owns_client = True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Any:
        if self._client is None:
            await self.initialize()
        url = f"{self.base_url}{path}"
        try:
            resp = await self._client.get(url, params=params, timeout=self.timeout_seconds)
        except httpx.TimeoutException as e:
            raise TransientFeedError(f"{self.name} request timed out") from e
        except httpx.HTTPError as e:
            raise TransientFeedError(f"{self.name} request failed: {e!r}") from e

        if resp.status_code in (418, 429):
            raise RateLimitError(
                f"{self.name} rate limited",
                status_code=resp.status_code,
                retry_after=_retry_after(resp.headers.get("Retry-After")),
            )
        if resp.status_code >= 400:
            raise TransientFeedError(
                f"{self.name} returned HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise MalformedPayloadError(f"{self.name} returned a non-JSON body") from e

    @abstractmethod
    async def get_klines(self, symbol: str, limit: int = 50) -> List[Candle]:
        """Return the last ``limit`` one-minute candles in ascending order."""

    async def fetch_history(self, symbol: str, limit: int = 50) -> List[Candle]:
        try:
            return await self.get_klines(symbol, limit)
        except FeedError as e:
            logger.warning(
                "History fetch failed",
                provider=self.name, symbol=symbol, error=repr(e),
            )
            return []

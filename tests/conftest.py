"""Shared test fixtures and stubs for TradePulse tests.

Provides fake provider adapters for the failover state machine, fake REST
sources for the scanner and candle factories.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, List, Optional, Union

import pytest

from tradepulse.core.config import ConfigManager
from tradepulse.data.models import CANDLE_INTERVAL_MS, Candle
from tradepulse.exchange.base import ProviderAdapter
from tradepulse.exchange.feed_controller import ProviderSpec


# ---------------------------------------------------------------------------
# Candle factories
# ---------------------------------------------------------------------------

BASE_TIME_MS = 1_700_000_040_000  # minute aligned


def make_candles(
    closes: List[float],
    start_ms: int = BASE_TIME_MS,
) -> List[Candle]:
    """One aligned candle per close, oldest first."""
    return [
        Candle(
            time=start_ms + i * CANDLE_INTERVAL_MS,
            open=c,
            high=c * 1.001,
            low=c * 0.999,
            close=c,
            volume=10.0,
        )
        for i, c in enumerate(closes)
    ]


def trending_closes(n: int = 50, start: float = 100.0, step: float = 0.5) -> List[float]:
    return [start + i * step for i in range(n)]


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


# ---------------------------------------------------------------------------
# Stub adapters
# ---------------------------------------------------------------------------


class StubAdapter(ProviderAdapter):
    """Provider adapter with scripted behaviour.

    Modes:
        open: connects immediately and stays up
        hang: never finishes connecting
        fail: raises while connecting
        drop: connects, then the stream ends after ``drop_after`` seconds
    """

    connected_status = "Connected (Stub)"

    def __init__(self, symbol, aggregator, on_open=None, on_failure=None, *,
                 name: str = "stub", mode: str = "open", drop_after: float = 0.02):
        super().__init__(symbol, aggregator, on_open, on_failure)
        self.name = name
        self.mode = mode
        self.drop_after = drop_after
        self.stop_calls = 0

    async def _open(self) -> None:
        if self.mode == "hang":
            await asyncio.Event().wait()
        if self.mode == "fail":
            raise ConnectionError(f"{self.name} refused")

    async def _pump(self) -> None:
        if self.mode == "drop":
            await asyncio.sleep(self.drop_after)
            return
        await asyncio.Event().wait()

    async def stop(self) -> None:
        self.stop_calls += 1
        await super().stop()

    def parse(self, message):
        return None


def make_spec(
    name: str,
    mode: str = "open",
    created: Optional[List[StubAdapter]] = None,
    history=None,
    skip: bool = False,
) -> ProviderSpec:
    """ProviderSpec whose factory records every adapter it builds."""
    created = created if created is not None else []

    def factory(symbol, aggregator, on_open, on_failure):
        if skip:
            return None
        adapter = StubAdapter(symbol, aggregator, on_open, on_failure, name=name, mode=mode)
        created.append(adapter)
        return adapter

    return ProviderSpec(name=name, label=name.upper(), factory=factory, history=history)


# ---------------------------------------------------------------------------
# Stub REST sources
# ---------------------------------------------------------------------------


class StubKlineSource:
    """Stands in for a RestKlineClient in scanner tests.

    ``responses`` maps symbol -> candle list or exception instance.
    Unknown symbols raise the ``default`` exception.
    """

    def __init__(
        self,
        name: str,
        responses: Optional[Dict[str, Union[List[Candle], Exception]]] = None,
        default: Optional[Exception] = None,
        delay: float = 0.0,
    ) -> None:
        self.name = name
        self.responses = responses or {}
        self.default = default
        self.delay = delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def get_klines(self, symbol: str, limit: int = 50) -> List[Candle]:
        self.calls.append(symbol)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            response = self.responses.get(symbol, self.default)
            if isinstance(response, Exception):
                raise response
            if response is None:
                return []
            return list(response)
        finally:
            self.in_flight -= 1

    async def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Auto-use fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_config_singleton():
    """Prevent ConfigManager singleton state from leaking between tests."""
    saved_instance = ConfigManager._instance
    saved_config = ConfigManager._config
    yield
    ConfigManager._instance = saved_instance
    ConfigManager._config = saved_config

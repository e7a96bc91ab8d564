"""Random-walk feed for instruments without a live exchange source."""

from __future__ import annotations

import asyncio
from typing import Any, List, Optional

import numpy as np

from tradepulse.core.logger import get_logger
from tradepulse.data.models import CANDLE_INTERVAL_MS, Candle, bucket_of, now_ms
from tradepulse.exchange.base import ProviderAdapter

logger = get_logger("simulated")

SEED_CANDLES = 50
VOLATILITY_RATIO = 0.0005


def generate_history(
    initial_price: float,
    rng: np.random.Generator,
    count: int = SEED_CANDLES,
    end_ms: Optional[int] = None,
) -> List[Candle]:
    """``count`` closed minute candles ending just before the live bucket."""
    volatility = initial_price * VOLATILITY_RATIO
    live_bucket = bucket_of(end_ms if end_ms is not None else now_ms())
    steps = (rng.random(count) - 0.5) * volatility * 5
    prices = np.maximum(initial_price + np.cumsum(steps), volatility)
    volumes = rng.random(count) * 1000

    history: List[Candle] = []
    for i, price in enumerate(prices):
        price = float(price)
        history.append(
            Candle(
                time=live_bucket - (count - i) * CANDLE_INTERVAL_MS,
                open=price,
                high=price * 1.001,
                low=price * 0.999,
                close=price,
                volume=float(volumes[i]),
            )
        )
    return history


class SimulatedAdapter(ProviderAdapter):
    name = "simulation"
    label = "Simulation"
    connected_status = "Simulated Feed"

    def __init__(
        self,
        symbol: str,
        aggregator,
        on_open=None,
        on_failure=None,
        *,
        initial_price: float,
        tick_seconds: float = 1.0,
        seed: Optional[int] = None,
    ):
        super().__init__(symbol, aggregator, on_open, on_failure)
        self.initial_price = float(initial_price)
        self.price = self.initial_price
        self.volatility = self.initial_price * VOLATILITY_RATIO
        self.tick_seconds = tick_seconds
        self.rng = np.random.default_rng(seed)

    async def _open(self) -> None:
        history = generate_history(self.initial_price, self.rng)
        self.aggregator.seed(history)

    async def _pump(self) -> None:
        while True:
            await asyncio.sleep(self.tick_seconds)
            self.tick()

    def tick(self, timestamp_ms: Optional[int] = None) -> float:
        change = (self.rng.random() - 0.5) * self.volatility
        self.price = max(self.price + change, self.volatility)
        self.messages += 1
        self.aggregator.apply_tick(
            self.price,
            timestamp_ms if timestamp_ms is not None else now_ms(),
            volume_delta=float(self.rng.random() * 10),
        )
        return self.price

    def parse(self, message: Any) -> Optional[Candle]:
        # Generated in-process; nothing to decode.
        return None

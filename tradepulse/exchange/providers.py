"""
Provider registry - turns configuration into a failover priority list.

Each registered builder produces a ``ProviderSpec`` for a given asset, or
None when the provider cannot serve that asset at all. Priority order and
the fallback come from ``FeedConfig``, never from code.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional, Tuple

from tradepulse.core.config import FeedConfig, TradePulseConfig
from tradepulse.core.logger import get_logger
from tradepulse.data.assets import get_coingecko_id
from tradepulse.data.models import Asset, Candle
from tradepulse.exchange.base import RestKlineClient
from tradepulse.exchange.binance import BinanceRestClient, BinanceStreamAdapter
from tradepulse.exchange.bybit import BybitRestClient, BybitStreamAdapter
from tradepulse.exchange.coingecko import CoinGeckoClient, CoinGeckoPollingAdapter
from tradepulse.exchange.feed_controller import FeedController, HistoryFetcher, ProviderSpec
from tradepulse.exchange.simulated import SimulatedAdapter

logger = get_logger("providers")

SpecBuilder = Callable[[Asset, FeedConfig], Optional[ProviderSpec]]


def _history_from(make_client: Callable[[], RestKlineClient]) -> HistoryFetcher:
    async def fetch(symbol: str, limit: int) -> List[Candle]:
        client = make_client()
        try:
            return await client.fetch_history(symbol, limit)
        finally:
            await client.close()
    return fetch


def _binance_spec(asset: Asset, feed: FeedConfig) -> Optional[ProviderSpec]:
    if asset.is_simulated:
        return None

    def factory(symbol, aggregator, on_open, on_failure):
        return BinanceStreamAdapter(
            symbol, aggregator, on_open, on_failure, base_url=feed.binance_ws_url,
        )

    return ProviderSpec(
        name="binance",
        label="Binance",
        factory=factory,
        history=_history_from(lambda: BinanceRestClient(
            feed.binance_rest_url, timeout_seconds=feed.backfill_timeout_seconds,
        )),
    )


def _bybit_spec(asset: Asset, feed: FeedConfig) -> Optional[ProviderSpec]:
    if asset.is_simulated:
        return None

    def factory(symbol, aggregator, on_open, on_failure):
        return BybitStreamAdapter(
            symbol, aggregator, on_open, on_failure,
            url=feed.bybit_ws_url,
            ping_interval=feed.bybit_ping_interval_seconds,
        )

    return ProviderSpec(
        name="bybit",
        label="Bybit",
        factory=factory,
        history=_history_from(lambda: BybitRestClient(
            feed.bybit_rest_url, timeout_seconds=feed.backfill_timeout_seconds,
        )),
    )


def _coingecko_spec(asset: Asset, feed: FeedConfig) -> Optional[ProviderSpec]:
    coin_id = get_coingecko_id(asset.symbol)
    if asset.is_simulated or coin_id is None:
        return None

    def factory(symbol, aggregator, on_open, on_failure):
        return CoinGeckoPollingAdapter(
            symbol, aggregator, on_open, on_failure,
            coin_id=coin_id,
            interval_seconds=feed.poll_interval_seconds,
            client=CoinGeckoClient(feed.coingecko_url),
        )

    return ProviderSpec(name="coingecko", label="CoinGecko", factory=factory)


def _simulation_spec(asset: Asset, feed: FeedConfig) -> Optional[ProviderSpec]:
    def factory(symbol, aggregator, on_open, on_failure):
        return SimulatedAdapter(
            symbol, aggregator, on_open, on_failure,
            initial_price=asset.initial_price,
            tick_seconds=feed.simulation_tick_seconds,
        )

    return ProviderSpec(name="simulation", label="Simulation", factory=factory)


PROVIDER_BUILDERS: Dict[str, SpecBuilder] = {
    "binance": _binance_spec,
    "bybit": _bybit_spec,
    "coingecko": _coingecko_spec,
    "simulation": _simulation_spec,
}


def build_provider_specs(
    asset: Asset,
    feed: FeedConfig,
) -> Tuple[List[ProviderSpec], Optional[ProviderSpec]]:
    """Priority list and fallback for ``asset``.

    Simulated assets always get the simulation feed alone.
    """
    if asset.is_simulated:
        return [_simulation_spec(asset, feed)], None

    specs: List[ProviderSpec] = []
    for name in feed.provider_order:
        builder = PROVIDER_BUILDERS.get(name)
        if builder is None:
            logger.warning("Unknown provider in feed.provider_order", provider=name)
            continue
        spec = builder(asset, feed)
        if spec is not None:
            specs.append(spec)

    fallback = None
    if feed.fallback_provider:
        builder = PROVIDER_BUILDERS.get(feed.fallback_provider)
        if builder is None:
            logger.warning("Unknown fallback provider", provider=feed.fallback_provider)
        else:
            fallback = builder(asset, feed)
    return specs, fallback


def build_feed_controller(asset: Asset, config: TradePulseConfig) -> FeedController:
    feed = config.feed
    specs, fallback = build_provider_specs(asset, feed)
    return FeedController(
        specs,
        fallback,
        connect_timeout=feed.connect_timeout_seconds,
        max_candles=feed.max_candles,
        backfill_enabled=feed.backfill_enabled,
        backfill_limit=feed.backfill_limit,
    )

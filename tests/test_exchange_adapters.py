from __future__ import annotations

import asyncio
import json

import httpx
import numpy as np
import pytest

from tests.conftest import BASE_TIME_MS, wait_for
from tradepulse.data.aggregator import CandleAggregator
from tradepulse.data.models import CANDLE_INTERVAL_MS
from tradepulse.exchange import binance, bybit
from tradepulse.exchange.binance import BinanceRestClient, BinanceStreamAdapter
from tradepulse.exchange.bybit import BybitRestClient, BybitStreamAdapter
from tradepulse.exchange.coingecko import (
    CoinGeckoClient,
    CoinGeckoPollingAdapter,
    extract_usd_price,
)
from tradepulse.exchange.exceptions import (
    MalformedPayloadError,
    RateLimitError,
    TransientFeedError,
)
from tradepulse.exchange.simulated import SimulatedAdapter, generate_history


def _binance_kline(t=BASE_TIME_MS, o="100.0", h="101.5", l="99.5", c="101.0", v="12.5"):
    return {"e": "kline", "s": "BTCUSDT", "k": {"t": t, "o": o, "h": h, "l": l, "c": c, "v": v}}


def _mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Binance
# ---------------------------------------------------------------------------


def test_binance_kline_message_parses_string_prices():
    candle = binance.parse_kline_message(_binance_kline())
    assert candle.time == BASE_TIME_MS
    assert (candle.open, candle.high, candle.low, candle.close, candle.volume) == (100.0, 101.5, 99.5, 101.0, 12.5)


def test_binance_non_kline_messages_are_ignored():
    assert binance.parse_kline_message({"result": None, "id": 1}) is None
    assert binance.parse_kline_message([1, 2, 3]) is None


def test_binance_broken_kline_raises_malformed():
    with pytest.raises(MalformedPayloadError):
        binance.parse_kline_message({"e": "kline"})
    with pytest.raises(MalformedPayloadError):
        binance.parse_kline_message(_binance_kline(c="not-a-number"))


def test_binance_stream_url_uses_lowercase_symbol():
    adapter = BinanceStreamAdapter("BTCUSDT", CandleAggregator("BTCUSDT"), base_url="wss://example/ws/")
    assert adapter.ws_url == "wss://example/ws/btcusdt@kline_1m"


def test_streaming_adapter_drops_malformed_frames_and_keeps_going():
    agg = CandleAggregator("btcusdt")
    adapter = BinanceStreamAdapter("btcusdt", agg)

    assert adapter.handle_raw("{not json") is None
    assert adapter.handle_raw(json.dumps({"e": "kline", "k": {"t": 1}})) is None
    assert adapter.malformed == 2
    assert len(agg) == 0

    adapter.handle_raw(json.dumps(_binance_kline()))
    adapter.handle_raw(json.dumps(_binance_kline(c="102.0", h="102.5", v="20")))
    assert adapter.messages == 2
    assert len(agg) == 1
    assert agg.last.close == 102.0
    assert agg.last.volume == 20.0


@pytest.mark.asyncio
async def test_binance_rest_klines_ascending():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        rows = [
            [BASE_TIME_MS + i * CANDLE_INTERVAL_MS, "1.0", "2.0", "0.5", str(1.5 + i), "10", 0, "0"]
            for i in range(3)
        ]
        return httpx.Response(200, json=rows)

    client = BinanceRestClient("https://api.test", client=_mock_client(handler))
    candles = await client.get_klines("btcusdt", limit=3)

    assert seen["path"] == "/api/v3/klines"
    assert seen["params"] == {"symbol": "BTCUSDT", "interval": "1m", "limit": "3"}
    assert [c.close for c in candles] == [1.5, 2.5, 3.5]
    assert candles[0].time < candles[1].time < candles[2].time


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response, expected",
    [
        (httpx.Response(500, text="boom"), TransientFeedError),
        (httpx.Response(429, headers={"Retry-After": "3"}), RateLimitError),
        (httpx.Response(200, text="<html>"), MalformedPayloadError),
        (httpx.Response(200, json={"code": -1121}), MalformedPayloadError),
    ],
)
async def test_binance_rest_errors_are_typed(response, expected):
    client = BinanceRestClient("https://api.test", client=_mock_client(lambda request: response))
    with pytest.raises(expected):
        await client.get_klines("btcusdt")


@pytest.mark.asyncio
async def test_rest_timeout_is_transient_and_history_fails_soft():
    def handler(request):
        raise httpx.ReadTimeout("slow upstream", request=request)

    client = BinanceRestClient("https://api.test", client=_mock_client(handler))
    with pytest.raises(TransientFeedError):
        await client.get_klines("btcusdt")
    assert await client.fetch_history("btcusdt") == []


# ---------------------------------------------------------------------------
# Bybit
# ---------------------------------------------------------------------------


def test_bybit_subscribe_message_uses_upper_symbol_topic():
    adapter = BybitStreamAdapter("btcusdt", CandleAggregator("btcusdt"))
    assert adapter.subscribe_message() == {"op": "subscribe", "args": ["kline.1.BTCUSDT"]}
    assert adapter.ws_url == "wss://stream.bybit.com/v5/public/spot"


def test_bybit_acks_and_pongs_are_not_data():
    assert bybit.parse_kline_message({"success": True, "ret_msg": "", "op": "subscribe"}) is None
    assert bybit.parse_kline_message({"op": "pong", "ret_msg": "pong"}) is None
    assert bybit.parse_kline_message({"topic": "tickers.BTCUSDT", "data": {}}) is None


def test_bybit_kline_push_parses_first_row():
    message = {
        "topic": "kline.1.BTCUSDT",
        "type": "snapshot",
        "data": [{
            "start": BASE_TIME_MS, "end": BASE_TIME_MS + 59_999, "interval": "1",
            "open": "100", "high": "102", "low": "99", "close": "101", "volume": "7.5",
            "confirm": False,
        }],
    }
    candle = bybit.parse_kline_message(message)
    assert candle.time == BASE_TIME_MS
    assert candle.close == 101.0
    assert candle.volume == 7.5

    with pytest.raises(MalformedPayloadError):
        bybit.parse_kline_message({"topic": "kline.1.BTCUSDT", "data": []})


@pytest.mark.asyncio
async def test_bybit_rest_reverses_newest_first_rows():
    def handler(request):
        assert request.url.params["category"] == "spot"
        assert request.url.params["symbol"] == "ETHUSDT"
        rows = [
            [str(BASE_TIME_MS + i * CANDLE_INTERVAL_MS), "1", "2", "0.5", str(10 + i), "3", "30"]
            for i in reversed(range(4))
        ]
        return httpx.Response(200, json={"retCode": 0, "retMsg": "OK", "result": {"list": rows}})

    client = BybitRestClient("https://api.test", client=_mock_client(handler))
    candles = await client.get_klines("ethusdt", limit=4)
    assert [c.close for c in candles] == [10.0, 11.0, 12.0, 13.0]


@pytest.mark.asyncio
async def test_bybit_rest_error_codes():
    payloads = iter([
        {"retCode": 10001, "retMsg": "params error", "result": {}},
        {"retCode": 10006, "retMsg": "Too many visits!", "result": {}},
    ])
    client = BybitRestClient(
        "https://api.test",
        client=_mock_client(lambda request: httpx.Response(200, json=next(payloads))),
    )
    with pytest.raises(TransientFeedError):
        await client.get_klines("btcusdt")
    with pytest.raises(RateLimitError):
        await client.get_klines("btcusdt")


class _FakeWebSocket:
    """Records sent frames; iteration ends once ``hang_up`` is set."""

    def __init__(self):
        self.sent = []
        self.hang_up = asyncio.Event()

    async def send(self, data):
        self.sent.append(json.loads(data))

    def __aiter__(self):
        return self

    async def __anext__(self):
        await self.hang_up.wait()
        raise StopAsyncIteration

    async def close(self):
        pass


@pytest.mark.asyncio
async def test_bybit_heartbeat_pings_while_pumping_and_stops_with_stream():
    adapter = BybitStreamAdapter("btcusdt", CandleAggregator("btcusdt"), ping_interval=0.01)
    ws = _FakeWebSocket()
    adapter._ws = ws

    pump = asyncio.create_task(adapter._pump())
    await wait_for(lambda: len(ws.sent) >= 2)
    heartbeat = adapter._ping_task

    assert all(frame == {"op": "ping"} for frame in ws.sent)
    assert not heartbeat.done()

    ws.hang_up.set()
    await pump
    assert heartbeat.cancelled()
    assert adapter._ping_task is None


# ---------------------------------------------------------------------------
# CoinGecko polling
# ---------------------------------------------------------------------------


def test_extract_usd_price():
    assert extract_usd_price({"bitcoin": {"usd": 65000.5}}, "bitcoin") == 65000.5
    assert extract_usd_price({}, "bitcoin") is None
    with pytest.raises(MalformedPayloadError):
        extract_usd_price({"bitcoin": {"eur": 1}}, "bitcoin")


class _FakeCoinGecko:
    def __init__(self, payloads):
        self.payloads = list(payloads)
        self.closed = False

    async def get_simple_price(self, coin_id):
        item = self.payloads.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_polling_adapter_skips_failed_polls(monkeypatch):
    monkeypatch.setattr("tradepulse.exchange.coingecko.now_ms", lambda: BASE_TIME_MS + 1_000)
    agg = CandleAggregator("btcusdt")
    fake = _FakeCoinGecko([
        {"bitcoin": {"usd": 100.0}},
        TransientFeedError("HTTP 503"),
        {"bitcoin": {"usd": 104.0}},
    ])
    adapter = CoinGeckoPollingAdapter("btcusdt", agg, coin_id="bitcoin", client=fake)

    assert (await adapter.poll_once()).close == 100.0
    assert await adapter.poll_once() is None
    await adapter.poll_once()

    assert adapter.failed_polls == 1
    assert len(agg) == 1
    assert agg.last.close == 104.0
    assert agg.last.high == 104.0
    assert agg.last.volume == 0.0

    await adapter.stop()
    assert fake.closed


@pytest.mark.asyncio
async def test_polling_over_http_maps_rate_limit_to_skipped_poll():
    responses = iter([httpx.Response(429), httpx.Response(200, json={"ethereum": {"usd": 4500.25}})])
    seen = []

    def handler(request):
        seen.append(dict(request.url.params))
        return next(responses)

    client = CoinGeckoClient("https://api.test", client=_mock_client(handler))
    agg = CandleAggregator("ethusdt")
    adapter = CoinGeckoPollingAdapter("ethusdt", agg, coin_id="ethereum", client=client)

    assert await adapter.poll_once() is None
    assert (await adapter.poll_once()).close == 4500.25
    assert adapter.failed_polls == 1
    assert seen[0] == {"ids": "ethereum", "vs_currencies": "usd"}


# ---------------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------------


def test_generated_history_is_aligned_and_ends_before_live_bucket():
    history = generate_history(100.0, np.random.default_rng(1), end_ms=BASE_TIME_MS + 30_000)
    assert len(history) == 50
    assert history[-1].time == BASE_TIME_MS - CANDLE_INTERVAL_MS
    assert all(c.time % CANDLE_INTERVAL_MS == 0 for c in history)
    assert all(c.close > 0 for c in history)


@pytest.mark.asyncio
async def test_simulated_adapter_seeds_then_ticks_into_live_bucket():
    agg = CandleAggregator("AAPL_S")
    adapter = SimulatedAdapter("AAPL_S", agg, initial_price=237.92, seed=42)
    await adapter._open()
    assert len(agg) == 50
    assert agg.is_seeded

    live = agg.last.time + CANDLE_INTERVAL_MS
    adapter.tick(live + 1_000)
    adapter.tick(live + 2_000)
    assert len(agg) == 50
    assert agg.last.time == live
    assert agg.last.volume > 0

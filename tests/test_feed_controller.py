from __future__ import annotations

import asyncio

import pytest

from tests.conftest import make_candles, make_spec, trending_closes, wait_for
from tradepulse.exchange.feed_controller import FeedCallbacks, FeedController, FeedState


class _Recorder:
    def __init__(self) -> None:
        self.statuses = []
        self.errors = []
        self.histories = []
        self.candles = []

    def callbacks(self) -> FeedCallbacks:
        return FeedCallbacks(
            on_candle=self.candles.append,
            on_history=self.histories.append,
            on_status_change=lambda provider, message: self.statuses.append((provider, message)),
            on_error=self.errors.append,
        )


@pytest.mark.asyncio
async def test_timeouts_walk_the_list_until_a_provider_opens():
    created = []
    controller = FeedController(
        [
            make_spec("a", "hang", created),
            make_spec("b", "hang", created),
            make_spec("c", "open", created),
        ],
        connect_timeout=0.05,
    )
    rec = _Recorder()
    await controller.connect("btcusdt", rec.callbacks())
    try:
        await wait_for(lambda: controller.state == FeedState.CONNECTED)
        assert controller.active_provider == "c"
        assert [a.name for a in created] == ["a", "b", "c"]
        assert created[0].closed and created[1].closed
        assert not created[2].closed
        assert ("C", "Connected (Stub)") in rec.statuses
        assert rec.statuses[0] == ("A", "Connecting to A...")
        assert controller.attempts == 3
    finally:
        await controller.disconnect()


@pytest.mark.asyncio
async def test_disconnect_while_connecting_never_fails_over():
    created = []
    controller = FeedController(
        [make_spec("a", "hang", created), make_spec("b", "open", created)],
        connect_timeout=0.05,
    )
    await controller.connect("btcusdt")
    assert controller.state == FeedState.CONNECTING
    await controller.disconnect()

    await asyncio.sleep(0.15)
    assert controller.state == FeedState.IDLE
    assert [a.name for a in created] == ["a"]
    assert created[0].closed


@pytest.mark.asyncio
async def test_disconnect_is_idempotent():
    controller = FeedController([make_spec("a", "open")], connect_timeout=1)
    await controller.disconnect()
    await controller.connect("btcusdt")
    await wait_for(lambda: controller.state == FeedState.CONNECTED)
    await controller.disconnect()
    await controller.disconnect()
    assert controller.state == FeedState.IDLE
    assert controller.adapter is None


@pytest.mark.asyncio
async def test_connect_error_fails_over_without_waiting_for_timeout():
    created = []
    controller = FeedController(
        [make_spec("a", "fail", created), make_spec("b", "open", created)],
        connect_timeout=30,
    )
    await controller.connect("ethusdt")
    try:
        await wait_for(lambda: controller.state == FeedState.CONNECTED, timeout=1.0)
        assert controller.active_provider == "b"
        assert created[0].closed
    finally:
        await controller.disconnect()


@pytest.mark.asyncio
async def test_drop_after_connect_moves_to_next_provider():
    created = []
    controller = FeedController(
        [make_spec("a", "drop", created), make_spec("b", "open", created)],
        connect_timeout=1,
    )
    await controller.connect("btcusdt")
    try:
        await wait_for(lambda: controller.active_provider == "b" and controller.state == FeedState.CONNECTED)
        assert created[0].opened and created[0].closed
    finally:
        await controller.disconnect()


@pytest.mark.asyncio
async def test_exhaustion_degrades_to_fallback():
    created = []
    fallback_created = []
    controller = FeedController(
        [make_spec("a", "fail", created), make_spec("b", "fail", created)],
        make_spec("poll", "open", fallback_created),
        connect_timeout=1,
    )
    rec = _Recorder()
    await controller.connect("btcusdt", rec.callbacks())
    try:
        await wait_for(lambda: controller.state == FeedState.DEGRADED)
        assert controller.active_provider == "poll"
        assert len(fallback_created) == 1
        assert all(a.closed for a in created)
        assert rec.errors == []
    finally:
        await controller.disconnect()
    assert fallback_created[0].closed


@pytest.mark.asyncio
async def test_exhaustion_without_fallback_reports_hard_error():
    controller = FeedController(
        [make_spec("a", "fail"), make_spec("b", "hang")],
        None,
        connect_timeout=0.05,
    )
    rec = _Recorder()
    await controller.connect("btcusdt", rec.callbacks())
    await wait_for(lambda: controller.state == FeedState.FAILED)
    assert rec.errors == ["All data providers failed for btcusdt"]
    assert controller.adapter is None
    await controller.disconnect()


@pytest.mark.asyncio
async def test_fallback_without_mapping_is_a_hard_error():
    controller = FeedController(
        [make_spec("a", "fail")],
        make_spec("poll", skip=True),
        connect_timeout=1,
    )
    rec = _Recorder()
    await controller.connect("AAPL_S", rec.callbacks())
    await wait_for(lambda: controller.state == FeedState.FAILED)
    assert len(rec.errors) == 1


@pytest.mark.asyncio
async def test_providers_without_mapping_are_skipped():
    created = []
    controller = FeedController(
        [make_spec("a", skip=True), make_spec("b", "open", created)],
        connect_timeout=1,
    )
    await controller.connect("btcusdt")
    try:
        assert controller.active_provider == "b"
        assert controller.provider_index == 1
        await wait_for(lambda: controller.state == FeedState.CONNECTED)
    finally:
        await controller.disconnect()


@pytest.mark.asyncio
async def test_events_from_superseded_adapter_are_ignored():
    created = []
    controller = FeedController(
        [make_spec("a", "fail", created), make_spec("b", "open", created)],
        connect_timeout=1,
    )
    await controller.connect("btcusdt")
    try:
        await wait_for(lambda: controller.state == FeedState.CONNECTED)
        stale = created[0]
        stale._on_failure(stale, "late close")
        stale._on_open(stale)
        await asyncio.sleep(0.02)
        assert controller.state == FeedState.CONNECTED
        assert controller.active_provider == "b"
        assert len(created) == 2
    finally:
        await controller.disconnect()


@pytest.mark.asyncio
async def test_backfill_runs_once_per_session_and_seeds_history():
    calls = []

    async def history(symbol, limit):
        calls.append((symbol, limit))
        return make_candles(trending_closes(40))

    created = []
    controller = FeedController(
        [
            make_spec("a", "fail", created, history=history),
            make_spec("b", "open", created, history=history),
        ],
        connect_timeout=1,
        backfill_limit=40,
    )
    rec = _Recorder()
    await controller.connect("btcusdt", rec.callbacks())
    try:
        await wait_for(lambda: controller.state == FeedState.CONNECTED and rec.histories)
        assert calls == [("btcusdt", 40)]
        assert len(rec.histories) == 1
        assert len(rec.histories[0]) == 40
        assert controller.aggregator.is_seeded
    finally:
        await controller.disconnect()


@pytest.mark.asyncio
async def test_backfill_failure_does_not_gate_the_feed():
    async def history(symbol, limit):
        raise RuntimeError("snapshot endpoint down")

    controller = FeedController([make_spec("a", "open", history=history)], connect_timeout=1)
    rec = _Recorder()
    await controller.connect("btcusdt", rec.callbacks())
    try:
        await wait_for(lambda: controller.state == FeedState.CONNECTED)
        await asyncio.sleep(0.01)
        assert rec.histories == []
        assert rec.errors == []
    finally:
        await controller.disconnect()


@pytest.mark.asyncio
async def test_reconnect_starts_fresh_session():
    created = []
    controller = FeedController([make_spec("a", "open", created)], connect_timeout=1)
    await controller.connect("btcusdt")
    await wait_for(lambda: controller.state == FeedState.CONNECTED)
    first_aggregator = controller.aggregator

    await controller.connect("ethusdt")
    try:
        await wait_for(lambda: controller.state == FeedState.CONNECTED)
        assert created[0].closed
        assert controller.symbol == "ethusdt"
        assert controller.aggregator is not first_aggregator
        info = controller.get_connection_info()
        assert info["state"] == "connected"
        assert info["provider"] == "a"
        assert info["symbol"] == "ethusdt"
        assert info["adapter"]["provider"] == "a"
        assert info["adapter"]["opened"]
    finally:
        await controller.disconnect()


@pytest.mark.asyncio
async def test_async_error_listener_is_awaited():
    received = []

    async def on_error(message):
        await asyncio.sleep(0)
        received.append(message)

    controller = FeedController([make_spec("a", "fail")], None, connect_timeout=1)
    await controller.connect("btcusdt", FeedCallbacks(on_error=on_error))
    await wait_for(lambda: received)

    assert controller.state == FeedState.FAILED
    assert received == ["All data providers failed for btcusdt"]
    await controller.disconnect()


@pytest.mark.asyncio
async def test_fallback_dropping_after_degraded_is_terminal():
    fallback_created = []
    controller = FeedController(
        [make_spec("a", "fail")],
        make_spec("poll", "drop", fallback_created),
        connect_timeout=1,
    )
    rec = _Recorder()
    await controller.connect("btcusdt", rec.callbacks())

    await wait_for(lambda: controller.state == FeedState.FAILED)
    await wait_for(lambda: rec.errors)

    assert len(fallback_created) == 1
    assert fallback_created[0].opened and fallback_created[0].closed
    assert len(rec.errors) == 1
    assert rec.errors[0].startswith("Fallback provider failed for btcusdt")
    assert controller.adapter is None
    await controller.disconnect()

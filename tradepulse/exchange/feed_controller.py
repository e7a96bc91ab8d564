"""
Failover Controller - keeps one symbol's candle series alive.

Walks an ordered provider list: each provider gets a bounded connect
window; a timeout or a non-intentional drop tears it down completely and
moves on to the next. When the list is exhausted the controller either
falls back to a degraded polling source or reports a hard error.

State machine::

    IDLE -> CONNECTING(0) -> CONNECTED(0) -> CONNECTING(1) -> ...
         -> EXHAUSTED -> DEGRADED (fallback) | FAILED (no fallback)

Every adapter is bound to a generation number. Any event (open, failure,
timeout) carrying an old generation is ignored, so a superseded adapter
can never move the state machine.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from tradepulse.core.error_handler import GracefulErrorHandler
from tradepulse.core.logger import get_logger
from tradepulse.data.aggregator import CandleAggregator
from tradepulse.data.models import Candle
from tradepulse.exchange.base import ProviderAdapter
from tradepulse.exchange.exceptions import ProvidersExhaustedError

logger = get_logger("feed_controller")

AdapterFactory = Callable[..., Optional[ProviderAdapter]]
HistoryFetcher = Callable[[str, int], Awaitable[List[Candle]]]


class FeedState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    EXHAUSTED = "exhausted"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass
class ProviderSpec:
    """One entry of the priority list.

    ``factory(symbol, aggregator, on_open, on_failure)`` returns a fresh
    adapter, or None when the provider has no mapping for the symbol.
    """
    name: str
    label: str
    factory: AdapterFactory
    history: Optional[HistoryFetcher] = None


@dataclass
class FeedCallbacks:
    on_candle: Optional[Callable[[Candle], None]] = None
    on_history: Optional[Callable[[List[Candle]], None]] = None
    on_status_change: Optional[Callable[[str, str], None]] = None
    on_error: Optional[Callable[[str], Any]] = None


class FeedController:
    """
    Owns the connection state for exactly one symbol subscription.

    Not safe for concurrent ``connect``/``disconnect`` from multiple
    callers; create one controller per subscription.
    """

    def __init__(
        self,
        providers: Sequence[ProviderSpec],
        fallback: Optional[ProviderSpec] = None,
        *,
        connect_timeout: float = 7.0,
        max_candles: int = 50,
        backfill_enabled: bool = True,
        backfill_limit: int = 50,
    ):
        self._providers: List[ProviderSpec] = list(providers)
        self._fallback = fallback
        self.connect_timeout = connect_timeout
        self.max_candles = max_candles
        self.backfill_enabled = backfill_enabled
        self.backfill_limit = backfill_limit

        self.state = FeedState.IDLE
        self.provider_index = -1
        self.active_provider: Optional[str] = None
        self.symbol: Optional[str] = None
        self.aggregator: Optional[CandleAggregator] = None
        self.attempts = 0
        self.connected_at: float = 0.0

        self._callbacks = FeedCallbacks()
        self._adapter: Optional[ProviderAdapter] = None
        self._generation = 0
        self._intentional = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._transitions: Set[asyncio.Task] = set()
        self._backfill_task: Optional[asyncio.Task] = None
        self._backfill_started = False
        self._error_handler = GracefulErrorHandler(notify_fn=self._emit_error)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def adapter(self) -> Optional[ProviderAdapter]:
        return self._adapter

    @property
    def provider_names(self) -> List[str]:
        return [p.name for p in self._providers]

    async def connect(self, symbol: str, callbacks: Optional[FeedCallbacks] = None) -> None:
        """Start a fresh session for ``symbol`` from the top of the list."""
        await self.disconnect()
        self._intentional = False
        self.symbol = symbol
        self._callbacks = callbacks or FeedCallbacks()
        self.aggregator = CandleAggregator(
            symbol,
            max_candles=self.max_candles,
            on_candle=self._callbacks.on_candle,
            on_history=self._callbacks.on_history,
        )
        self.attempts = 0
        self._backfill_started = False
        logger.info("Feed session starting", symbol=symbol, providers=self.provider_names)
        await self._enter_connecting(0)

    async def disconnect(self) -> None:
        """Intentional teardown. Idempotent; never triggers failover."""
        self._intentional = True
        self._generation += 1
        self._cancel_timer()

        pending = [t for t in self._transitions if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._transitions.clear()

        if self._backfill_task is not None and not self._backfill_task.done():
            self._backfill_task.cancel()
            await asyncio.gather(self._backfill_task, return_exceptions=True)
        self._backfill_task = None

        adapter, self._adapter = self._adapter, None
        if adapter is not None:
            await adapter.stop()

        if self.state != FeedState.IDLE:
            logger.info("Feed disconnected", symbol=self.symbol, state=self.state.value)
        self.state = FeedState.IDLE
        self.provider_index = -1
        self.active_provider = None

    def get_connection_info(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "state": self.state.value,
            "provider": self.active_provider,
            "provider_index": self.provider_index,
            "attempts": self.attempts,
            "candles": len(self.aggregator) if self.aggregator else 0,
            "seeded": self.aggregator.is_seeded if self.aggregator else False,
            "uptime_seconds": round(time.time() - self.connected_at, 1) if self.connected_at else 0,
            "adapter": self._adapter.get_info() if self._adapter else None,
        }

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _enter_connecting(self, index: int) -> None:
        self._cancel_timer()
        while index < len(self._providers):
            spec = self._providers[index]
            self._generation += 1
            gen = self._generation
            adapter = spec.factory(
                self.symbol,
                self.aggregator,
                self._bind_open(gen),
                self._bind_failure(gen),
            )
            if adapter is None:
                logger.info("Provider has no mapping for symbol", provider=spec.name, symbol=self.symbol)
                index += 1
                continue

            self.state = FeedState.CONNECTING
            self.provider_index = index
            self.active_provider = spec.name
            self.attempts += 1
            self._adapter = adapter
            self._notify_status(spec.label, f"Connecting to {spec.label}...")
            self._start_backfill(spec)
            self._timer = asyncio.get_running_loop().call_later(
                self.connect_timeout, self._on_timeout, gen,
            )
            await adapter.start()
            return

        await self._enter_exhausted()

    async def _enter_exhausted(self) -> None:
        self.state = FeedState.EXHAUSTED
        self.provider_index = -1
        self.active_provider = None
        logger.warning("All streaming providers exhausted", symbol=self.symbol)

        adapter = None
        if self._fallback is not None:
            self._generation += 1
            gen = self._generation
            adapter = self._fallback.factory(
                self.symbol, self.aggregator, None, self._bind_fallback_failure(gen),
            )
        if adapter is None:
            await self._fail(f"All data providers failed for {self.symbol}")
            return

        self.state = FeedState.DEGRADED
        self.active_provider = self._fallback.name
        self.attempts += 1
        self._adapter = adapter
        self._start_backfill(self._fallback)
        self._notify_status(self._fallback.label, adapter.connected_status)
        await adapter.start()

    async def _advance(self, gen: int, from_index: int, reason: str) -> None:
        adapter = self._adapter
        if adapter is not None:
            await adapter.stop()
            if self._adapter is adapter:
                self._adapter = None
        if self._intentional or gen != self._generation:
            return
        nxt = from_index + 1
        if nxt < len(self._providers):
            logger.warning(
                "Failing over to next provider",
                symbol=self.symbol,
                failed=self._providers[from_index].name,
                next=self._providers[nxt].name,
                reason=reason,
            )
        await self._enter_connecting(nxt)

    async def _fail(self, message: str) -> None:
        adapter, self._adapter = self._adapter, None
        if adapter is not None:
            await adapter.stop()
        self.state = FeedState.FAILED
        self.active_provider = None
        await self._error_handler.handle(
            ProvidersExhaustedError(message), component="feed", context=self.symbol or "",
        )

    # ------------------------------------------------------------------
    # Adapter events
    # ------------------------------------------------------------------

    def _bind_open(self, gen: int) -> Callable[[ProviderAdapter], None]:
        return lambda adapter: self._on_adapter_open(gen, adapter)

    def _bind_failure(self, gen: int) -> Callable[[ProviderAdapter, str], None]:
        return lambda adapter, reason: self._on_adapter_failure(gen, adapter, reason)

    def _bind_fallback_failure(self, gen: int) -> Callable[[ProviderAdapter, str], None]:
        return lambda adapter, reason: self._on_fallback_failure(gen, reason)

    def _is_current(self, gen: int) -> bool:
        return gen == self._generation and not self._intentional

    def _on_adapter_open(self, gen: int, adapter: ProviderAdapter) -> None:
        if not self._is_current(gen) or self.state != FeedState.CONNECTING:
            return
        self._cancel_timer()
        self.state = FeedState.CONNECTED
        self.connected_at = time.time()
        spec = self._providers[self.provider_index]
        logger.info("Provider connected", provider=spec.name, symbol=self.symbol)
        self._notify_status(spec.label, adapter.connected_status)

    def _on_adapter_failure(self, gen: int, adapter: ProviderAdapter, reason: str) -> None:
        if not self._is_current(gen):
            return
        self._cancel_timer()
        # Supersede before any await so a second event for this adapter is dropped
        self._generation += 1
        self._schedule(self._advance(self._generation, self.provider_index, reason))

    def _on_timeout(self, gen: int) -> None:
        self._timer = None
        if not self._is_current(gen) or self.state != FeedState.CONNECTING:
            return
        spec = self._providers[self.provider_index]
        logger.warning(
            "Provider connect timeout",
            provider=spec.name, symbol=self.symbol, timeout=self.connect_timeout,
        )
        self._generation += 1
        self._schedule(self._advance(self._generation, self.provider_index, "connect timeout"))

    def _on_fallback_failure(self, gen: int, reason: str) -> None:
        if not self._is_current(gen):
            return
        self._generation += 1
        self._schedule(self._fail(f"Fallback provider failed for {self.symbol}: {reason}"))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _schedule(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._transitions.add(task)
        task.add_done_callback(self._transition_done)

    def _transition_done(self, task: asyncio.Task) -> None:
        self._transitions.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Feed transition failed", symbol=self.symbol, error=repr(error))

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _start_backfill(self, spec: ProviderSpec) -> None:
        if not self.backfill_enabled or self._backfill_started or spec.history is None:
            return
        self._backfill_started = True
        self._backfill_task = asyncio.create_task(
            self._run_backfill(spec, self.symbol, self.aggregator),
            name=f"backfill:{self.symbol}",
        )

    async def _run_backfill(self, spec: ProviderSpec, symbol: str, aggregator: CandleAggregator) -> None:
        try:
            history = await spec.history(symbol, self.backfill_limit)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._error_handler.handle(e, component="backfill", context=symbol)
            return
        if aggregator is not self.aggregator or not history:
            return
        size = aggregator.seed(history)
        logger.info("History backfilled", symbol=symbol, source=spec.name, rows=len(history), candles=size)

    def _notify_status(self, provider: str, message: str) -> None:
        if self._callbacks.on_status_change is None:
            return
        try:
            self._callbacks.on_status_change(provider, message)
        except Exception as e:
            logger.error("Status listener error", symbol=self.symbol, error=repr(e))

    async def _emit_error(self, message: str) -> None:
        if self._callbacks.on_error is None:
            return
        try:
            result = self._callbacks.on_error(message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("Error listener failed", symbol=self.symbol, error=repr(e))

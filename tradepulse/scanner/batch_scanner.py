"""
Batch Scanner - rate-limited multi-asset opportunity scan.

Instruments are scanned in fixed-size batches: concurrently inside a
batch, sequentially across batches with a pause in between so the public
REST endpoints are not hammered. A failing instrument yields a
zero-confidence placeholder and never aborts the cycle.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, List, Optional, Sequence, Set, Tuple

from tradepulse.ai.rules import local_prediction
from tradepulse.core.config import RuleThresholds, ScannerConfig, TradePulseConfig
from tradepulse.core.error_handler import GracefulErrorHandler
from tradepulse.core.logger import get_logger, log_performance
from tradepulse.data.models import (
    Asset,
    Candle,
    Indicators,
    Prediction,
    ScanReport,
    ScanResult,
    SignalType,
)
from tradepulse.exchange.base import RestKlineClient
from tradepulse.exchange.binance import BinanceRestClient
from tradepulse.exchange.bybit import BybitRestClient
from tradepulse.exchange.exceptions import DataUnavailableError, FeedError
from tradepulse.utils.indicators import analyze_market

logger = get_logger("scanner")

UNAVAILABLE_RATIONALE = "Data Unavailable"


def unavailable_result(asset: Asset) -> ScanResult:
    return ScanResult(
        asset=asset,
        prediction=Prediction(probability=0, signal=SignalType.WAIT, rationale=UNAVAILABLE_RATIONALE),
        indicators=Indicators(),
        price=asset.initial_price,
    )


def rank_results(results: Sequence[ScanResult]) -> List[ScanResult]:
    """Drop zero-confidence entries, highest probability first, ties in scan order."""
    available = [r for r in results if r.prediction.probability > 0]
    return sorted(available, key=lambda r: r.prediction.probability, reverse=True)


class BatchScanner:
    def __init__(
        self,
        config: Optional[ScannerConfig] = None,
        sources: Sequence[RestKlineClient] = (),
        rules: Optional[RuleThresholds] = None,
    ):
        self.config = config or ScannerConfig()
        self.sources: List[RestKlineClient] = list(sources)
        self.rules = rules or RuleThresholds()
        self._error_handler = GracefulErrorHandler()

    @classmethod
    def from_config(cls, config: TradePulseConfig) -> "BatchScanner":
        timeout = config.scanner.fetch_timeout_seconds
        sources = [
            BinanceRestClient(config.feed.binance_rest_url, timeout_seconds=timeout),
            BybitRestClient(config.feed.bybit_rest_url, timeout_seconds=timeout),
        ]
        return cls(config.scanner, sources, config.predictor.rules)

    async def close(self) -> None:
        for source in self.sources:
            await source.close()

    async def fetch_candles(self, asset: Asset) -> Tuple[List[Candle], str]:
        """Candles from the first source that returns enough history.

        Each source gets ``fetch_timeout_seconds`` for the whole request,
        including a slowly trickling body.
        """
        errors = []
        for source in self.sources:
            try:
                candles = await asyncio.wait_for(
                    source.get_klines(asset.symbol, self.config.kline_limit),
                    timeout=self.config.fetch_timeout_seconds,
                )
            except asyncio.TimeoutError:
                errors.append(f"{source.name}: timed out")
                logger.debug("Scan source timed out", symbol=asset.symbol, source=source.name,
                             timeout=self.config.fetch_timeout_seconds)
                continue
            except FeedError as e:
                errors.append(f"{source.name}: {e}")
                logger.debug("Scan source failed", symbol=asset.symbol, source=source.name, error=repr(e))
                continue
            if len(candles) < self.config.min_candles:
                errors.append(f"{source.name}: {len(candles)} candles")
                continue
            return candles, source.name
        raise DataUnavailableError(f"{asset.symbol}: " + "; ".join(errors or ["no sources"]))

    async def scan_one(self, asset: Asset) -> ScanResult:
        try:
            candles, source = await self.fetch_candles(asset)
            indicators = analyze_market(candles)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._error_handler.handle(e, component="scan_instrument", context=asset.symbol)
            return unavailable_result(asset)

        prediction = local_prediction(indicators, self.rules)
        return ScanResult(
            asset=asset,
            prediction=prediction,
            indicators=indicators,
            price=candles[-1].close,
            source=source,
        )

    async def scan_all(self, assets: Sequence[Asset]) -> ScanReport:
        started_at = time.time()
        size = self.config.batch_size
        results: List[ScanResult] = []
        logger.info("Scan starting", assets=len(assets), batch_size=size)

        with log_performance(logger, "scan_all", slow_ms=30_000, assets=len(assets)) as timer:
            for start in range(0, len(assets), size):
                batch = assets[start:start + size]
                results.extend(await asyncio.gather(*(self.scan_one(a) for a in batch)))
                if start + size < len(assets) and self.config.batch_delay_seconds > 0:
                    await asyncio.sleep(self.config.batch_delay_seconds)

        report = ScanReport(
            results=results,
            ranked=rank_results(results),
            started_at=started_at,
            duration_ms=timer.elapsed_ms,
        )
        logger.info(
            "Scan complete",
            scanned=len(results),
            ranked=len(report.ranked),
            unavailable=report.failures,
            opportunities=len(report.opportunities(self.config.display_threshold)),
        )
        return report


class ScanScheduler:
    """
    Periodic driver for ``BatchScanner``.

    One run after ``initial_delay_seconds``, then one every
    ``interval_seconds`` measured from start. While a scan is running any
    further trigger is dropped, not queued.
    """

    def __init__(
        self,
        scanner: BatchScanner,
        assets: Sequence[Asset],
        config: Optional[ScannerConfig] = None,
        on_report: Optional[Callable[[ScanReport], None]] = None,
        error_handler: Optional[GracefulErrorHandler] = None,
    ):
        self.scanner = scanner
        self.assets = list(assets)
        self.config = config or scanner.config
        self.on_report = on_report
        self._error_handler = error_handler or GracefulErrorHandler()
        self._scanning = False
        self._loop_task: Optional[asyncio.Task] = None
        self._scan_tasks: Set[asyncio.Task] = set()
        self.last_report: Optional[ScanReport] = None
        self.last_scan_time: float = 0.0
        self.scans_completed = 0
        self.scans_skipped = 0

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def run_once(self) -> Optional[ScanReport]:
        """Run one scan now. Returns None if one is already in progress."""
        if self._scanning:
            self.scans_skipped += 1
            logger.info("Scan already in progress, trigger dropped")
            return None
        self._scanning = True
        try:
            report = await self.scanner.scan_all(self.assets)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._error_handler.handle(e, component="scan_scheduler")
            return None
        finally:
            self._scanning = False

        self.last_report = report
        self.last_scan_time = time.time()
        self.scans_completed += 1
        if self.on_report is not None:
            try:
                self.on_report(report)
            except Exception as e:
                logger.error("Scan report listener error", error=repr(e))
        return report

    def trigger(self) -> bool:
        """Fire a scan in the background. False if it was dropped."""
        if self._scanning:
            self.scans_skipped += 1
            logger.info("Scan already in progress, trigger dropped")
            return False
        task = asyncio.create_task(self.run_once())
        self._scan_tasks.add(task)
        task.add_done_callback(self._scan_tasks.discard)
        return True

    async def start(self) -> None:
        if self.is_running:
            return
        self._loop_task = asyncio.create_task(self._run_loop(), name="scan-scheduler")
        logger.info(
            "Scan scheduler started",
            assets=len(self.assets),
            initial_delay=self.config.initial_delay_seconds,
            interval=self.config.interval_seconds,
        )

    async def stop(self) -> None:
        tasks = [t for t in [self._loop_task, *self._scan_tasks] if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_task = None
        self._scan_tasks.clear()

    async def _run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        await asyncio.sleep(self.config.initial_delay_seconds)
        self.trigger()
        ticks = 1
        while True:
            deadline = started + ticks * self.config.interval_seconds
            await asyncio.sleep(max(0.0, deadline - loop.time()))
            self.trigger()
            ticks += 1

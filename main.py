#!/usr/bin/env python3
"""
TradePulse - headless entry point.

Commands:
  run      live feed for one symbol plus the periodic multi-asset scanner
  watch    live feed for one symbol only
  scan     one scan cycle, print the ranked opportunities, exit
  analyze  fetch a snapshot for one symbol and run the signal engine once
"""

from __future__ import annotations

import argparse
import asyncio
import signal as sig
import sys
from pathlib import Path
from typing import Optional

from tradepulse.ai.signal_engine import SignalEngine
from tradepulse.core.config import TradePulseConfig, load_config_with_overrides
from tradepulse.core.logger import bind_context, get_logger, setup_logging
from tradepulse.core.runtime_safety import install_asyncio_exception_handler
from tradepulse.data.assets import get_asset, select_assets
from tradepulse.data.models import Candle, ScanReport
from tradepulse.exchange.feed_controller import FeedCallbacks, FeedController
from tradepulse.exchange.providers import build_feed_controller
from tradepulse.scanner.batch_scanner import BatchScanner, ScanScheduler
from tradepulse.utils.indicators import analyze_market

logger = get_logger("main")


def _print_report(report: ScanReport, threshold: int) -> None:
    print(f"\nScanned {len(report.results)} assets in {report.duration_ms / 1000:.1f}s "
          f"({report.failures} unavailable)")
    opportunities = report.opportunities(threshold)
    if not opportunities:
        print(f"No opportunities >= {threshold}%")
    for result in opportunities:
        p = result.prediction
        print(f"  {result.asset.symbol:<12} {p.signal.value:<5} {p.probability:>3}%  "
              f"{result.price:<14.6g} {p.rationale}")


def _feed_callbacks(symbol: str) -> FeedCallbacks:
    def on_candle(candle: Candle) -> None:
        logger.debug("Candle", symbol=symbol, time=candle.time, close=candle.close, volume=candle.volume)

    def on_history(candles) -> None:
        logger.info("History loaded", symbol=symbol, candles=len(candles))

    def on_status(provider: str, message: str) -> None:
        logger.info("Feed status", symbol=symbol, provider=provider, status=message)

    def on_error(message: str) -> None:
        logger.error("Feed error", symbol=symbol, error=message)

    return FeedCallbacks(on_candle, on_history, on_status, on_error)


async def _wait_for_shutdown() -> None:
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for s in (sig.SIGINT, sig.SIGTERM):
        try:
            loop.add_signal_handler(s, shutdown_event.set)
        except NotImplementedError:
            sig.signal(s, lambda *_: loop.call_soon_threadsafe(shutdown_event.set))
    await shutdown_event.wait()
    logger.info("Shutdown signal received, cleaning up...")


async def run_live(config: TradePulseConfig, symbol: str, with_scanner: bool) -> int:
    asset = get_asset(symbol)
    if asset is None:
        logger.error("Unknown symbol", symbol=symbol)
        return 2

    install_asyncio_exception_handler(asyncio.get_running_loop(), logger)
    controller: FeedController = build_feed_controller(asset, config)
    scheduler: Optional[ScanScheduler] = None
    scanner: Optional[BatchScanner] = None

    await controller.connect(asset.symbol, _feed_callbacks(asset.symbol))
    if with_scanner and config.scanner.enabled:
        scanner = BatchScanner.from_config(config)
        assets = select_assets(config.scanner.symbols, include_simulated=config.scanner.include_simulated)
        scheduler = ScanScheduler(
            scanner,
            assets,
            on_report=lambda r: _print_report(r, config.scanner.display_threshold),
        )
        await scheduler.start()

    try:
        await _wait_for_shutdown()
    finally:
        if scheduler is not None:
            await scheduler.stop()
        if scanner is not None:
            await scanner.close()
        await controller.disconnect()
        logger.info("Stopped", **controller.get_connection_info())
    return 0


async def run_scan(config: TradePulseConfig) -> int:
    scanner = BatchScanner.from_config(config)
    assets = select_assets(config.scanner.symbols, include_simulated=config.scanner.include_simulated)
    try:
        report = await scanner.scan_all(assets)
    finally:
        await scanner.close()
    _print_report(report, config.scanner.display_threshold)
    return 0


async def run_analyze(config: TradePulseConfig, symbol: str) -> int:
    asset = get_asset(symbol)
    if asset is None:
        logger.error("Unknown symbol", symbol=symbol)
        return 2
    scanner = BatchScanner.from_config(config)
    try:
        candles, source = await scanner.fetch_candles(asset)
    except Exception as e:
        logger.error("Snapshot unavailable", symbol=symbol, error=repr(e))
        return 1
    finally:
        await scanner.close()

    indicators = analyze_market(candles)
    engine = SignalEngine(config.predictor)
    try:
        prediction = await engine.predict(
            asset.symbol,
            candles[-1].close,
            indicators,
            on_stream=lambda text: print(f"\r{text}", end="", flush=True),
        )
    finally:
        await engine.close()
    print()
    print(f"{asset.symbol} [{source}] {prediction.signal.value} {prediction.probability}%: {prediction.rationale}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="TradePulse market data and signal runner.")
    parser.add_argument("--config", default="config/config.yaml")
    parser.add_argument("--log-level", default=None)
    parser.add_argument("--json-logs", action="store_true")
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="live feed plus periodic scanner")
    run.add_argument("symbol", nargs="?", default="btcusdt")
    watch = sub.add_parser("watch", help="live feed only")
    watch.add_argument("symbol", nargs="?", default="btcusdt")
    sub.add_parser("scan", help="single scan cycle")
    analyze = sub.add_parser("analyze", help="one-shot prediction for a symbol")
    analyze.add_argument("symbol")
    return parser


def main(argv=None) -> int:
    args = _build_parser().parse_args(argv)
    overrides = {"app": {"log_level": args.log_level}} if args.log_level else None
    config = load_config_with_overrides(args.config, overrides)
    if not Path(args.config).exists():
        print(f"[WARN] {args.config} not found, using defaults")

    setup_logging(
        log_level=config.app.log_level,
        log_dir=config.app.log_dir,
        json_output=args.json_logs or config.app.json_logs,
    )
    logger.info(
        "Starting TradePulse",
        version=config.app.version,
        command=args.command or "run",
        remote_predictor=config.predictor.remote_enabled,
    )

    command = args.command or "run"
    bind_context(command=command)
    try:
        if command == "scan":
            return asyncio.run(run_scan(config))
        if command == "analyze":
            return asyncio.run(run_analyze(config, args.symbol))
        symbol = getattr(args, "symbol", "btcusdt")
        return asyncio.run(run_live(config, symbol, with_scanner=(command == "run")))
    except KeyboardInterrupt:
        logger.info("Shutdown requested via keyboard interrupt")
        return 0


if __name__ == "__main__":
    sys.exit(main())

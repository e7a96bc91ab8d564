"""
Graceful Error Handler - keeps the feed and scanner alive.

Classifies errors by the component that raised them so a single failing
provider or instrument degrades output instead of halting it.

Rules:
- A provider dropping is DEGRADED: the failover controller moves on
- A single instrument failing inside a scan is TRANSIENT
- Only "no data source left for the symbol" is CRITICAL
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import traceback
from typing import Any, Optional

from tradepulse.core.logger import get_logger
from tradepulse.exchange.exceptions import (
    MalformedPayloadError,
    ProvidersExhaustedError,
    TransientFeedError,
)

logger = get_logger("error_handler")


class ErrorSeverity(enum.Enum):
    """How badly an error affects the data the consumer receives."""

    CRITICAL = "critical"    # No live data left for the symbol
    DEGRADED = "degraded"    # Lower-fidelity data, keep going
    TRANSIENT = "transient"  # Log + continue silently


_DEGRADING_COMPONENTS = frozenset({
    "provider",
    "websocket",
    "feed",
    "predictor",
    "scan_scheduler",
})

_TRANSIENT_COMPONENTS = frozenset({
    "backfill",
    "scan_instrument",
    "poller",
})


class GracefulErrorHandler:
    """
    Centralized error classification and handling.

    Usage::

        handler = GracefulErrorHandler(notify_fn=callbacks.on_error)
        await handler.handle(err, component="feed", context="btcusdt")
    """

    def __init__(self, notify_fn: Optional[Any] = None):
        self._notify_fn = notify_fn

    def classify_error(
        self,
        error: BaseException,
        *,
        component: str = "",
    ) -> ErrorSeverity:
        """Classify an error by severity based on its type and component."""
        if isinstance(error, ProvidersExhaustedError):
            return ErrorSeverity.CRITICAL

        comp = component.lower().strip()
        if comp in _TRANSIENT_COMPONENTS:
            return ErrorSeverity.TRANSIENT
        if comp in _DEGRADING_COMPONENTS:
            return ErrorSeverity.DEGRADED

        if isinstance(error, (TransientFeedError, MalformedPayloadError)):
            return ErrorSeverity.TRANSIENT
        if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError, OSError)):
            return ErrorSeverity.TRANSIENT

        return ErrorSeverity.DEGRADED

    async def handle(
        self,
        error: BaseException,
        *,
        component: str = "",
        context: str = "",
    ) -> ErrorSeverity:
        """
        Classify, log, and optionally notify about an error.

        Returns the severity so callers can decide what to do.
        """
        severity = self.classify_error(error, component=component)
        tb = traceback.format_exception(type(error), error, error.__traceback__)
        tb_str = "".join(tb[-3:])

        msg = (
            f"[{severity.value.upper()}] {component or 'unknown'}"
            f"{(' / ' + context) if context else ''}: "
            f"{type(error).__name__}: {error}"
        )

        if severity == ErrorSeverity.CRITICAL:
            logger.critical(msg, traceback=tb_str)
        elif severity == ErrorSeverity.DEGRADED:
            logger.warning(msg, traceback=tb_str)
        else:
            logger.info(msg)

        if severity in (ErrorSeverity.CRITICAL, ErrorSeverity.DEGRADED) and self._notify_fn:
            try:
                result = self._notify_fn(str(error) if severity == ErrorSeverity.CRITICAL else msg)
                if inspect.isawaitable(result):
                    await result
            except Exception as notify_error:
                logger.warning("Error notification failed", error=repr(notify_error))

        return severity

"""
Runtime safety hooks for the headless runner.

Background tasks (adapters, backfills, scans) are fire-and-forget; the
loop exception handler makes sure anything they leak is logged with a
traceback instead of surfacing as "exception was never retrieved".
"""

from __future__ import annotations

import asyncio
import traceback
from typing import Any


def format_traceback(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def install_asyncio_exception_handler(loop: asyncio.AbstractEventLoop, logger: Any) -> None:
    """Route unhandled loop/task exceptions to the structured logger."""

    def _handler(_loop: asyncio.AbstractEventLoop, context: dict) -> None:
        message = context.get("message", "asyncio_exception")
        exc = context.get("exception")
        task = context.get("task") or context.get("future")
        task_name = task.get_name() if isinstance(task, asyncio.Task) else None
        if isinstance(exc, BaseException):
            logger.error(
                "Asyncio exception",
                message=message,
                task=task_name,
                error_type=type(exc).__name__,
                error=str(exc),
                traceback=format_traceback(exc),
            )
        else:
            logger.error("Asyncio exception", message=message, task=task_name)

    loop.set_exception_handler(_handler)

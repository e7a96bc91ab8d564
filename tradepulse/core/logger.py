"""
Structured Logging - structlog rendered through stdlib handlers.

Three sinks: stdout (colored console or JSON), a rotating main log and a
rotating error-only log. Secrets are redacted by a processor before any
renderer sees the event, both as named fields (``api_key=...``) and when
embedded in strings such as httpx error messages.
"""

from __future__ import annotations

import logging
import re
import sys
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List

import structlog


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------

_SECRET_FIELDS = ("api_key", "apikey", "secret", "token", "password")

# Gemini keys leak through request URLs (?key=...) and raw exception text.
_URL_KEY_RE = re.compile(r"([?&]key=)[^&\s'\"]+")
_GOOGLE_KEY_RE = re.compile(r"AIza[0-9A-Za-z_\-]{20,}")


def redact_text(text: str) -> str:
    text = _URL_KEY_RE.sub(r"\1<redacted>", text)
    return _GOOGLE_KEY_RE.sub("<redacted>", text)


def _mask_secret(value: Any) -> str:
    value = str(value)
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}****{value[-4:]}"


def _redact(value: Any) -> Any:
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return {k: _mask_secret(v) if _is_secret(k) else _redact(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_redact(v) for v in value]
    if isinstance(value, tuple):
        return tuple(_redact(v) for v in value)
    return value


def _is_secret(key: Any) -> bool:
    lowered = str(key).lower()
    return any(s in lowered for s in _SECRET_FIELDS)


def redact_secrets(_, __, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor: mask secret fields, scrub keys out of strings."""
    for key, value in list(event_dict.items()):
        event_dict[key] = _mask_secret(value) if _is_secret(key) else _redact(value)
    return event_dict


# ---------------------------------------------------------------------------
# Performance Timer
# ---------------------------------------------------------------------------

class PerformanceTimer:
    """Times a block; warns when it runs past ``slow_ms``, logs errors it sees."""

    def __init__(self, logger: Any, operation: str, slow_ms: float = 1000.0, **context):
        self.logger = logger
        self.operation = operation
        self.slow_ms = slow_ms
        self.context = context
        self._started = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "PerformanceTimer":
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.elapsed_ms = (time.perf_counter() - self._started) * 1000
        duration = round(self.elapsed_ms, 2)
        if exc_type is not None:
            self.logger.error(f"{self.operation} failed", duration_ms=duration,
                              error=repr(exc_val), **self.context)
        elif self.elapsed_ms > self.slow_ms:
            self.logger.warning(f"{self.operation} slow", duration_ms=duration,
                                slow_ms=self.slow_ms, **self.context)
        else:
            self.logger.debug(f"{self.operation} completed", duration_ms=duration, **self.context)
        return False


# ---------------------------------------------------------------------------
# Logger Setup
# ---------------------------------------------------------------------------

def _rotating(path: Path, level: int, max_mb: int, backups: int) -> logging.Handler:
    handler = RotatingFileHandler(path, encoding="utf-8", maxBytes=max_mb * 1024 * 1024, backupCount=backups)
    handler.setLevel(level)
    return handler


def _install_handlers(level: int, handlers: List[logging.Handler]) -> logging.Logger:
    root = logging.getLogger()
    root.setLevel(level)
    # setup_logging may run more than once per process (tests, CLI re-entry)
    for existing in root.handlers[:]:
        existing.close()
        root.removeHandler(existing)
    for handler in handlers:
        root.addHandler(handler)
    return root


def setup_logging(
    log_level: str = "INFO",
    log_dir: str = "logs",
    json_output: bool = False,
) -> None:
    """
    Configure structlog and the stdlib root logger.

    Library loggers (httpx, websockets) flow through the same formatter;
    they are capped at WARNING because httpx logs every request at INFO.
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    level = getattr(logging, str(log_level).upper(), logging.INFO)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    root = _install_handlers(level, [
        _rotating(log_path / "tradepulse.log", level, max_mb=20, backups=5),
        _rotating(log_path / "errors.log", logging.ERROR, max_mb=5, backups=3),
        console,
    ])

    for name in ("httpx", "httpcore", "websockets", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)

    shared = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        redact_secrets,
    ]
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=True, pad_event=40)
    )

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=shared,
    )
    for handler in root.handlers:
        handler.setFormatter(formatter)


def bind_context(**values: Any) -> None:
    """Attach fields (symbol, command) to every event logged from this context."""
    structlog.contextvars.bind_contextvars(**values)


def get_logger(name: str = "tradepulse") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_performance(logger: Any, operation: str, **kwargs) -> PerformanceTimer:
    return PerformanceTimer(logger, operation, **kwargs)

"""
Configuration Manager - Loads and validates all system configuration.

Merges YAML config with environment variables. Environment variables take
precedence over YAML values for deployment flexibility. Every tunable the
feed, scanner and signal engine read lives here, so provider order, batch
sizing and timeouts change without touching the state machine.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator


def _as_bool(v: str) -> bool:
    return v.lower() in ("1", "true", "yes", "on")


def _as_list(v: str) -> List[str]:
    return [s.strip().lower() for s in v.split(",") if s.strip()]


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------

_ENV_MAPPINGS: Dict[str, tuple] = {
    "LOG_LEVEL": ("app", "log_level"),
    "LOG_DIR": ("app", "log_dir"),
    "LOG_JSON": ("app", "json_logs", _as_bool),
    "FEED_PROVIDER_ORDER": ("feed", "provider_order", _as_list),
    "FEED_FALLBACK_PROVIDER": ("feed", "fallback_provider"),
    "FEED_CONNECT_TIMEOUT": ("feed", "connect_timeout_seconds", float),
    "FEED_POLL_INTERVAL": ("feed", "poll_interval_seconds", float),
    "FEED_MAX_CANDLES": ("feed", "max_candles", int),
    "FEED_BACKFILL_ENABLED": ("feed", "backfill_enabled", _as_bool),
    "FEED_BACKFILL_TIMEOUT": ("feed", "backfill_timeout_seconds", float),
    "BINANCE_WS_URL": ("feed", "binance_ws_url"),
    "BINANCE_REST_URL": ("feed", "binance_rest_url"),
    "BYBIT_WS_URL": ("feed", "bybit_ws_url"),
    "BYBIT_REST_URL": ("feed", "bybit_rest_url"),
    "COINGECKO_API_URL": ("feed", "coingecko_url"),
    "SCAN_BATCH_SIZE": ("scanner", "batch_size", int),
    "SCAN_BATCH_DELAY": ("scanner", "batch_delay_seconds", float),
    "SCAN_INTERVAL_SECONDS": ("scanner", "interval_seconds", float),
    "SCAN_INITIAL_DELAY": ("scanner", "initial_delay_seconds", float),
    "SCAN_FETCH_TIMEOUT": ("scanner", "fetch_timeout_seconds", float),
    "SCAN_MIN_CANDLES": ("scanner", "min_candles", int),
    "SCAN_DISPLAY_THRESHOLD": ("scanner", "display_threshold", int),
    "SCAN_INCLUDE_SIMULATED": ("scanner", "include_simulated", _as_bool),
    "SCAN_SYMBOLS": ("scanner", "symbols", _as_list),
    "PREDICTION_TIMEOUT": ("predictor", "timeout_seconds", float),
    "PREDICTION_CACHE_TTL": ("predictor", "cache_ttl_seconds", float),
    "GEMINI_API_KEY": ("predictor", "api_key"),
    "GEMINI_MODEL": ("predictor", "model"),
    "GEMINI_BASE_URL": ("predictor", "base_url"),
}


def _apply_env_overrides(config: Dict[str, Any]) -> None:
    """Override YAML values with environment variables where set."""
    for env_key, mapping in _ENV_MAPPINGS.items():
        value = os.getenv(env_key)
        if value is None:
            continue
        section, key = mapping[0], mapping[1]
        converter = mapping[2] if len(mapping) > 2 else str
        try:
            converted = converter(value)
        except (ValueError, TypeError) as e:
            logging.getLogger("config").warning(
                "Env %s=%r failed to convert: %s. Using YAML value.",
                env_key, value, e,
            )
            continue
        if not isinstance(config.get(section), dict):
            config[section] = {}
        config[section][key] = converted


# ---------------------------------------------------------------------------
# Pydantic Configuration Models
# ---------------------------------------------------------------------------

class AppConfig(BaseModel):
    name: str = "TradePulse"
    version: str = "1.0.0"
    log_level: str = "INFO"
    log_dir: str = "logs"
    json_logs: bool = False


class FeedConfig(BaseModel):
    # Streaming/polling providers tried in order; the fallback is the degraded
    # terminal source once the list is exhausted ("" disables it).
    provider_order: List[str] = Field(default_factory=lambda: ["binance", "bybit"])
    fallback_provider: str = "coingecko"
    connect_timeout_seconds: float = 7.0
    poll_interval_seconds: float = 3.0
    max_candles: int = 50
    backfill_enabled: bool = True
    backfill_limit: int = 50
    backfill_timeout_seconds: float = 3.0
    simulation_tick_seconds: float = 1.0
    binance_ws_url: str = "wss://stream.binance.com:9443/ws"
    binance_rest_url: str = "https://api.binance.com"
    bybit_ws_url: str = "wss://stream.bybit.com/v5/public/spot"
    bybit_rest_url: str = "https://api.bybit.com"
    bybit_ping_interval_seconds: float = 20.0
    coingecko_url: str = "https://api.coingecko.com/api/v3"

    @field_validator("provider_order")
    @classmethod
    def _dedupe_order(cls, v: List[str]) -> List[str]:
        seen: List[str] = []
        for name in v:
            name = name.strip().lower()
            if name and name not in seen:
                seen.append(name)
        return seen

    @field_validator("fallback_provider")
    @classmethod
    def _normalize_fallback(cls, v: str) -> str:
        return (v or "").strip().lower()

    @field_validator("connect_timeout_seconds", "poll_interval_seconds", "backfill_timeout_seconds")
    @classmethod
    def _positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("max_candles")
    @classmethod
    def _window_size(cls, v: int) -> int:
        if v < 2:
            raise ValueError("max_candles must be at least 2")
        return v


class ScannerConfig(BaseModel):
    enabled: bool = True
    # Empty list scans every catalog asset.
    symbols: List[str] = Field(default_factory=list)
    batch_size: int = 5
    batch_delay_seconds: float = 0.5
    interval_seconds: float = 60.0
    initial_delay_seconds: float = 5.0
    fetch_timeout_seconds: float = 3.0
    kline_limit: int = 50
    min_candles: int = 30
    display_threshold: int = 80
    include_simulated: bool = False

    @field_validator("batch_size")
    @classmethod
    def _batch_size_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("batch_size must be at least 1")
        return v

    @field_validator("batch_delay_seconds", "initial_delay_seconds")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        return max(0.0, v)

    @field_validator("interval_seconds", "fetch_timeout_seconds")
    @classmethod
    def _positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @model_validator(mode="after")
    def _history_fits_limit(self) -> "ScannerConfig":
        if self.min_candles > self.kline_limit:
            raise ValueError("min_candles cannot exceed kline_limit")
        return self


class RuleThresholds(BaseModel):
    """Thresholds of the deterministic local rule table."""
    extreme_oversold_rsi: float = 15.0
    extreme_overbought_rsi: float = 85.0
    extreme_probability: int = 96
    trend_buy_rsi_low: float = 55.0
    trend_buy_rsi_high: float = 75.0
    trend_sell_rsi_low: float = 25.0
    trend_sell_rsi_high: float = 45.0
    trend_probability: int = 82
    noise_floor: float = 45.0
    noise_cap: float = 60.0
    noise_scale: float = 100.0


class PredictorConfig(BaseModel):
    api_key: str = ""
    model: str = "gemini-1.5-flash"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    timeout_seconds: float = 10.0
    cache_ttl_seconds: float = 60.0
    rules: RuleThresholds = Field(default_factory=RuleThresholds)

    @property
    def remote_enabled(self) -> bool:
        return bool(self.api_key.strip())


class TradePulseConfig(BaseModel):
    """Master configuration model with full validation."""
    app: AppConfig = Field(default_factory=AppConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    predictor: PredictorConfig = Field(default_factory=PredictorConfig)


# ---------------------------------------------------------------------------
# Configuration Manager (Singleton)
# ---------------------------------------------------------------------------

def _read_yaml(config_path: str) -> Dict[str, Any]:
    config_file = Path(config_path)
    if not config_file.exists():
        return {}
    with open(config_file, "r") as f:
        return yaml.safe_load(f) or {}


class ConfigManager:
    """
    Thread-safe process configuration.

    Loads configuration from YAML file, then overlays environment
    variables. Validates all values through Pydantic models.
    """

    _instance: Optional[ConfigManager] = None
    _config: Optional[TradePulseConfig] = None
    _lock: threading.Lock = threading.Lock()

    def __new__(cls) -> ConfigManager:
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._config is None:
            self.load()

    def load(self, config_path: str = "config/config.yaml") -> TradePulseConfig:
        """Load configuration from YAML + environment variables."""
        load_dotenv()
        yaml_config = _read_yaml(config_path)
        _apply_env_overrides(yaml_config)
        self._config = TradePulseConfig(**yaml_config)
        return self._config

    @property
    def config(self) -> TradePulseConfig:
        if self._config is None:
            self.load()
        return self._config

    def get(self, dotpath: str, default: Any = None) -> Any:
        """
        Access config values using dot notation.

        Example: config.get("scanner.batch_size") -> 5
        """
        obj: Any = self.config
        for key in dotpath.split("."):
            if hasattr(obj, key):
                obj = getattr(obj, key)
            elif isinstance(obj, dict) and key in obj:
                obj = obj[key]
            else:
                return default
        return obj

    def to_dict(self) -> Dict[str, Any]:
        return self._config.model_dump() if self._config else {}


def get_config() -> TradePulseConfig:
    """Get the global configuration instance."""
    return ConfigManager().config


def load_config_with_overrides(
    config_path: str = "config/config.yaml",
    overrides: Optional[Dict[str, Any]] = None,
) -> TradePulseConfig:
    """Load a fresh config (YAML + env) with optional deep overrides."""
    load_dotenv()
    yaml_config = _read_yaml(config_path)
    _apply_env_overrides(yaml_config)

    def _deep_update(dst: Dict[str, Any], src: Dict[str, Any]) -> None:
        for key, value in (src or {}).items():
            if isinstance(value, dict) and isinstance(dst.get(key), dict):
                _deep_update(dst[key], value)
            else:
                dst[key] = value

    if overrides:
        _deep_update(yaml_config, overrides)

    return TradePulseConfig(**yaml_config)

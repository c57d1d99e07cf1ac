"""
Configuration Manager - Loads and validates process-wide settings.

Merges YAML config with environment variables. Environment variables take
precedence over YAML values so secrets (signing key, RPC URLs) never have
to live in the config file.

Per-user trading parameters are not configured here; they are read from
the bot store every cycle (see ``polybot.core.models.BotConfig``).
"""

from __future__ import annotations

import math
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator


DEFAULT_INDICATOR_WEIGHTS: Dict[str, float] = {
    "rsi": 0.20,
    "macd": 0.25,
    "vwap": 0.20,
    "heiken_ashi": 0.20,
    "delta": 0.15,
}

# Signer lock wait plus nonce, gas estimate, build and broadcast.
SUBMIT_STEPS = 5
RECEIPT_SLACK_SECONDS = 5.0


def max_submission_seconds(call_timeout: float, receipt_timeout: float) -> float:
    """Longest an on-chain submission can take before it fails on its own."""
    return SUBMIT_STEPS * call_timeout + receipt_timeout + RECEIPT_SLACK_SECONDS


WEIGHT_SUM_TOLERANCE = 1e-6


def validate_weights(weights: Dict[str, float]) -> Dict[str, float]:
    """Reject weight vectors that are empty, negative or do not sum to 1.0."""
    if not weights:
        raise ValueError("indicator weights must not be empty")
    for name, w in weights.items():
        if not isinstance(w, (int, float)) or math.isnan(w) or w < 0:
            raise ValueError(f"indicator weight for '{name}' must be a non-negative number")
    total = sum(weights.values())
    if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
        raise ValueError(f"indicator weights must sum to 1.0 (got {total:.6f})")
    return {k: float(v) for k, v in weights.items()}


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------

def _truthy(v: str) -> bool:
    return v.strip().lower() in ("1", "true", "yes", "on")


def _csv(v: str) -> List[str]:
    return [x.strip() for x in v.split(",") if x.strip()]


def _apply_env_overrides(config: Dict[str, Any]) -> None:
    """Override YAML values with environment variables where set."""
    def _set_path(root: Dict[str, Any], path: tuple, v: Any) -> None:
        d: Dict[str, Any] = root
        for key in path[:-1]:
            nxt = d.get(key)
            if not isinstance(nxt, dict):
                nxt = {}
                d[key] = nxt
            d = nxt
        d[path[-1]] = v

    env_mappings = {
        "LOG_LEVEL": ("app", "log_level"),
        "LOG_DIR": ("app", "log_dir"),
        "LOG_JSON": ("app", "json_logs", _truthy),
        "DB_PATH": ("app", "db_path"),
        "POLYMARKET_WS_URL": ("market", "ws_url"),
        "POLYMARKET_API_URL": ("market", "rest_url"),
        "POLYMARKET_SERIES_ID": ("market", "series_id"),
        "POLYMARKET_SERIES_SLUG": ("market", "series_slug"),
        "POLYGON_RPC_URL": ("price", "rpc_url"),
        "CHAINLINK_BTC_USD_ADDRESS": ("price", "chainlink_address"),
        "BINANCE_API_URL": ("price", "binance_url"),
        "POLYGON_RPC_URLS": ("execution", "rpc_urls", _csv),
        "BOT_PRIVATE_KEY": ("execution", "private_key"),
        "POLYMARKET_BOT_PROXY_ADDRESS": ("execution", "proxy_address"),
        "EXECUTION_RECEIPT_TIMEOUT": ("execution", "receipt_timeout_seconds", float),
        "BOT_CALL_TIMEOUT": ("bot", "call_timeout_seconds", float),
        "BOT_TRADE_TIMEOUT": ("bot", "trade_timeout_seconds", float),
        "BOT_CHECK_INTERVAL_SECONDS": ("manager", "check_interval_seconds", float),
        "MAX_CONCURRENT_BOTS": ("manager", "max_concurrent_bots", int),
    }

    for env_var, mapping in env_mappings.items():
        value = os.getenv(env_var)
        if value is None or value == "":
            continue
        path = mapping[:2]
        caster = mapping[2] if len(mapping) > 2 else str
        try:
            _set_path(config, path, caster(value))
        except (TypeError, ValueError):
            # Leave the YAML value in place; pydantic reports the final state.
            continue


# ---------------------------------------------------------------------------
# Config Sections
# ---------------------------------------------------------------------------

class AppConfig(BaseModel):
    name: str = "PolyBot"
    log_level: str = "INFO"
    log_dir: str = "logs"
    json_logs: bool = False
    db_path: str = "data/polybot.db"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        v = str(v).upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return v


class MarketFeedConfig(BaseModel):
    ws_url: str = "wss://ws-live-data.polymarket.com"
    rest_url: str = "https://clob.polymarket.com"
    series_id: str = "10192"
    series_slug: str = "btc-up-or-down-15m"
    reconnect_delay_seconds: float = 5.0
    http_timeout_seconds: float = 10.0

    @field_validator("reconnect_delay_seconds", "http_timeout_seconds")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v


class PriceFeedConfig(BaseModel):
    rpc_url: str = "https://polygon-rpc.com"
    # Chainlink BTC/USD aggregator on Polygon mainnet
    chainlink_address: str = "0xc907E116054Ad103354f2D350FD2514433D57F6f"
    chainlink_decimals: int = 8
    binance_url: str = "https://api.binance.com"
    symbol: str = "BTCUSDT"
    http_timeout_seconds: float = 10.0
    warmup_minutes: int = 60

    @field_validator("warmup_minutes")
    @classmethod
    def validate_warmup(cls, v):
        if v < 0 or v > 1000:
            raise ValueError("warmup_minutes must be between 0 and 1000")
        return v


class ExecutionConfig(BaseModel):
    rpc_urls: List[str] = Field(default_factory=lambda: ["https://polygon-rpc.com"])
    private_key: str = ""
    proxy_address: str = ""
    chain_id: int = 137
    gas_buffer_pct: int = 20
    receipt_timeout_seconds: float = 120.0

    @field_validator("gas_buffer_pct")
    @classmethod
    def validate_gas_buffer(cls, v):
        if v < 0 or v > 200:
            raise ValueError("gas_buffer_pct must be between 0 and 200")
        return v

    @property
    def enabled(self) -> bool:
        return bool(self.private_key and self.proxy_address and self.rpc_urls)


class BotRuntimeConfig(BaseModel):
    call_timeout_seconds: float = 30.0
    # Covers the limit checks, submission and the receipt wait.
    trade_timeout_seconds: float = 300.0
    warmup_volume: float = 1000.0

    @field_validator("call_timeout_seconds", "trade_timeout_seconds")
    @classmethod
    def validate_timeouts(cls, v):
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v


class ManagerConfig(BaseModel):
    check_interval_seconds: float = 60.0
    max_concurrent_bots: int = 100
    shutdown_timeout_seconds: float = 30.0

    @field_validator("max_concurrent_bots")
    @classmethod
    def validate_max_bots(cls, v):
        if v < 1:
            raise ValueError("max_concurrent_bots must be at least 1")
        return v


class SignalConfig(BaseModel):
    weights: Dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_INDICATOR_WEIGHTS)
    )

    @field_validator("weights")
    @classmethod
    def validate_weight_sum(cls, v):
        return validate_weights(v)


class Settings(BaseModel):
    """Master configuration model."""
    app: AppConfig = Field(default_factory=AppConfig)
    market: MarketFeedConfig = Field(default_factory=MarketFeedConfig)
    price: PriceFeedConfig = Field(default_factory=PriceFeedConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    bot: BotRuntimeConfig = Field(default_factory=BotRuntimeConfig)
    manager: ManagerConfig = Field(default_factory=ManagerConfig)
    signal: SignalConfig = Field(default_factory=SignalConfig)

    @model_validator(mode="after")
    def validate_trade_timeout(self):
        floor = max_submission_seconds(
            self.bot.call_timeout_seconds, self.execution.receipt_timeout_seconds
        )
        if self.bot.trade_timeout_seconds <= floor:
            raise ValueError(
                f"bot.trade_timeout_seconds must exceed the submission worst case ({floor:.0f}s)"
            )
        return self


# ---------------------------------------------------------------------------
# Config Manager (Singleton)
# ---------------------------------------------------------------------------

class ConfigManager:
    """
    Thread-safe configuration manager.

    Loads configuration from YAML file, then overlays environment
    variables. Validates all values through Pydantic models.
    """

    _instance: Optional[ConfigManager] = None
    _config: Optional[Settings] = None
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

    def load(self, config_path: str = "config/config.yaml") -> Settings:
        """Load configuration from YAML + environment variables."""
        load_dotenv()

        yaml_config: Dict[str, Any] = {}
        config_file = Path(config_path)
        if config_file.exists():
            with open(config_file, "r") as f:
                yaml_config = yaml.safe_load(f) or {}

        _apply_env_overrides(yaml_config)

        self._config = Settings(**yaml_config)
        return self._config

    @property
    def config(self) -> Settings:
        """Get the current validated configuration."""
        if self._config is None:
            self.load()
        return self._config

    def get(self, dotpath: str, default: Any = None) -> Any:
        """
        Access config values using dot notation.

        Example: config.get("manager.check_interval_seconds") -> 60.0
        """
        obj = self._config
        for key in dotpath.split("."):
            if hasattr(obj, key):
                obj = getattr(obj, key)
            elif isinstance(obj, dict) and key in obj:
                obj = obj[key]
            else:
                return default
        return obj


def get_config() -> Settings:
    """Get the global configuration instance."""
    return ConfigManager().config

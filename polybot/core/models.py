"""
Domain models shared by the indicator bank, signal engine, monitor,
executor and bot lifecycle code.

Value objects are dataclasses; rows read from the external store that carry
user-editable parameters are pydantic models so bad values are rejected at
the boundary instead of deep inside a trading cycle.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(ts: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


# ---------------------------------------------------------------------------
# Market data
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PricePoint:
    price: float
    timestamp: datetime
    source: str = "unknown"


@dataclass(frozen=True)
class MarketSnapshot:
    """One Polymarket BTC up/down market as last seen by the monitor."""
    id: str
    question: str
    yes_price: float
    no_price: float
    volume: float
    liquidity: float
    expires_at: datetime
    slug: str = ""

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return ensure_utc(self.expires_at) <= (now or utc_now())

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> MarketSnapshot:
        """Build a snapshot from a feed or REST payload (camelCase keys)."""
        expires_raw = data.get("expiresAt") or data.get("endDate") or data.get("expires_at")
        if isinstance(expires_raw, (int, float)):
            # Epoch seconds or milliseconds
            seconds = expires_raw / 1000.0 if expires_raw > 1e11 else float(expires_raw)
            expires_at = datetime.fromtimestamp(seconds, tz=timezone.utc)
        elif isinstance(expires_raw, str):
            expires_at = ensure_utc(datetime.fromisoformat(expires_raw.replace("Z", "+00:00")))
        else:
            raise ValueError("market payload has no expiry")
        return cls(
            id=str(data["id"]),
            question=str(data.get("question", "")),
            yes_price=float(data.get("yesPrice", 0) or 0),
            no_price=float(data.get("noPrice", 0) or 0),
            volume=float(data.get("volume", 0) or 0),
            liquidity=float(data.get("liquidity", 0) or 0),
            expires_at=expires_at,
            slug=str(data.get("slug", "") or ""),
        )


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

class Direction(str, enum.Enum):
    UP = "UP"
    DOWN = "DOWN"


@dataclass(frozen=True)
class TradeSignal:
    """A directional call produced fresh each cycle. Never mutated."""
    direction: Direction
    confidence: float
    edge: float
    market_id: str
    entry_price: float
    reasoning: str
    indicator_scores: Dict[str, float] = field(default_factory=dict)
    market_question: str = ""
    reference_price: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction.value,
            "confidence": round(self.confidence, 4),
            "edge": round(self.edge, 6),
            "market_id": self.market_id,
            "market_question": self.market_question,
            "entry_price": self.entry_price,
            "reference_price": self.reference_price,
            "reasoning": self.reasoning,
            "indicator_scores": dict(self.indicator_scores),
            "timestamp": self.timestamp.isoformat(),
        }


# ---------------------------------------------------------------------------
# Users and per-user configuration (external, re-read every cycle)
# ---------------------------------------------------------------------------

class BotConfig(BaseModel):
    """Per-user risk and strategy parameters owned by the web application."""
    user_id: int
    wallet_address: Optional[str] = None
    is_active: bool = False
    max_position_size: float = 50.0
    max_open_positions: int = 5
    max_daily_trades: int = 10
    max_daily_loss: float = 25.0
    edge_threshold: float = 0.05
    kelly_fraction: float = 0.25
    run_interval_seconds: int = 60

    @field_validator("max_position_size", "max_daily_loss")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("kelly_fraction")
    @classmethod
    def validate_kelly(cls, v):
        if v < 0 or v > 1:
            raise ValueError("kelly_fraction must be between 0 and 1")
        return v

    @field_validator("edge_threshold")
    @classmethod
    def validate_edge_threshold(cls, v):
        if v < 0 or v > 1:
            raise ValueError("edge_threshold must be between 0 and 1")
        return v

    @field_validator("run_interval_seconds")
    @classmethod
    def validate_interval(cls, v):
        if v < 1 or v > 86400:
            raise ValueError("run_interval_seconds must be between 1 and 86400")
        return v


class UserRecord(BaseModel):
    id: int
    wallet_address: Optional[str] = None
    subscription_tier: str = "none"
    subscription_expires_at: Optional[datetime] = None

    def subscription_expired(self, now: Optional[datetime] = None) -> bool:
        if self.subscription_expires_at is None:
            return False
        return ensure_utc(self.subscription_expires_at) < (now or utc_now())


# ---------------------------------------------------------------------------
# Trades
# ---------------------------------------------------------------------------

@dataclass
class TradeRecord:
    user_id: int
    market_id: str
    market_question: str
    strategy: str
    side: str
    entry_price: float
    quantity: float
    entry_value: float
    tx_hash: str
    status: str = "open"
    pnl: Optional[float] = None
    entry_time: datetime = field(default_factory=utc_now)
    metadata: Dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Bot runtime
# ---------------------------------------------------------------------------

class BotState(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


@dataclass(frozen=True)
class BotRuntimeState:
    """Read-only view of one bot instance handed out to callers."""
    user_id: int
    state: BotState
    last_cycle_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def running(self) -> bool:
        return self.state == BotState.RUNNING

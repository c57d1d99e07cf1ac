"""Shared test fixtures and stubs for PolyBot tests.

Provides in-memory stand-ins for the bot store, market monitor and
execution provider, plus factory functions for configs, users, markets
and signals.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from polybot.core.config import ConfigManager
from polybot.core.models import (
    BotConfig,
    Direction,
    MarketSnapshot,
    PricePoint,
    TradeRecord,
    TradeSignal,
    UserRecord,
)
from polybot.indicators.base import Indicator

WALLET = "0x1111111111111111111111111111111111111111"
MARKET_ADDRESS = "0x2222222222222222222222222222222222222222"


# ---------------------------------------------------------------------------
# Stub classes
# ---------------------------------------------------------------------------


class StubStore:
    """In-memory BotStore.

    Configurable via attributes:
        users / configs: dicts keyed by user id
        today_trades / open_trades / realized_pnl: values returned by the
            daily limit queries
        fail_config_for: user ids whose config read raises
    """

    def __init__(self) -> None:
        self.users: Dict[int, UserRecord] = {}
        self.configs: Dict[int, BotConfig] = {}
        self.today_trades = 0
        self.open_trades = 0
        self.realized_pnl = 0.0
        self.fail_config_for: set = set()
        # Tracking attributes for assertions
        self.trades: List[TradeRecord] = []
        self.logs: List[tuple] = []
        self.statuses: Dict[int, Dict[str, Any]] = {}
        self.status_updates: List[tuple] = []

    def add_user(self, user: UserRecord, config: Optional[BotConfig] = None) -> None:
        self.users[user.id] = user
        if config is not None:
            self.configs[user.id] = config

    async def get_bot_config(self, user_id):
        if user_id in self.fail_config_for:
            raise ConnectionError("config store unreachable")
        return self.configs.get(user_id)

    async def get_all_active_bot_configs(self):
        return [c for c in self.configs.values() if c.is_active]

    async def get_user_by_id(self, user_id):
        return self.users.get(user_id)

    async def create_trade(self, record):
        self.trades.append(record)
        return len(self.trades)

    async def create_bot_log(self, user_id, level, message, metadata=None, timestamp=None):
        self.logs.append((user_id, level, message, metadata))

    async def upsert_bot_status(self, user_id, **fields):
        self.statuses[user_id] = dict(fields)

    async def update_bot_status(self, user_id, **fields):
        self.status_updates.append((user_id, fields))
        self.statuses.setdefault(user_id, {}).update(fields)

    async def get_today_trade_count(self, user_id):
        return self.today_trades

    async def get_open_trade_count(self, user_id):
        return self.open_trades

    async def get_today_realized_pnl(self, user_id):
        return self.realized_pnl

    def messages(self, user_id: Optional[int] = None) -> List[str]:
        return [m for uid, _, m, _ in self.logs if user_id is None or uid == user_id]


class StubMonitor:
    """Market data source with settable market, price and history."""

    def __init__(
        self,
        market: Optional[MarketSnapshot] = None,
        price: Optional[float] = 65000.0,
        history: Optional[List[PricePoint]] = None,
    ) -> None:
        self.market = market
        self.price = price
        self.history = history or []
        self._running = False
        self.start_calls = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        self.start_calls += 1
        self._running = True

    async def stop(self):
        self._running = False

    async def get_current_market(self):
        return self.market

    async def get_current_price(self):
        if self.price is None:
            return None
        return PricePoint(price=self.price, timestamp=datetime.now(timezone.utc), source="stub")

    async def get_historical_prices(self, minutes):
        return list(self.history)


class StubProvider:
    """Execution provider stub.

    Attributes:
        allowance: returned by get_user_allowance (fixed point)
        tier / tier_max: on-chain tier and its ceiling (fixed point)
        fail_with: exception raised from execute_trade when set
        fail_after_broadcast: raise fail_with only after recording the submission
        confirm_delay: seconds between broadcast and confirmation
        submitted: list of (user, market, amount, is_yes), appended on broadcast
    """

    def __init__(
        self,
        allowance: int = 1_000_000_000,
        tier: int = 2,
        tier_max: int = 1_000_000_000,
        available: bool = True,
    ) -> None:
        self.allowance = allowance
        self.tier = tier
        self.tier_max = tier_max
        self.available = available
        self.fail_with: Optional[Exception] = None
        self.fail_after_broadcast = False
        self.confirm_delay = 0.0
        self.submitted: List[tuple] = []

    @property
    def is_available(self) -> bool:
        return self.available

    async def execute_trade(self, user, market, amount, is_yes):
        if self.fail_with is not None and not self.fail_after_broadcast:
            raise self.fail_with
        self.submitted.append((user, market, amount, is_yes))
        if self.confirm_delay:
            await asyncio.sleep(self.confirm_delay)
        if self.fail_with is not None:
            raise self.fail_with
        return "0x" + "ab" * 32

    async def get_user_allowance(self, user):
        return self.allowance

    async def get_user_tier(self, user):
        return self.tier

    async def get_max_position_for_tier(self, tier):
        return self.tier_max


class FakeIndicator(Indicator):
    """Indicator with a fixed signal, for engine and bot tests."""

    def __init__(self, name: str, signal: float = 0.0, ready: bool = True) -> None:
        self.name = name
        self.signal = signal
        self.ready = ready
        self.updates = 0

    def update(self, price, volume=None, timestamp=None):
        self.updates += 1

    def get_signal(self):
        return self.signal if self.ready else 0.0

    def is_ready(self):
        return self.ready

    def reset(self):
        self.updates = 0


# ---------------------------------------------------------------------------
# Factory functions
# ---------------------------------------------------------------------------


def make_config(user_id: int = 1, **overrides: Any) -> BotConfig:
    values: Dict[str, Any] = dict(
        user_id=user_id,
        wallet_address=WALLET,
        is_active=True,
        max_position_size=100.0,
        max_open_positions=5,
        max_daily_trades=10,
        max_daily_loss=25.0,
        edge_threshold=0.05,
        kelly_fraction=0.25,
        run_interval_seconds=60,
    )
    values.update(overrides)
    return BotConfig(**values)


def make_user(user_id: int = 1, tier: str = "pro", expires_in: Optional[timedelta] = None) -> UserRecord:
    expires_at = None
    if expires_in is not None:
        expires_at = datetime.now(timezone.utc) + expires_in
    return UserRecord(
        id=user_id,
        wallet_address=WALLET,
        subscription_tier=tier,
        subscription_expires_at=expires_at,
    )


def make_market(
    yes_price: float = 0.40,
    no_price: float = 0.60,
    expires_in: timedelta = timedelta(minutes=10),
    market_id: str = MARKET_ADDRESS,
) -> MarketSnapshot:
    return MarketSnapshot(
        id=market_id,
        question="Will BTC be up at 12:15 UTC?",
        yes_price=yes_price,
        no_price=no_price,
        volume=25_000.0,
        liquidity=8_000.0,
        expires_at=datetime.now(timezone.utc) + expires_in,
        slug="btc-up-or-down-15m-1215",
    )


def make_signal(
    direction: Direction = Direction.UP,
    confidence: float = 80.0,
    edge: float = 0.48,
    entry_price: float = 0.40,
    market_id: str = MARKET_ADDRESS,
) -> TradeSignal:
    return TradeSignal(
        direction=direction,
        confidence=confidence,
        edge=edge,
        market_id=market_id,
        entry_price=entry_price,
        reasoning="UP: RSI oversold (24.1)",
        indicator_scores={"rsi": 1.0},
        market_question="Will BTC be up at 12:15 UTC?",
        reference_price=65000.0,
    )


def fake_indicators(signal: float = 1.0, ready: bool = True) -> Dict[str, FakeIndicator]:
    names = ["rsi", "macd", "vwap", "heiken_ashi", "delta"]
    return {n: FakeIndicator(n, signal=signal, ready=ready) for n in names}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_config_singleton():
    """Every test starts without a cached ConfigManager."""
    ConfigManager._instance = None
    ConfigManager._config = None
    yield
    ConfigManager._instance = None
    ConfigManager._config = None


@pytest.fixture
def store() -> StubStore:
    return StubStore()


@pytest.fixture
def provider() -> StubProvider:
    return StubProvider()

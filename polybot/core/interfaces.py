"""Collaborator protocols consumed by the trading core.

The surrounding web application owns users, configs and persistence; the
on-chain proxy contract owns execution. Any backend (the bundled SQLite
store, the web app's database, in-memory test stubs) can be plugged in by
implementing these protocols.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from polybot.core.models import BotConfig, MarketSnapshot, PricePoint, TradeRecord, UserRecord


@runtime_checkable
class BotConfigProvider(Protocol):
    async def get_bot_config(self, user_id: int) -> Optional[BotConfig]:
        """Return the user's current bot config, or None."""
        ...

    async def get_all_active_bot_configs(self) -> List[BotConfig]:
        """Return every config whose active flag is set."""
        ...


@runtime_checkable
class UserProvider(Protocol):
    async def get_user_by_id(self, user_id: int) -> Optional[UserRecord]:
        ...


@runtime_checkable
class PersistenceSink(Protocol):
    async def create_trade(self, record: TradeRecord) -> Any:
        ...

    async def create_bot_log(
        self,
        user_id: int,
        level: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        ...

    async def upsert_bot_status(self, user_id: int, **fields: Any) -> None:
        """Create or replace the status row for a user."""
        ...

    async def update_bot_status(self, user_id: int, **fields: Any) -> None:
        """Patch selected status columns for a user."""
        ...

    async def get_today_trade_count(self, user_id: int) -> int:
        ...

    async def get_open_trade_count(self, user_id: int) -> int:
        ...

    async def get_today_realized_pnl(self, user_id: int) -> float:
        ...


@runtime_checkable
class BotStore(BotConfigProvider, UserProvider, PersistenceSink, Protocol):
    """Everything a bot instance and the manager need from the application."""


@runtime_checkable
class ExecutionProvider(Protocol):
    """On-chain proxy contract boundary. Amounts are 6-decimal fixed point."""

    @property
    def is_available(self) -> bool:
        ...

    async def execute_trade(self, user: str, market: str, amount: int, is_yes: bool) -> str:
        """Submit, wait for confirmation and return the transaction hash."""
        ...

    async def get_user_allowance(self, user: str) -> int:
        ...

    async def get_user_tier(self, user: str) -> int:
        ...

    async def get_max_position_for_tier(self, tier: int) -> int:
        ...


@runtime_checkable
class MarketDataSource(Protocol):
    """What a bot instance reads from the shared market monitor."""

    @property
    def is_running(self) -> bool:
        ...

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...

    async def get_current_market(self) -> Optional[MarketSnapshot]:
        ...

    async def get_current_price(self) -> Optional[PricePoint]:
        ...

    async def get_historical_prices(self, minutes: int) -> List[PricePoint]:
        ...

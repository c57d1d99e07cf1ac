"""
Database Manager - SQLite with WAL mode for concurrent access.

Standalone implementation of the bot store: users, per-user bot config,
bot status, the bot log stream and trades. A deployment embedded in the
web application can swap in any object satisfying
``polybot.core.interfaces.BotStore``.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import aiosqlite

from polybot.core.logger import get_logger
from polybot.core.models import BotConfig, TradeRecord, UserRecord, ensure_utc, utc_now

logger = get_logger("db")


def _iso(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    return ensure_utc(ts).isoformat()


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def _start_of_day(now: Optional[datetime] = None) -> datetime:
    now = ensure_utc(now or utc_now())
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class DatabaseManager:
    """
    Async SQLite store with WAL mode.

    Timestamps are stored as ISO-8601 UTC strings so day boundaries can be
    compared lexically.
    """

    # Timeout for acquiring the DB lock to prevent deadlocks.
    _LOCK_TIMEOUT: float = 30.0

    STATUS_COLUMNS = frozenset({
        "status", "last_started_at", "last_stopped_at", "last_cycle_at",
        "error_message", "total_trades", "daily_pnl",
    })

    def __init__(self, db_path: str = "data/polybot.db"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @asynccontextmanager
    async def _timed_lock(self) -> AsyncIterator[None]:
        """Acquire the DB lock with a timeout to prevent deadlocks."""
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self._LOCK_TIMEOUT)
        except asyncio.TimeoutError:
            logger.error(
                "Database lock acquisition timed out - possible deadlock",
                timeout=self._LOCK_TIMEOUT,
            )
            raise RuntimeError(
                f"Database lock timeout after {self._LOCK_TIMEOUT}s"
            )
        try:
            yield
        finally:
            self._lock.release()

    async def initialize(self) -> None:
        """Initialize database connection and create schema."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path, timeout=15)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")

        await self._create_schema()
        self._initialized = True
        logger.info("Database initialized", path=self.db_path)

    async def _create_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY,
            wallet_address TEXT,
            subscription_tier TEXT NOT NULL DEFAULT 'none'
                CHECK(subscription_tier IN ('none', 'basic', 'pro', 'enterprise')),
            subscription_expires_at TEXT,
            created_at TEXT DEFAULT (datetime('now'))
        );

        CREATE TABLE IF NOT EXISTS bot_config (
            user_id INTEGER PRIMARY KEY,
            wallet_address TEXT,
            is_active INTEGER NOT NULL DEFAULT 0,
            max_position_size REAL NOT NULL DEFAULT 50,
            max_open_positions INTEGER NOT NULL DEFAULT 5,
            max_daily_trades INTEGER NOT NULL DEFAULT 10,
            max_daily_loss REAL NOT NULL DEFAULT 25,
            edge_threshold REAL NOT NULL DEFAULT 0.05,
            kelly_fraction REAL NOT NULL DEFAULT 0.25,
            run_interval_seconds INTEGER NOT NULL DEFAULT 60,
            updated_at TEXT DEFAULT (datetime('now'))
        );

        CREATE TABLE IF NOT EXISTS bot_status (
            user_id INTEGER PRIMARY KEY,
            status TEXT NOT NULL DEFAULT 'stopped',
            last_started_at TEXT,
            last_stopped_at TEXT,
            last_cycle_at TEXT,
            error_message TEXT,
            total_trades INTEGER NOT NULL DEFAULT 0,
            daily_pnl REAL NOT NULL DEFAULT 0,
            updated_at TEXT DEFAULT (datetime('now'))
        );

        CREATE TABLE IF NOT EXISTS bot_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            level TEXT NOT NULL CHECK(level IN ('debug', 'info', 'warning', 'error')),
            message TEXT NOT NULL,
            context TEXT,
            timestamp TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS trades (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            market_id TEXT NOT NULL,
            market_question TEXT,
            strategy TEXT NOT NULL,
            side TEXT NOT NULL CHECK(side IN ('yes', 'no')),
            entry_price REAL NOT NULL,
            quantity REAL NOT NULL,
            entry_value REAL NOT NULL,
            exit_price REAL,
            pnl REAL,
            status TEXT NOT NULL DEFAULT 'open'
                CHECK(status IN ('open', 'closed', 'cancelled')),
            tx_hash TEXT,
            entry_time TEXT NOT NULL,
            exit_time TEXT,
            metadata TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_trades_user_time ON trades(user_id, entry_time);
        CREATE INDEX IF NOT EXISTS idx_bot_logs_user_time ON bot_logs(user_id, timestamp);
        """
        await self._db.executescript(schema_sql)
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def upsert_user(self, user: UserRecord) -> None:
        async with self._timed_lock():
            await self._db.execute(
                """INSERT INTO users (id, wallet_address, subscription_tier, subscription_expires_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                     wallet_address = excluded.wallet_address,
                     subscription_tier = excluded.subscription_tier,
                     subscription_expires_at = excluded.subscription_expires_at""",
                (user.id, user.wallet_address, user.subscription_tier,
                 _iso(user.subscription_expires_at)),
            )
            await self._db.commit()

    async def get_user_by_id(self, user_id: int) -> Optional[UserRecord]:
        async with self._db.execute("SELECT * FROM users WHERE id = ?", (user_id,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return UserRecord(
            id=row["id"],
            wallet_address=row["wallet_address"],
            subscription_tier=row["subscription_tier"],
            subscription_expires_at=_parse_ts(row["subscription_expires_at"]),
        )

    # ------------------------------------------------------------------
    # Bot config
    # ------------------------------------------------------------------

    async def upsert_bot_config(self, config: BotConfig) -> None:
        async with self._timed_lock():
            await self._db.execute(
                """INSERT INTO bot_config
                   (user_id, wallet_address, is_active, max_position_size, max_open_positions,
                    max_daily_trades, max_daily_loss, edge_threshold, kelly_fraction,
                    run_interval_seconds)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(user_id) DO UPDATE SET
                     wallet_address = excluded.wallet_address,
                     is_active = excluded.is_active,
                     max_position_size = excluded.max_position_size,
                     max_open_positions = excluded.max_open_positions,
                     max_daily_trades = excluded.max_daily_trades,
                     max_daily_loss = excluded.max_daily_loss,
                     edge_threshold = excluded.edge_threshold,
                     kelly_fraction = excluded.kelly_fraction,
                     run_interval_seconds = excluded.run_interval_seconds,
                     updated_at = datetime('now')""",
                (
                    config.user_id, config.wallet_address, int(config.is_active),
                    config.max_position_size, config.max_open_positions,
                    config.max_daily_trades, config.max_daily_loss,
                    config.edge_threshold, config.kelly_fraction,
                    config.run_interval_seconds,
                ),
            )
            await self._db.commit()

    @staticmethod
    def _row_to_config(row: aiosqlite.Row) -> BotConfig:
        return BotConfig(
            user_id=row["user_id"],
            wallet_address=row["wallet_address"],
            is_active=bool(row["is_active"]),
            max_position_size=row["max_position_size"],
            max_open_positions=row["max_open_positions"],
            max_daily_trades=row["max_daily_trades"],
            max_daily_loss=row["max_daily_loss"],
            edge_threshold=row["edge_threshold"],
            kelly_fraction=row["kelly_fraction"],
            run_interval_seconds=row["run_interval_seconds"],
        )

    async def get_bot_config(self, user_id: int) -> Optional[BotConfig]:
        async with self._db.execute(
            "SELECT * FROM bot_config WHERE user_id = ?", (user_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_config(row) if row is not None else None

    async def get_all_active_bot_configs(self) -> List[BotConfig]:
        async with self._db.execute(
            "SELECT * FROM bot_config WHERE is_active = 1 ORDER BY user_id"
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_config(r) for r in rows]

    # ------------------------------------------------------------------
    # Bot status
    # ------------------------------------------------------------------

    def _status_values(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for key, value in fields.items():
            if key not in self.STATUS_COLUMNS:
                raise ValueError(f"Column '{key}' not allowed in bot status")
            values[key] = _iso(value) if isinstance(value, datetime) else value
        return values

    async def upsert_bot_status(self, user_id: int, **fields: Any) -> None:
        values = self._status_values(fields)
        columns = ["user_id", *values.keys()]
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{c} = excluded.{c}" for c in values.keys())
        sql = (
            f"INSERT INTO bot_status ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT(user_id) DO "
            + (f"UPDATE SET {updates}, updated_at = datetime('now')" if updates else "NOTHING")
        )
        async with self._timed_lock():
            await self._db.execute(sql, (user_id, *values.values()))
            await self._db.commit()

    async def update_bot_status(self, user_id: int, **fields: Any) -> None:
        values = self._status_values(fields)
        if not values:
            return
        set_clauses = ", ".join(f"{c} = ?" for c in values.keys())
        async with self._timed_lock():
            await self._db.execute(
                f"UPDATE bot_status SET {set_clauses}, updated_at = datetime('now') WHERE user_id = ?",
                (*values.values(), user_id),
            )
            await self._db.commit()

    async def get_bot_status(self, user_id: int) -> Optional[Dict[str, Any]]:
        async with self._db.execute(
            "SELECT * FROM bot_status WHERE user_id = ?", (user_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row is not None else None

    # ------------------------------------------------------------------
    # Bot logs
    # ------------------------------------------------------------------

    async def create_bot_log(
        self,
        user_id: int,
        level: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        async with self._timed_lock():
            await self._db.execute(
                "INSERT INTO bot_logs (user_id, level, message, context, timestamp) VALUES (?, ?, ?, ?, ?)",
                (
                    user_id,
                    level,
                    message,
                    json.dumps(metadata, default=str) if metadata else None,
                    _iso(timestamp or utc_now()),
                ),
            )
            await self._db.commit()

    async def get_bot_logs(self, user_id: int, limit: int = 100) -> List[Dict[str, Any]]:
        async with self._db.execute(
            "SELECT * FROM bot_logs WHERE user_id = ? ORDER BY id DESC LIMIT ?",
            (user_id, limit),
        ) as cursor:
            rows = await cursor.fetchall()
        out: List[Dict[str, Any]] = []
        for r in rows:
            item = dict(r)
            item["context"] = json.loads(item["context"]) if item["context"] else None
            out.append(item)
        return out

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    async def create_trade(self, record: TradeRecord) -> int:
        async with self._timed_lock():
            cursor = await self._db.execute(
                """INSERT INTO trades
                   (user_id, market_id, market_question, strategy, side, entry_price,
                    quantity, entry_value, pnl, status, tx_hash, entry_time, metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.user_id, record.market_id, record.market_question,
                    record.strategy, record.side, record.entry_price,
                    record.quantity, record.entry_value, record.pnl,
                    record.status, record.tx_hash, _iso(record.entry_time),
                    json.dumps(record.metadata, default=str),
                ),
            )
            await self._db.commit()
            return cursor.lastrowid

    async def close_trade(self, trade_id: int, exit_price: float, pnl: float) -> None:
        """Settlement hook; the trading core itself never closes trades."""
        async with self._timed_lock():
            await self._db.execute(
                "UPDATE trades SET status = 'closed', exit_price = ?, pnl = ?, exit_time = ? WHERE id = ?",
                (exit_price, pnl, _iso(utc_now()), trade_id),
            )
            await self._db.commit()

    async def get_today_trade_count(self, user_id: int) -> int:
        async with self._db.execute(
            "SELECT COUNT(*) FROM trades WHERE user_id = ? AND entry_time >= ?",
            (user_id, _iso(_start_of_day())),
        ) as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def get_open_trade_count(self, user_id: int) -> int:
        async with self._db.execute(
            "SELECT COUNT(*) FROM trades WHERE user_id = ? AND status = 'open'",
            (user_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def get_today_realized_pnl(self, user_id: int) -> float:
        async with self._db.execute(
            """SELECT COALESCE(SUM(pnl), 0) FROM trades
               WHERE user_id = ? AND status = 'closed' AND exit_time >= ?""",
            (user_id, _iso(_start_of_day())),
        ) as cursor:
            row = await cursor.fetchone()
        return float(row[0]) if row else 0.0

    async def get_trades(self, user_id: int, limit: int = 100) -> List[Dict[str, Any]]:
        async with self._db.execute(
            "SELECT * FROM trades WHERE user_id = ? ORDER BY id DESC LIMIT ?",
            (user_id, limit),
        ) as cursor:
            rows = await cursor.fetchall()
        out: List[Dict[str, Any]] = []
        for r in rows:
            item = dict(r)
            item["metadata"] = json.loads(item["metadata"]) if item["metadata"] else {}
            out.append(item)
        return out

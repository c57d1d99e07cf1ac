"""
Trading Bot - one user's trading loop.

State machine::

    STOPPED -> STARTING -> RUNNING -> STOPPED
                   |          |
                   +-> ERROR  +-> STOPPED (deactivated, subscription expired)

Each cycle re-reads the user's config and user record, so edits made in the
web application apply on the next cycle without a restart. Cycles for one
user never overlap; cycles for different users run independently.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Dict, Optional, TypeVar

from polybot.bots.exceptions import BotAlreadyRunningError, BotStartupError, BotStateError
from polybot.core.error_handler import ErrorSeverity, GracefulErrorHandler
from polybot.core.interfaces import BotStore, MarketDataSource
from polybot.core.logger import get_logger
from polybot.core.models import BotConfig, BotRuntimeState, BotState, TradeSignal, utc_now
from polybot.core.runtime_safety import CYCLE_TASK_PREFIX
from polybot.engine.signal_engine import SignalEngine
from polybot.execution.exceptions import TradeExecutionError
from polybot.execution.executor import TradeExecutor

logger = get_logger("bot")

T = TypeVar("T")

DEFAULT_WARMUP_MINUTES = 60
DEFAULT_WARMUP_VOLUME = 1000.0


class TradingBot:
    """
    Per-user bot instance.

    Owns its indicator bank (through its SignalEngine) exclusively; the
    market monitor, store and executor are shared collaborators.
    """

    def __init__(
        self,
        user_id: int,
        store: BotStore,
        monitor: MarketDataSource,
        executor: TradeExecutor,
        signal_engine: Optional[SignalEngine] = None,
        error_handler: Optional[GracefulErrorHandler] = None,
        call_timeout: float = 30.0,
        trade_timeout: float = 300.0,
        warmup_minutes: int = DEFAULT_WARMUP_MINUTES,
        warmup_volume: float = DEFAULT_WARMUP_VOLUME,
        default_interval: float = 60.0,
    ):
        self.user_id = user_id
        self._store = store
        self._monitor = monitor
        self._executor = executor
        self.engine = signal_engine or SignalEngine()
        self._errors = error_handler or GracefulErrorHandler(db_log_fn=store.create_bot_log)
        self.call_timeout = call_timeout
        self.trade_timeout = trade_timeout
        self.warmup_minutes = warmup_minutes
        self.warmup_volume = warmup_volume

        self._state = BotState.STOPPED
        self._interval = default_interval
        self._stop_event = asyncio.Event()
        self._cycle_lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None
        self._started_at: Optional[datetime] = None
        self._last_cycle_at: Optional[datetime] = None
        self._error_message: Optional[str] = None
        self.cycles_run = 0
        self.cycles_skipped_overlap = 0
        self.trades_executed = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> BotState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == BotState.RUNNING

    @property
    def runtime_state(self) -> BotRuntimeState:
        return BotRuntimeState(
            user_id=self.user_id,
            state=self._state,
            last_cycle_at=self._last_cycle_at,
            started_at=self._started_at,
            error_message=self._error_message,
        )

    async def _timed(self, aw: Awaitable[T], timeout: Optional[float] = None) -> T:
        return await asyncio.wait_for(aw, timeout=timeout or self.call_timeout)

    async def _persist_status(self, **fields: Any) -> None:
        try:
            await self._timed(self._store.upsert_bot_status(self.user_id, **fields))
        except Exception as e:
            logger.warning("Bot status write failed", user_id=self.user_id, error=repr(e))

    async def _bot_log(self, level: str, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        try:
            await self._timed(
                self._store.create_bot_log(self.user_id, level, message, metadata, utc_now())
            )
        except Exception as e:
            logger.warning("Bot log write failed", user_id=self.user_id, error=repr(e))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Warm up and begin cycling. Runs the first cycle before returning.

        Raises BotAlreadyRunningError unless STOPPED. Any failure during
        startup leaves the bot in ERROR and surfaces as BotStartupError.
        """
        if self._state in (BotState.RUNNING, BotState.STARTING):
            raise BotAlreadyRunningError(self.user_id)
        if self._state != BotState.STOPPED:
            raise BotStateError(
                f"Bot for user {self.user_id} is in {self._state.value}; stop it before starting"
            )

        self._state = BotState.STARTING
        self._error_message = None
        self._stop_event = asyncio.Event()
        logger.info("Starting bot", user_id=self.user_id)

        try:
            await self._persist_status(status=BotState.STARTING.value, error_message=None)

            if not self._monitor.is_running:
                await self._timed(self._monitor.start())

            config = await self._timed(self._store.get_bot_config(self.user_id))
            if config is not None:
                self._interval = float(config.run_interval_seconds)

            await self._warm_up()

            self._started_at = utc_now()
            self._state = BotState.RUNNING
            await self._persist_status(
                status=BotState.RUNNING.value,
                last_started_at=self._started_at,
                error_message=None,
            )
            self._loop_task = asyncio.create_task(
                self._cycle_loop(), name=f"{CYCLE_TASK_PREFIX}{self.user_id}"
            )
        except Exception as e:
            self._state = BotState.ERROR
            self._error_message = str(e) or type(e).__name__
            self._stop_event.set()
            await self._persist_status(status=BotState.ERROR.value, error_message=self._error_message)
            await self._errors.handle(e, user_id=self.user_id, component="startup")
            raise BotStartupError(self._error_message) from e

        logger.info("Bot started", user_id=self.user_id, interval_s=self._interval)
        await self._bot_log("info", "Bot started", {"interval_seconds": self._interval})
        await self.run_trading_cycle()

    async def _warm_up(self) -> None:
        history = await self._monitor.get_historical_prices(self.warmup_minutes)
        for point in history:
            self.engine.update_price(point.price, self.warmup_volume, point.timestamp)
        logger.info(
            "Indicators warmed up",
            user_id=self.user_id,
            samples=len(history),
            ready=self.engine.is_ready(),
        )

    async def stop(self, reason: Optional[str] = None) -> None:
        """
        Stop cycling. No-op when already STOPPED; never raises.

        A cycle already in flight finishes; no new cycle starts.
        """
        if self._state == BotState.STOPPED:
            return

        self._state = BotState.STOPPED
        self._stop_event.set()
        self._error_message = reason

        task = self._loop_task
        self._loop_task = None
        # The loop wakes on the stop event; cancel only if it is idle and
        # we are not being called from inside it.
        if task is not None and task is not asyncio.current_task() and not self._cycle_lock.locked():
            task.cancel()

        self.engine.bank.reset()
        await self._persist_status(
            status=BotState.STOPPED.value,
            last_stopped_at=utc_now(),
            error_message=reason,
        )
        logger.info("Bot stopped", user_id=self.user_id, reason=reason)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def _cycle_loop(self) -> None:
        while self._state == BotState.RUNNING:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
                return
            except asyncio.TimeoutError:
                pass
            if self._state != BotState.RUNNING:
                return
            await self.run_trading_cycle()

    async def run_trading_cycle(self) -> None:
        """Run one cycle unless stopped or another cycle is still in flight."""
        if self._state != BotState.RUNNING:
            return
        if self._cycle_lock.locked():
            self.cycles_skipped_overlap += 1
            logger.warning("Previous cycle still running, skipping", user_id=self.user_id)
            return

        async with self._cycle_lock:
            self.cycles_run += 1
            try:
                await self._cycle()
            except Exception as e:
                severity = await self._errors.handle(e, user_id=self.user_id, component="cycle")
                if severity == ErrorSeverity.FATAL:
                    await self.stop(reason=str(e))

    async def _cycle(self) -> None:
        self._last_cycle_at = utc_now()
        try:
            await self._timed(
                self._store.update_bot_status(self.user_id, last_cycle_at=self._last_cycle_at)
            )
        except Exception as e:
            logger.debug("Cycle timestamp write failed", user_id=self.user_id, error=repr(e))

        config = await self._timed(self._store.get_bot_config(self.user_id))
        if config is None:
            logger.warning("Bot config missing, stopping", user_id=self.user_id)
            await self.stop(reason="Bot configuration not found")
            return
        if not config.is_active:
            logger.info("Bot deactivated, stopping", user_id=self.user_id)
            await self.stop()
            return
        self._interval = float(config.run_interval_seconds)

        user = await self._timed(self._store.get_user_by_id(self.user_id))
        if user is None:
            logger.warning("User missing, stopping", user_id=self.user_id)
            await self.stop(reason="User not found")
            return
        if user.subscription_expired():
            logger.warning("Bot stopped: subscription expired", user_id=self.user_id)
            await self._bot_log("warning", "Bot stopped: subscription expired")
            await self.stop(reason="Subscription expired")
            return

        market = await self._timed(self._monitor.get_current_market())
        if market is None:
            logger.info("No active market, skipping cycle", user_id=self.user_id)
            await self._bot_log("debug", "Cycle skipped: no active market")
            return

        price = await self._timed(self._monitor.get_current_price())
        if price is None:
            logger.info("No price available, skipping cycle", user_id=self.user_id)
            await self._bot_log("debug", "Cycle skipped: no price available")
            return

        self.engine.update_price(price.price, market.volume, utc_now())
        if not self.engine.is_ready():
            logger.debug("Indicators warming up", user_id=self.user_id)
            return

        signal = self.engine.analyze(price.price, market)
        if signal is None:
            return

        if signal.edge < config.edge_threshold:
            logger.debug(
                "Edge below threshold",
                user_id=self.user_id,
                edge=round(signal.edge, 4),
                threshold=config.edge_threshold,
            )
            await self._bot_log(
                "debug",
                f"Cycle skipped: edge {signal.edge:.4f} below threshold {config.edge_threshold}",
            )
            return

        await self._execute(config, signal)

    async def _execute(self, config: BotConfig, signal: TradeSignal) -> None:
        if self._executor.has_pending_submission(self.user_id):
            logger.info("Previous trade still settling, skipping", user_id=self.user_id)
            await self._bot_log("debug", "Cycle skipped: previous trade still settling")
            return

        wallet = config.wallet_address
        if not wallet:
            user = await self._timed(self._store.get_user_by_id(self.user_id))
            wallet = user.wallet_address if user else None
        if not wallet:
            logger.warning("No wallet address, cannot trade", user_id=self.user_id)
            await self._bot_log("warning", "Trade skipped: wallet address not set")
            return

        logger.info(
            "Executing trade",
            user_id=self.user_id,
            direction=signal.direction.value,
            edge=round(signal.edge, 4),
            confidence=round(signal.confidence, 2),
            reasoning=signal.reasoning,
        )
        try:
            tx_hash = await self._timed(
                self._executor.execute_trade(self.user_id, wallet, config, signal),
                timeout=self.trade_timeout,
            )
        except asyncio.TimeoutError:
            # The executor keeps confirming and recording in the background.
            logger.warning(
                "Trade confirmation pending",
                user_id=self.user_id,
                timeout_s=self.trade_timeout,
                market_id=signal.market_id,
            )
            await self._bot_log(
                "warning",
                f"Trade confirmation pending after {self.trade_timeout:.0f}s",
                {"market_id": signal.market_id, "direction": signal.direction.value},
            )
            return
        except TradeExecutionError as e:
            # One failed attempt never stops the bot; the next cycle re-evaluates.
            logger.error(
                "Trade execution failed",
                user_id=self.user_id,
                error=str(e) or type(e).__name__,
                direction=signal.direction.value,
                edge=round(signal.edge, 4),
                confidence=round(signal.confidence, 2),
                market_id=signal.market_id,
            )
            return
        self.trades_executed += 1
        logger.info("Trade confirmed", user_id=self.user_id, tx_hash=tx_hash)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "state": self._state.value,
            "running": self.is_running,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "last_cycle_at": self._last_cycle_at.isoformat() if self._last_cycle_at else None,
            "error_message": self._error_message,
            "interval_seconds": self._interval,
            "cycles_run": self.cycles_run,
            "cycles_skipped_overlap": self.cycles_skipped_overlap,
            "trades_executed": self.trades_executed,
            "indicators_ready": self.engine.is_ready(),
            "indicator_values": self.engine.get_indicator_values(),
        }

"""
Bot Manager - registry and reconciliation of per-user bots.

The registry maps user id to a TradingBot. ``start_bot``, ``stop_bot`` and
``restart_bot`` are the only mutation entry points. A periodic
reconciliation loop starts bots for users whose config is active and stops
bots whose config is not, so toggles made in the web application take
effect within one check interval even without an explicit API call.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Set

from polybot.bots.exceptions import BotAlreadyRunningError, BotConfigError, BotLimitError
from polybot.bots.instance import TradingBot
from polybot.core.config import DEFAULT_INDICATOR_WEIGHTS, Settings
from polybot.core.error_handler import GracefulErrorHandler
from polybot.core.interfaces import BotStore, MarketDataSource
from polybot.core.logger import get_logger
from polybot.core.models import BotState, utc_now
from polybot.engine.signal_engine import SignalEngine
from polybot.execution.executor import TradeExecutor

logger = get_logger("bot_manager")

BotFactory = Callable[[int], TradingBot]


class BotManager:
    """
    Owns every TradingBot in the process.

    Usage::

        manager = BotManager(store, monitor, executor, settings=settings)
        await manager.initialize()   # first reconcile + background loop
        ...
        await manager.shutdown()
    """

    def __init__(
        self,
        store: BotStore,
        monitor: MarketDataSource,
        executor: TradeExecutor,
        settings: Optional[Settings] = None,
        bot_factory: Optional[BotFactory] = None,
    ):
        self._store = store
        self._monitor = monitor
        self._executor = executor
        self._settings = settings or Settings()
        self._bot_factory = bot_factory or self._default_factory
        self._errors = GracefulErrorHandler(db_log_fn=store.create_bot_log)

        self.check_interval = self._settings.manager.check_interval_seconds
        self.max_concurrent_bots = self._settings.manager.max_concurrent_bots
        self.shutdown_timeout = self._settings.manager.shutdown_timeout_seconds

        self._bots: Dict[int, TradingBot] = {}
        self._user_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        # Users whose start is in progress; they hold a slot until registered.
        self._starting: Set[int] = set()
        self._reconcile_task: Optional[asyncio.Task] = None
        self._running = False
        self.reconciliations = 0

    def _default_factory(self, user_id: int) -> TradingBot:
        weights = self._settings.signal.weights or DEFAULT_INDICATOR_WEIGHTS
        bot_cfg = self._settings.bot
        return TradingBot(
            user_id=user_id,
            store=self._store,
            monitor=self._monitor,
            executor=self._executor,
            signal_engine=SignalEngine(weights=weights),
            error_handler=self._errors,
            call_timeout=bot_cfg.call_timeout_seconds,
            trade_timeout=bot_cfg.trade_timeout_seconds,
            warmup_minutes=self._settings.price.warmup_minutes,
            warmup_volume=bot_cfg.warmup_volume,
        )

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Reconcile once, then keep reconciling in the background."""
        if self._running:
            return
        self._running = True
        logger.info(
            "Bot manager initializing",
            check_interval_s=self.check_interval,
            max_concurrent_bots=self.max_concurrent_bots,
        )
        await self.reconcile()
        self._reconcile_task = asyncio.create_task(self._reconcile_loop(), name="bot-reconcile")

    async def shutdown(self) -> None:
        """Cancel reconciliation and stop every registered bot concurrently."""
        self._running = False
        if self._reconcile_task is not None:
            self._reconcile_task.cancel()
            await asyncio.gather(self._reconcile_task, return_exceptions=True)
            self._reconcile_task = None

        count = len(self._bots)
        try:
            await asyncio.wait_for(self.stop_all_bots(), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out stopping bots", remaining=len(self._bots))
        logger.info("Bot manager shut down", bots_stopped=count)

    async def _reconcile_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.check_interval)
            try:
                await self.reconcile()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Never let one failed pass kill the loop.
                logger.error("Reconciliation pass failed", error=repr(e))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def start_bot(self, user_id: int) -> TradingBot:
        """Validate eligibility, then create, start and register a bot."""
        async with self._user_locks[user_id]:
            existing = self._bots.get(user_id)
            if existing is not None:
                if existing.is_running:
                    raise BotAlreadyRunningError(user_id)
                # Dead instance (stopped itself or errored); replace it.
                del self._bots[user_id]

            # Check and reserve with no await in between.
            if self.get_active_bot_count() + len(self._starting) >= self.max_concurrent_bots:
                raise BotLimitError(
                    f"Maximum concurrent bots reached ({self.max_concurrent_bots})"
                )
            self._starting.add(user_id)
            try:
                await self._validate_eligibility(user_id)
                bot = self._bot_factory(user_id)
                await bot.start()
                self._bots[user_id] = bot
            finally:
                self._starting.discard(user_id)
            logger.info("Bot registered", user_id=user_id, active=self.get_active_bot_count())
            return bot

    async def _validate_eligibility(self, user_id: int) -> None:
        user = await self._store.get_user_by_id(user_id)
        if user is None:
            raise BotConfigError("User not found")
        config = await self._store.get_bot_config(user_id)
        if config is None:
            raise BotConfigError("Bot configuration not found")
        if not (config.wallet_address or user.wallet_address):
            raise BotConfigError("Wallet address not set")
        if not config.is_active:
            raise BotConfigError("Bot is not active")
        if user.subscription_expired():
            raise BotConfigError("Subscription expired")

    async def stop_bot(self, user_id: int, reason: Optional[str] = None) -> bool:
        """Stop and unregister. Returns False when no bot was registered."""
        async with self._user_locks[user_id]:
            bot = self._bots.pop(user_id, None)
            if bot is None:
                return False
            await bot.stop(reason=reason)
            logger.info("Bot unregistered", user_id=user_id, active=self.get_active_bot_count())
            return True

    async def restart_bot(self, user_id: int) -> TradingBot:
        await self.stop_bot(user_id)
        return await self.start_bot(user_id)

    async def stop_all_bots(self) -> None:
        user_ids = list(self._bots.keys())
        if not user_ids:
            return
        results = await asyncio.gather(
            *(self.stop_bot(uid) for uid in user_ids), return_exceptions=True
        )
        for uid, result in zip(user_ids, results):
            if isinstance(result, Exception):
                logger.error("Failed to stop bot", user_id=uid, error=repr(result))

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self) -> Dict[str, List[int]]:
        """
        Converge running bots onto the set of active configs.

        Returns the user ids started, stopped and failed in this pass.
        """
        self.reconciliations += 1
        configs = await self._store.get_all_active_bot_configs()
        desired: Set[int] = {c.user_id for c in configs if c.is_active}
        running: Set[int] = set(self.get_active_bot_user_ids())

        to_stop = sorted(uid for uid in self._bots if uid not in desired or uid not in running)
        to_start = sorted(desired - running)

        stopped: List[int] = []
        for uid in to_stop:
            if await self._reconcile_stop(uid):
                stopped.append(uid)

        started: List[int] = []
        failed: List[int] = []
        if to_start:
            results = await asyncio.gather(
                *(self._reconcile_start(uid) for uid in to_start)
            )
            for uid, ok in zip(to_start, results):
                (started if ok else failed).append(uid)

        if started or stopped or failed:
            logger.info(
                "Reconciliation complete",
                started=started,
                stopped=stopped,
                failed=failed,
                active=self.get_active_bot_count(),
            )
        return {"started": started, "stopped": stopped, "failed": failed}

    async def _reconcile_stop(self, user_id: int) -> bool:
        try:
            return await self.stop_bot(user_id)
        except Exception as e:
            logger.error("Reconcile stop failed", user_id=user_id, error=repr(e))
            return False

    async def _reconcile_start(self, user_id: int) -> bool:
        try:
            await self.start_bot(user_id)
            return True
        except BotAlreadyRunningError:
            return True
        except Exception as e:
            logger.warning("Reconcile start failed", user_id=user_id, error=str(e) or repr(e))
            try:
                await self._store.upsert_bot_status(
                    user_id, status=BotState.ERROR.value, error_message=str(e)
                )
            except Exception as write_err:
                logger.warning("Bot status write failed", user_id=user_id, error=repr(write_err))
            return False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_bot(self, user_id: int) -> Optional[TradingBot]:
        return self._bots.get(user_id)

    def get_active_bot_user_ids(self) -> List[int]:
        return sorted(uid for uid, bot in self._bots.items() if bot.is_running)

    def get_active_bot_count(self) -> int:
        return sum(1 for bot in self._bots.values() if bot.is_running)

    async def get_bot_status(self, user_id: int) -> Dict[str, Any]:
        bot = self._bots.get(user_id)
        if bot is not None:
            return bot.get_status()
        return {"user_id": user_id, "state": BotState.STOPPED.value, "running": False}

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "active_bots": self.get_active_bot_count(),
            "registered_bots": len(self._bots),
            "starting_bots": len(self._starting),
            "max_concurrent_bots": self.max_concurrent_bots,
            "check_interval_seconds": self.check_interval,
            "reconciliations": self.reconciliations,
            "monitor_running": self._monitor.is_running,
            "timestamp": utc_now().isoformat(),
        }

"""
Trade Executor - validates a signal, sizes it and submits it on-chain.

Gate order (first failure wins, nothing is retried):

1. signal edge must be positive
2. user must exist
3. edge must meet the user's threshold
4. an execution provider must be configured
5. on-chain allowance must be non-zero
6. size the position (fractional Kelly)
7. tier ceilings: proxy contract tier, subscription tier, user config
8. daily trade count, open positions, realized daily loss
9. submit and wait for the receipt

A successful trade is persisted as an open TradeRecord. Every failure is
appended to the user's bot log with the signal context before it
propagates.

Submission and recording run as one shielded task. A caller that times
out or is cancelled stops waiting, but a trade that was already broadcast
is still confirmed and recorded; ``drain`` waits for such trades.
"""

from __future__ import annotations

import asyncio
import functools
from typing import Any, Dict, Optional

from polybot.core.interfaces import ExecutionProvider, PersistenceSink, UserProvider
from polybot.core.logger import get_logger
from polybot.core.models import BotConfig, Direction, TradeRecord, TradeSignal, utc_now
from polybot.execution.exceptions import (
    DailyLossLimitError,
    DailyTradeLimitError,
    EdgeBelowThresholdError,
    ExecutionUnavailableError,
    InsufficientAllowanceError,
    InvalidSignalError,
    OpenPositionLimitError,
    RiskLimitExceededError,
    TierLimitExceededError,
    TradeExecutionError,
    TransactionFailedError,
    UserNotFoundError,
)
from polybot.execution.risk_manager import (
    calculate_position_size,
    from_fixed_point,
    limits_for_tier,
    to_fixed_point,
)

logger = get_logger("executor")


class TradeExecutor:
    """
    Shared by every bot instance. Holds no per-user state; the execution
    provider serializes submissions through its single signer.
    """

    def __init__(
        self,
        users: UserProvider,
        sink: PersistenceSink,
        provider: Optional[ExecutionProvider] = None,
        call_timeout: float = 30.0,
    ):
        self._users = users
        self._sink = sink
        self._provider = provider
        self.call_timeout = call_timeout
        # In-flight submissions by task, mapped to their user id.
        self._submissions: Dict[asyncio.Task, int] = {}

    @property
    def provider_available(self) -> bool:
        return self._provider is not None and self._provider.is_available

    def has_pending_submission(self, user_id: int) -> bool:
        return user_id in self._submissions.values()

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight submissions, e.g. before closing the store."""
        if not self._submissions:
            return
        logger.info("Waiting for in-flight trades", count=len(self._submissions))
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        # Loops because a detached failure schedules its own log write.
        while self._submissions:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                logger.warning("Trades still in flight", count=len(self._submissions))
                return
            await asyncio.wait(list(self._submissions), timeout=remaining)

    async def execute_trade(
        self,
        user_id: int,
        wallet_address: str,
        config: BotConfig,
        signal: TradeSignal,
    ) -> str:
        """Execute ``signal`` for the user and return the transaction hash."""
        context: Dict[str, Any] = {}
        try:
            return await self._execute(user_id, wallet_address, config, signal, context)
        except Exception as e:
            await self._log_failure(user_id, signal, e, context)
            if isinstance(e, TradeExecutionError):
                raise
            raise TradeExecutionError(f"Unexpected execution error: {e!r}") from e

    async def _call(self, coro: Any) -> Any:
        return await asyncio.wait_for(coro, timeout=self.call_timeout)

    async def _execute(
        self,
        user_id: int,
        wallet_address: str,
        config: BotConfig,
        signal: TradeSignal,
        context: Dict[str, Any],
    ) -> str:
        if signal is None or signal.edge <= 0:
            raise InvalidSignalError("Invalid signal: edge must be positive")

        user = await self._call(self._users.get_user_by_id(user_id))
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")

        if signal.edge < config.edge_threshold:
            raise EdgeBelowThresholdError(
                f"Edge {signal.edge:.4f} below threshold {config.edge_threshold}",
                edge=signal.edge,
                threshold=config.edge_threshold,
            )

        if not self.provider_available:
            raise ExecutionUnavailableError("Execution provider not configured")
        provider = self._provider

        allowance = await self._call(provider.get_user_allowance(wallet_address))
        if allowance == 0:
            raise InsufficientAllowanceError("User has not approved USDC allowance")

        try:
            sizing = calculate_position_size(
                entry_price=signal.entry_price,
                confidence=signal.confidence,
                max_position_size=config.max_position_size,
                kelly_fraction=config.kelly_fraction,
            )
        except ValueError as e:
            raise InvalidSignalError(str(e)) from e
        size = sizing.size_usd
        context["position_size"] = size

        await self._check_tier_limits(wallet_address, user.subscription_tier, config, size)
        await self._check_daily_limits(user_id, user.subscription_tier, config)

        task = asyncio.create_task(
            self._submit(provider, user_id, wallet_address, signal, size, context),
            name=f"trade-submit-{user_id}",
        )
        self._submissions[task] = user_id
        task.add_done_callback(self._forget_submission)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                logger.warning(
                    "Caller gave up waiting; trade continues in background",
                    user_id=user_id,
                    market_id=signal.market_id,
                )
                task.add_done_callback(
                    functools.partial(self._detached_done, user_id, signal, context)
                )
            raise

    async def _submit(
        self,
        provider: ExecutionProvider,
        user_id: int,
        wallet_address: str,
        signal: TradeSignal,
        size: float,
        context: Dict[str, Any],
    ) -> str:
        # The provider bounds its own steps; no outer timeout may cut it
        # off between broadcast and recording.
        tx_hash = await provider.execute_trade(
            wallet_address, signal.market_id, to_fixed_point(size), signal.direction == Direction.UP
        )
        context["tx_hash"] = tx_hash
        await self._record_trade(user_id, signal, size, tx_hash)
        return tx_hash

    def _forget_submission(self, task: asyncio.Task) -> None:
        self._submissions.pop(task, None)

    def _detached_done(
        self,
        user_id: int,
        signal: TradeSignal,
        context: Dict[str, Any],
        task: asyncio.Task,
    ) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        log_task = asyncio.create_task(self._log_failure(user_id, signal, error, context))
        self._submissions[log_task] = user_id
        log_task.add_done_callback(self._forget_submission)

    # ------------------------------------------------------------------
    # Limit checks
    # ------------------------------------------------------------------

    async def _check_tier_limits(
        self,
        wallet_address: str,
        subscription_tier: str,
        config: BotConfig,
        size: float,
    ) -> None:
        tier = await self._call(self._provider.get_user_tier(wallet_address))
        tier_max = from_fixed_point(await self._call(self._provider.get_max_position_for_tier(tier)))
        if size > tier_max:
            raise TierLimitExceededError(
                f"Position ${size:.2f} exceeds tier {tier} limit ${tier_max:.2f}",
                tier=tier,
                tier_max=tier_max,
            )

        app_max = limits_for_tier(subscription_tier).max_position_size
        if size > app_max:
            raise TierLimitExceededError(
                f"Position ${size:.2f} exceeds {subscription_tier} subscription limit ${app_max:.2f}",
                tier=subscription_tier,
                tier_max=app_max,
            )

        if size > config.max_position_size:
            raise RiskLimitExceededError(
                f"Position ${size:.2f} exceeds configured max ${config.max_position_size:.2f}"
            )

    async def _check_daily_limits(self, user_id: int, subscription_tier: str, config: BotConfig) -> None:
        max_trades = min(config.max_daily_trades, limits_for_tier(subscription_tier).max_daily_trades)
        today = await self._call(self._sink.get_today_trade_count(user_id))
        if today >= max_trades:
            raise DailyTradeLimitError(
                f"Daily trade limit reached: {today}/{max_trades}",
                trades_today=today,
                limit=max_trades,
            )

        open_positions = await self._call(self._sink.get_open_trade_count(user_id))
        if open_positions >= config.max_open_positions:
            raise OpenPositionLimitError(
                f"Open position limit reached: {open_positions}/{config.max_open_positions}"
            )

        pnl = await self._call(self._sink.get_today_realized_pnl(user_id))
        if config.max_daily_loss > 0 and pnl <= -config.max_daily_loss:
            raise DailyLossLimitError(
                f"Daily loss limit reached: ${-pnl:.2f}/${config.max_daily_loss:.2f}"
            )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _record_trade(self, user_id: int, signal: TradeSignal, size: float, tx_hash: str) -> None:
        is_up = signal.direction == Direction.UP
        record = TradeRecord(
            user_id=user_id,
            market_id=signal.market_id,
            market_question=signal.market_question,
            strategy="btc15m_up" if is_up else "btc15m_down",
            side="yes" if is_up else "no",
            entry_price=signal.entry_price,
            quantity=size / signal.entry_price,
            entry_value=size,
            tx_hash=tx_hash,
            status="open",
            entry_time=utc_now(),
            metadata={
                "edge": signal.edge,
                "confidence": signal.confidence,
                "reasoning": signal.reasoning,
                "indicator_scores": dict(signal.indicator_scores),
            },
        )
        # The trade is on-chain at this point; a persistence failure must not
        # turn it into a reported execution failure.
        try:
            await self._sink.create_trade(record)
            await self._sink.create_bot_log(
                user_id,
                "info",
                f"Trade executed: {signal.direction.value} {signal.market_question} | "
                f"Edge: {signal.edge:.4f}, Confidence: {signal.confidence:.2f}, "
                f"Size: ${size:.2f}, Tx: {tx_hash}",
                {"tx_hash": tx_hash, "size": size, "market_id": signal.market_id},
                utc_now(),
            )
        except Exception as e:
            logger.error(
                "Trade executed but not recorded",
                user_id=user_id,
                tx_hash=tx_hash,
                error=repr(e),
            )

        logger.info(
            "Trade executed",
            user_id=user_id,
            direction=signal.direction.value,
            market_id=signal.market_id,
            size_usd=size,
            edge=round(signal.edge, 4),
            confidence=round(signal.confidence, 2),
            tx_hash=tx_hash,
        )

    async def _log_failure(
        self,
        user_id: int,
        signal: Optional[TradeSignal],
        error: BaseException,
        context: Dict[str, Any],
    ) -> None:
        reason = getattr(error, "reason", type(error).__name__)
        details: Dict[str, Any] = {"reason": reason, **context}
        if signal is not None:
            details.update(
                direction=signal.direction.value,
                edge=signal.edge,
                confidence=signal.confidence,
                market_id=signal.market_id,
            )
        if isinstance(error, TransactionFailedError) and error.tx_hash:
            details["tx_hash"] = error.tx_hash

        message = f"Trade execution failed: {error}"
        if signal is not None:
            message += (
                f" | Signal: direction={signal.direction.value}, "
                f"edge={signal.edge:.4f}, confidence={signal.confidence:.2f}"
            )

        logger.error("Trade execution rejected", user_id=user_id, error=str(error), **details)
        try:
            await self._sink.create_bot_log(user_id, "error", message, details, utc_now())
        except Exception as e:
            logger.warning("Failed to persist trade failure log", user_id=user_id, error=repr(e))

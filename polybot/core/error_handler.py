"""
Graceful Error Handler - classification for per-user trading errors.

Maps unexpected errors onto the three outcomes a bot cycle can have:

- TRANSIENT: log and skip the cycle, the bot keeps running
- RECOVERABLE: log at error level (and into the user's bot log), keep running
- FATAL: the bot instance must stop; the process keeps going
"""

from __future__ import annotations

import asyncio
import enum
import traceback
from typing import Any, Awaitable, Callable, Dict, Optional

from polybot.bots.exceptions import BotConfigError, BotStartupError
from polybot.core.logger import get_logger
from polybot.execution.exceptions import TradeExecutionError

logger = get_logger("error_handler")

DbLogFn = Callable[..., Awaitable[None]]


class ErrorSeverity(enum.Enum):
    """How badly an error affects a bot instance."""

    FATAL = "fatal"              # Stop this user's bot
    RECOVERABLE = "recoverable"  # Log loudly, keep cycling
    TRANSIENT = "transient"      # Log quietly, keep cycling


# Components whose failures only ever cost one cycle.
_TRANSIENT_COMPONENTS = frozenset({
    "market_monitor",
    "price_feed",
    "market_feed",
    "warmup",
})

# Components whose failures mean the bot cannot continue.
_FATAL_COMPONENTS = frozenset({
    "startup",
    "config",
})


class GracefulErrorHandler:
    """
    Centralized error classification and handling.

    Usage::

        handler = GracefulErrorHandler(db_log_fn=store.create_bot_log)
        severity = await handler.handle(err, user_id=7, component="executor")
    """

    def __init__(self, db_log_fn: Optional[DbLogFn] = None):
        self._db_log_fn = db_log_fn

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify_error(
        self,
        error: BaseException,
        *,
        component: str = "",
    ) -> ErrorSeverity:
        """Classify an error by type first, then by the component it came from."""
        if isinstance(error, (BotConfigError, BotStartupError)):
            return ErrorSeverity.FATAL
        if isinstance(error, TradeExecutionError):
            return ErrorSeverity.RECOVERABLE

        comp = component.lower().strip()
        if comp in _FATAL_COMPONENTS:
            return ErrorSeverity.FATAL
        if comp in _TRANSIENT_COMPONENTS:
            return ErrorSeverity.TRANSIENT

        if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError, OSError)):
            return ErrorSeverity.TRANSIENT

        # Unknown errors: log loudly but keep the bot alive
        return ErrorSeverity.RECOVERABLE

    # ------------------------------------------------------------------
    # Handling
    # ------------------------------------------------------------------

    async def handle(
        self,
        error: BaseException,
        *,
        user_id: Optional[int] = None,
        component: str = "",
        context: Optional[Dict[str, Any]] = None,
    ) -> ErrorSeverity:
        """
        Classify, log, and persist an error to the user's bot log.

        Returns the severity so callers can decide what to do.
        """
        severity = self.classify_error(error, component=component)
        tb = traceback.format_exception(type(error), error, error.__traceback__)
        tb_str = "".join(tb[-3:])

        msg = (
            f"[{severity.value.upper()}] {component or 'unknown'}: "
            f"{type(error).__name__}: {error}"
        )
        extra = dict(context or {})

        if severity == ErrorSeverity.FATAL:
            logger.error(msg, user_id=user_id, traceback=tb_str, **extra)
        elif severity == ErrorSeverity.RECOVERABLE:
            logger.warning(msg, user_id=user_id, traceback=tb_str, **extra)
        else:
            logger.info(msg, user_id=user_id, **extra)

        if self._db_log_fn and user_id is not None:
            level_map = {
                ErrorSeverity.FATAL: "error",
                ErrorSeverity.RECOVERABLE: "error",
                ErrorSeverity.TRANSIENT: "warning",
            }
            try:
                await self._db_log_fn(
                    user_id,
                    level_map[severity],
                    msg,
                    {"component": component, **extra},
                )
            except Exception as e:
                logger.warning("Failed to persist error log", user_id=user_id, error=repr(e))

        return severity

"""
Trade execution exception hierarchy.

Each rejection carries a stable ``reason`` code so callers can log and
count failures by kind without parsing messages. None of these are retried
automatically; the next cycle re-evaluates from scratch.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class TradeExecutionError(Exception):
    """Base class for every trade rejection or submission failure."""

    reason: str = "execution_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context: Dict[str, Any] = context


class InvalidSignalError(TradeExecutionError):
    """Signal edge is zero or negative."""
    reason = "invalid_signal"


class EdgeBelowThresholdError(TradeExecutionError):
    reason = "edge_below_threshold"


class UserNotFoundError(TradeExecutionError):
    reason = "user_not_found"


class ExecutionUnavailableError(TradeExecutionError):
    """No execution provider configured (missing key or proxy address)."""
    reason = "execution_unavailable"


class InsufficientAllowanceError(TradeExecutionError):
    reason = "insufficient_allowance"


class TierLimitExceededError(TradeExecutionError):
    """Position exceeds the ceiling reported by the proxy contract for the user's tier."""
    reason = "tier_limit_exceeded"


class RiskLimitExceededError(TradeExecutionError):
    """Position exceeds the user's own configured maximum."""
    reason = "risk_limit_exceeded"


class DailyTradeLimitError(TradeExecutionError):
    reason = "daily_trade_limit"


class OpenPositionLimitError(TradeExecutionError):
    reason = "open_position_limit"


class DailyLossLimitError(TradeExecutionError):
    reason = "daily_loss_limit"


class TransactionFailedError(TradeExecutionError):
    """Submission raised, timed out, or the receipt reported failure."""
    reason = "transaction_failed"

    def __init__(self, message: str, tx_hash: Optional[str] = None, **context: Any) -> None:
        super().__init__(message, tx_hash=tx_hash, **context)
        self.tx_hash = tx_hash

"""
Risk Manager - fractional-Kelly position sizing and limit arithmetic.

Sizing for a binary outcome bought at ``entry_price`` (payout 1):

    odds       = 1 / entry_price - 1
    kelly_full = (odds * p - q) / odds         p = confidence / 100
    size       = max_position * clamp(kelly_full * kelly_fraction, 0, 1)
    size       = min(max(size, MIN_POSITION_USD), max_position)

then rounded down to cents. The floor is applied before the cap, so a
max position below the floor wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Dict

from polybot.core.logger import get_logger

logger = get_logger("risk_manager")

MIN_POSITION_USD = 10.0
USDC_DECIMALS = 6

_CENT = Decimal("0.01")
_UNIT = Decimal(10) ** USDC_DECIMALS


@dataclass(frozen=True)
class TierLimits:
    max_daily_trades: int
    max_position_size: float


# Application-level ceilings per subscription tier.
SUBSCRIPTION_LIMITS: Dict[str, TierLimits] = {
    "none": TierLimits(max_daily_trades=0, max_position_size=0.0),
    "basic": TierLimits(max_daily_trades=10, max_position_size=100.0),
    "pro": TierLimits(max_daily_trades=50, max_position_size=500.0),
    "enterprise": TierLimits(max_daily_trades=999, max_position_size=5000.0),
}


def limits_for_tier(tier: str) -> TierLimits:
    return SUBSCRIPTION_LIMITS.get((tier or "none").lower(), SUBSCRIPTION_LIMITS["none"])


@dataclass
class PositionSizeResult:
    """Result of position sizing calculation."""
    size_usd: float = 0.0
    kelly_full: float = 0.0
    kelly_fractional: float = 0.0
    floor_applied: bool = False
    capped: bool = False


def round_down_cents(amount: float) -> float:
    return float(Decimal(str(amount)).quantize(_CENT, rounding=ROUND_DOWN))


def to_fixed_point(amount_usd: float) -> int:
    """Dollars to 6-decimal integer units, truncating sub-unit dust."""
    return int((Decimal(str(amount_usd)) * _UNIT).to_integral_value(rounding=ROUND_DOWN))


def from_fixed_point(units: int) -> float:
    return float(Decimal(int(units)) / _UNIT)


def apply_gas_buffer(estimate: int, buffer_pct: int = 20) -> int:
    """Inflate a gas estimate by ``buffer_pct`` percent using integer math."""
    return int(estimate) * (100 + int(buffer_pct)) // 100


def calculate_position_size(
    entry_price: float,
    confidence: float,
    max_position_size: float,
    kelly_fraction: float,
) -> PositionSizeResult:
    """
    Size a position with fractional Kelly.

    Args:
        entry_price: Price of the outcome being bought, strictly between 0 and 1
        confidence: Signal confidence in percent (0-100)
        max_position_size: Per-trade ceiling in dollars
        kelly_fraction: Multiplier on full Kelly (0-1)
    """
    if not 0 < entry_price < 1:
        raise ValueError(f"entry_price must be between 0 and 1, got {entry_price}")

    odds = 1.0 / entry_price - 1.0
    p = confidence / 100.0
    q = 1.0 - p
    kelly_full = (odds * p - q) / odds
    kelly_fractional = max(0.0, min(1.0, kelly_full * kelly_fraction))

    size = max_position_size * kelly_fractional
    result = PositionSizeResult(kelly_full=kelly_full, kelly_fractional=kelly_fractional)

    if size < MIN_POSITION_USD:
        size = MIN_POSITION_USD
        result.floor_applied = True
    if size > max_position_size:
        size = max_position_size
        result.capped = True

    result.size_usd = round_down_cents(size)

    logger.debug(
        "Position size calculated",
        entry_price=entry_price,
        confidence=round(confidence, 2),
        kelly_full=round(kelly_full, 4),
        kelly_fractional=round(kelly_fractional, 4),
        size_usd=result.size_usd,
        floor_applied=result.floor_applied,
        capped=result.capped,
    )
    return result

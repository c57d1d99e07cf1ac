"""
Signal Engine - combines indicator signals into one directional call.

Weighted sum of the bank's signals decides direction (strictly positive is
UP, everything else DOWN) and confidence (|sum| x 100). Edge is the
confidence-weighted shortfall of the target outcome's price from 1:

    edge = confidence / 100 * (1 - target_price)

Weak signals are returned, not filtered; the caller applies its own edge
threshold.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from polybot.core.config import DEFAULT_INDICATOR_WEIGHTS, validate_weights
from polybot.core.logger import get_logger
from polybot.core.models import Direction, MarketSnapshot, TradeSignal, utc_now
from polybot.indicators.bank import IndicatorBank

logger = get_logger("signal_engine")

WEAK_SIGNAL_REASONING = "Weak signal from all indicators"


class SignalEngine:
    """Stateless over its bank: every call to ``analyze`` reads current indicator state."""

    def __init__(
        self,
        bank: Optional[IndicatorBank] = None,
        weights: Optional[Mapping[str, float]] = None,
    ):
        self.bank = bank or IndicatorBank()
        self.weights = validate_weights(dict(weights or DEFAULT_INDICATOR_WEIGHTS))

        missing = set(self.weights) ^ set(self.bank.names)
        if missing:
            raise ValueError(
                f"weights and indicators must name the same set, mismatched: {sorted(missing)}"
            )

    def update_price(self, price: float, volume: Optional[float] = None, timestamp=None) -> None:
        self.bank.update(price, volume, timestamp)

    def is_ready(self) -> bool:
        return self.bank.is_ready()

    def analyze(self, current_price: float, market: MarketSnapshot) -> Optional[TradeSignal]:
        """Return a signal for ``market`` or None while any indicator is warming up."""
        if not self.bank.is_ready():
            logger.debug("Indicators not ready", waiting_on=self.bank.not_ready())
            return None

        scores = self.bank.scores()
        weighted_sum = sum(scores[name] * weight for name, weight in self.weights.items())

        direction = Direction.UP if weighted_sum > 0 else Direction.DOWN
        confidence = abs(weighted_sum) * 100
        target_price = market.yes_price if direction == Direction.UP else market.no_price
        edge = (confidence / 100) * (1 - target_price)

        signal = TradeSignal(
            direction=direction,
            confidence=confidence,
            edge=edge,
            market_id=market.id,
            market_question=market.question,
            entry_price=target_price,
            reference_price=current_price,
            reasoning=self._build_reasoning(direction, scores),
            indicator_scores=scores,
            timestamp=utc_now(),
        )
        logger.debug(
            "Signal generated",
            direction=direction.value,
            confidence=round(confidence, 2),
            edge=round(edge, 4),
            market_id=market.id,
        )
        return signal

    def _build_reasoning(self, direction: Direction, scores: Dict[str, float]) -> str:
        reasons = []
        for name, indicator in self.bank:
            score = scores[name]
            if abs(score) > indicator.reasoning_threshold:
                reasons.append(indicator.explain(score))
        detail = ", ".join(reasons) if reasons else WEAK_SIGNAL_REASONING
        return f"{direction.value}: {detail}"

    def get_indicator_values(self) -> Dict[str, Any]:
        return {
            "ready": self.bank.is_ready(),
            "samples": self.bank.samples,
            "weights": dict(self.weights),
            "indicators": self.bank.values(),
        }

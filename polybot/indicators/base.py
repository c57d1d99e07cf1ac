"""
Indicator Interface - Abstract base for every streaming indicator.

An indicator consumes one price tick at a time and reports a bounded
signal in [-1, +1]: positive is bullish, negative bearish. Until
``is_ready()`` is true the signal is always 0.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional


def clamp(value: float, low: float = -1.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class Indicator(ABC):
    """
    Streaming indicator contract.

    Subclasses must implement ``update``, ``get_signal``, ``is_ready`` and
    ``reset``. ``explain`` and ``values`` feed the human-readable reasoning
    and status views; they never influence sizing.
    """

    name: str = "indicator"
    # Signals whose magnitude exceeds this are mentioned in the reasoning.
    reasoning_threshold: float = 0.5

    @abstractmethod
    def update(
        self,
        price: float,
        volume: Optional[float] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        """Consume one tick. Pure side effect on internal state."""

    @abstractmethod
    def get_signal(self) -> float:
        """Current signal in [-1, 1]; 0 when not ready."""

    @abstractmethod
    def is_ready(self) -> bool:
        """Whether enough samples have been seen for the signal to mean anything."""

    @abstractmethod
    def reset(self) -> None:
        """Drop all accumulated state."""

    def explain(self, score: float) -> str:
        direction = "bullish" if score > 0 else "bearish"
        return f"{self.name} {direction}"

    def values(self) -> Dict[str, Any]:
        return {"signal": self.get_signal(), "ready": self.is_ready()}

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name} ready={self.is_ready()}>"

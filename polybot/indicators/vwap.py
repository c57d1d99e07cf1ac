"""Session volume-weighted average price."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from polybot.core.models import utc_now
from polybot.indicators.base import Indicator, clamp


class VWAP(Indicator):
    """
    Cumulative (price x volume) / cumulative volume since construction or
    the last ``reset()``. Signal is the distance of the latest price from
    VWAP, scaled by 50 and clamped.
    """

    name = "vwap"
    reasoning_threshold = 0.3

    def __init__(self):
        self._cumulative_pv = 0.0
        self._cumulative_volume = 0.0
        self._last_price: Optional[float] = None
        self.session_start: datetime = utc_now()

    def update(
        self,
        price: float,
        volume: Optional[float] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        vol = float(volume or 0.0)
        if vol < 0:
            raise ValueError("volume must not be negative")
        self._cumulative_pv += price * vol
        self._cumulative_volume += vol
        self._last_price = price

    def get_value(self) -> Optional[float]:
        if self._cumulative_volume <= 0:
            return None
        return self._cumulative_pv / self._cumulative_volume

    def get_signal(self) -> float:
        vwap = self.get_value()
        if vwap is None or self._last_price is None or vwap == 0:
            return 0.0
        distance = (self._last_price - vwap) / vwap
        return clamp(distance * 50)

    def is_ready(self) -> bool:
        return self._cumulative_volume > 0

    def reset(self) -> None:
        self._cumulative_pv = 0.0
        self._cumulative_volume = 0.0
        self._last_price = None
        self.session_start = utc_now()

    def explain(self, score: float) -> str:
        return "Price above VWAP" if score > 0 else "Price below VWAP"

    def values(self) -> Dict[str, Any]:
        return {
            "vwap": self.get_value(),
            "session_start": self.session_start.isoformat(),
            "signal": self.get_signal(),
        }

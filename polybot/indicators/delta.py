"""Short-term price momentum over 1 and 3 minute look-backs."""

from __future__ import annotations

from collections import deque
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, Optional

from polybot.core.models import PricePoint, ensure_utc, utc_now
from polybot.indicators.base import Indicator, clamp


class Delta(Indicator):
    """
    Keeps a five-minute buffer of ticks. "Now" is the timestamp of the most
    recent tick; the look-back price is the sample closest to now - N minutes.
    """

    name = "delta"
    HISTORY = timedelta(minutes=5)

    def __init__(self):
        self._history: Deque[PricePoint] = deque()

    def update(
        self,
        price: float,
        volume: Optional[float] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        ts = ensure_utc(timestamp) if timestamp else utc_now()
        self._history.append(PricePoint(price=price, timestamp=ts))
        cutoff = ts - self.HISTORY
        self._history = deque(p for p in self._history if p.timestamp >= cutoff)

    def _closest_price(self, target: datetime) -> Optional[float]:
        if not self._history:
            return None
        closest = min(self._history, key=lambda p: abs((target - p.timestamp).total_seconds()))
        return closest.price

    def delta_for_interval(self, minutes: int) -> Optional[float]:
        """Percent change from the sample nearest ``minutes`` ago to the latest."""
        if len(self._history) < 2:
            return None
        latest = self._history[-1]
        old_price = self._closest_price(latest.timestamp - timedelta(minutes=minutes))
        if not old_price:
            return None
        return (latest.price - old_price) / old_price * 100.0

    def delta_1m(self) -> Optional[float]:
        return self.delta_for_interval(1)

    def delta_3m(self) -> Optional[float]:
        return self.delta_for_interval(3)

    def get_signal(self) -> float:
        d1, d3 = self.delta_1m(), self.delta_3m()
        if d1 is None or d3 is None:
            return 0.0
        return clamp((d1 * 0.6 + d3 * 0.4) * 50)

    def is_strong_upward(self) -> bool:
        d1, d3 = self.delta_1m(), self.delta_3m()
        return d1 is not None and d3 is not None and d1 > 0.5 and d3 > 0.3

    def is_strong_downward(self) -> bool:
        d1, d3 = self.delta_1m(), self.delta_3m()
        return d1 is not None and d3 is not None and d1 < -0.5 and d3 < -0.3

    def is_ready(self) -> bool:
        return len(self._history) >= 2

    def reset(self) -> None:
        self._history.clear()

    def explain(self, score: float) -> str:
        label = "Upward" if score > 0 else "Downward"
        return f"{label} momentum (1m: {self.delta_1m() or 0.0:.2f}%, 3m: {self.delta_3m() or 0.0:.2f}%)"

    def values(self) -> Dict[str, Any]:
        return {
            "delta_1m": self.delta_1m(),
            "delta_3m": self.delta_3m(),
            "samples": len(self._history),
            "signal": self.get_signal(),
        }

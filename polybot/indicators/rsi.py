"""Relative Strength Index over a sliding window of price changes."""

from __future__ import annotations

from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, Optional

import numpy as np

from polybot.indicators.base import Indicator


class RSI(Indicator):
    """
    Simple-average RSI over the last ``period`` changes.

    Signal: RSI > 70 maps to -1 (overbought), RSI < 30 to +1 (oversold),
    linear in between with 0 at RSI = 50.
    """

    name = "rsi"
    OVERBOUGHT = 70.0
    OVERSOLD = 30.0

    def __init__(self, period: int = 14):
        if period < 1:
            raise ValueError("RSI period must be at least 1")
        self.period = period
        self._last_price: Optional[float] = None
        self._gains: Deque[float] = deque(maxlen=period)
        self._losses: Deque[float] = deque(maxlen=period)

    def update(
        self,
        price: float,
        volume: Optional[float] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        if self._last_price is not None:
            change = price - self._last_price
            self._gains.append(change if change > 0 else 0.0)
            self._losses.append(-change if change < 0 else 0.0)
        self._last_price = price

    def get_value(self) -> Optional[float]:
        if not self.is_ready():
            return None
        avg_gain = float(np.mean(self._gains))
        avg_loss = float(np.mean(self._losses))
        if avg_loss == 0:
            return 100.0
        rs = avg_gain / avg_loss
        return 100.0 - (100.0 / (1.0 + rs))

    def get_signal(self) -> float:
        rsi = self.get_value()
        if rsi is None:
            return 0.0
        if rsi > self.OVERBOUGHT:
            return -1.0
        if rsi < self.OVERSOLD:
            return 1.0
        if rsi > 50:
            return -((rsi - 50.0) / 20.0)
        return (50.0 - rsi) / 20.0

    def is_ready(self) -> bool:
        return len(self._gains) >= self.period

    def reset(self) -> None:
        self._last_price = None
        self._gains.clear()
        self._losses.clear()

    def explain(self, score: float) -> str:
        rsi = self.get_value() or 0.0
        label = "oversold" if score > 0 else "overbought"
        return f"RSI {label} ({rsi:.1f})"

    def values(self) -> Dict[str, Any]:
        return {"rsi": self.get_value(), "signal": self.get_signal()}

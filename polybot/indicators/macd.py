"""Moving Average Convergence Divergence with SMA-seeded EMAs."""

from __future__ import annotations

from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, Optional, Tuple

import numpy as np

from polybot.indicators.base import Indicator, clamp


def _ema(value: float, prev: float, period: int) -> float:
    multiplier = 2.0 / (period + 1)
    return (value - prev) * multiplier + prev


class MACD(Indicator):
    """
    MACD line = fast EMA - slow EMA; signal line = EMA of the MACD line.

    Output is ``histogram * 2`` clamped to [-1, 1]. Crossover detection is
    exposed for reasoning only.
    """

    name = "macd"

    def __init__(self, fast_period: int = 12, slow_period: int = 26, signal_period: int = 9):
        if not (0 < fast_period < slow_period):
            raise ValueError("MACD requires 0 < fast_period < slow_period")
        if signal_period < 1:
            raise ValueError("MACD signal_period must be at least 1")
        self.fast_period = fast_period
        self.slow_period = slow_period
        self.signal_period = signal_period

        self._prices: Deque[float] = deque(maxlen=slow_period + 10)
        self._macd_line: Deque[float] = deque(maxlen=signal_period + 10)
        self._fast_ema: Optional[float] = None
        self._slow_ema: Optional[float] = None
        self._signal_ema: Optional[float] = None

    def update(
        self,
        price: float,
        volume: Optional[float] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        self._prices.append(price)

        if self._fast_ema is None:
            if len(self._prices) >= self.fast_period:
                self._fast_ema = float(np.mean(list(self._prices)[-self.fast_period:]))
        else:
            self._fast_ema = _ema(price, self._fast_ema, self.fast_period)

        if self._slow_ema is None:
            if len(self._prices) >= self.slow_period:
                self._slow_ema = float(np.mean(list(self._prices)[-self.slow_period:]))
        else:
            self._slow_ema = _ema(price, self._slow_ema, self.slow_period)

        if self._fast_ema is None or self._slow_ema is None:
            return

        macd = self._fast_ema - self._slow_ema
        self._macd_line.append(macd)
        if self._signal_ema is None:
            if len(self._macd_line) >= self.signal_period:
                self._signal_ema = float(np.mean(list(self._macd_line)[-self.signal_period:]))
        else:
            self._signal_ema = _ema(macd, self._signal_ema, self.signal_period)

    def get_value(self) -> Optional[Tuple[float, float, float]]:
        """(macd, signal, histogram) or None before the signal line exists."""
        if not self._macd_line or self._signal_ema is None:
            return None
        macd = self._macd_line[-1]
        return macd, self._signal_ema, macd - self._signal_ema

    def get_signal(self) -> float:
        value = self.get_value()
        if value is None:
            return 0.0
        return clamp(value[2] * 2)

    def is_bullish_crossover(self) -> bool:
        if len(self._macd_line) < 2 or self._signal_ema is None:
            return False
        previous, current = self._macd_line[-2], self._macd_line[-1]
        return previous <= self._signal_ema < current

    def is_bearish_crossover(self) -> bool:
        if len(self._macd_line) < 2 or self._signal_ema is None:
            return False
        previous, current = self._macd_line[-2], self._macd_line[-1]
        return previous >= self._signal_ema > current

    def is_ready(self) -> bool:
        return self._signal_ema is not None

    def reset(self) -> None:
        self._prices.clear()
        self._macd_line.clear()
        self._fast_ema = None
        self._slow_ema = None
        self._signal_ema = None

    def explain(self, score: float) -> str:
        if score > 0:
            return "MACD bullish crossover" if self.is_bullish_crossover() else "MACD bullish"
        return "MACD bearish crossover" if self.is_bearish_crossover() else "MACD bearish"

    def values(self) -> Dict[str, Any]:
        value = self.get_value()
        if value is None:
            return {"macd": None, "signal_line": None, "histogram": None, "signal": 0.0}
        macd, signal_line, histogram = value
        return {
            "macd": macd,
            "signal_line": signal_line,
            "histogram": histogram,
            "signal": self.get_signal(),
        }

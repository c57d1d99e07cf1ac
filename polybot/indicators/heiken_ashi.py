"""Heiken-Ashi smoothed candles."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Optional, Tuple

from polybot.core.models import utc_now
from polybot.indicators.base import Indicator, clamp

OHLC = Tuple[float, float, float, float]
OHLCSource = Callable[[float, Optional[float], Optional[datetime]], OHLC]

MAX_CANDLES = 50


def single_price_ohlc(price: float, volume: Optional[float] = None,
                      timestamp: Optional[datetime] = None) -> OHLC:
    """Use the tick price for open, high, low and close.

    The live feed delivers ticks, not candles. Replace this source once a
    real candle feed is wired in; the candle math does not change.
    """
    return price, price, price, price


@dataclass(frozen=True)
class HeikenAshiCandle:
    open: float
    high: float
    low: float
    close: float
    timestamp: datetime

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        return self.close < self.open

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @property
    def range(self) -> float:
        return self.high - self.low

    def has_small_wicks(self, ratio: float = 0.3) -> bool:
        upper = self.high - max(self.open, self.close)
        lower = min(self.open, self.close) - self.low
        limit = self.body * ratio
        return upper < limit and lower < limit


class HeikenAshi(Indicator):
    """
    Signal = direction x (body / range), boosted 1.2x when the previous
    candle points the same way and damped 0.8x otherwise, clamped.
    """

    name = "heiken_ashi"

    def __init__(self, ohlc_source: OHLCSource = single_price_ohlc):
        self._ohlc_source = ohlc_source
        self._candles: Deque[HeikenAshiCandle] = deque(maxlen=MAX_CANDLES)

    def update(
        self,
        price: float,
        volume: Optional[float] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        o, h, l, c = self._ohlc_source(price, volume, timestamp)
        self.update_ohlc(o, h, l, c, timestamp)

    def update_ohlc(
        self,
        open_: float,
        high: float,
        low: float,
        close: float,
        timestamp: Optional[datetime] = None,
    ) -> None:
        ha_close = (open_ + high + low + close) / 4.0
        previous = self.current_candle
        if previous is not None:
            ha_open = (previous.open + previous.close) / 2.0
        else:
            ha_open = (open_ + close) / 2.0
        self._candles.append(
            HeikenAshiCandle(
                open=ha_open,
                high=max(high, ha_open, ha_close),
                low=min(low, ha_open, ha_close),
                close=ha_close,
                timestamp=timestamp or utc_now(),
            )
        )

    @property
    def current_candle(self) -> Optional[HeikenAshiCandle]:
        return self._candles[-1] if self._candles else None

    def get_signal(self) -> float:
        if len(self._candles) < 2:
            return 0.0
        current, previous = self._candles[-1], self._candles[-2]
        body_ratio = current.body / current.range if current.range > 0 else 0.0
        signal = 1.0 if current.is_bullish else -1.0
        signal *= body_ratio
        signal *= 1.2 if current.is_bullish == previous.is_bullish else 0.8
        return clamp(signal)

    def is_strong_uptrend(self) -> bool:
        if len(self._candles) < 3:
            return False
        return all(c.is_bullish and c.has_small_wicks() for c in list(self._candles)[-3:])

    def is_strong_downtrend(self) -> bool:
        if len(self._candles) < 3:
            return False
        return all(c.is_bearish and c.has_small_wicks() for c in list(self._candles)[-3:])

    def is_ready(self) -> bool:
        return bool(self._candles)

    def reset(self) -> None:
        self._candles.clear()

    def explain(self, score: float) -> str:
        if score > 0:
            return "Strong uptrend (HA)" if self.is_strong_uptrend() else "Bullish candles (HA)"
        return "Strong downtrend (HA)" if self.is_strong_downtrend() else "Bearish candles (HA)"

    def values(self) -> Dict[str, Any]:
        candle = self.current_candle
        return {
            "candle": None if candle is None else {
                "open": candle.open,
                "high": candle.high,
                "low": candle.low,
                "close": candle.close,
            },
            "candles": len(self._candles),
            "signal": self.get_signal(),
        }

"""Indicator Bank - the per-bot set of streaming indicators."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

from polybot.indicators.base import Indicator
from polybot.indicators.delta import Delta
from polybot.indicators.heiken_ashi import HeikenAshi, OHLCSource, single_price_ohlc
from polybot.indicators.macd import MACD
from polybot.indicators.rsi import RSI
from polybot.indicators.vwap import VWAP


def default_indicators(ohlc_source: OHLCSource = single_price_ohlc) -> Dict[str, Indicator]:
    indicators = [RSI(), MACD(), VWAP(), HeikenAshi(ohlc_source=ohlc_source), Delta()]
    return {ind.name: ind for ind in indicators}


class IndicatorBank:
    """
    Feeds every tick to every indicator. Each bot instance owns exactly one
    bank; banks are never shared between users.
    """

    def __init__(self, indicators: Optional[Mapping[str, Indicator]] = None):
        self._indicators: Dict[str, Indicator] = dict(indicators or default_indicators())
        if not self._indicators:
            raise ValueError("IndicatorBank needs at least one indicator")
        self.samples = 0

    def update(
        self,
        price: float,
        volume: Optional[float] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        for indicator in self._indicators.values():
            indicator.update(price, volume, timestamp)
        self.samples += 1

    def is_ready(self) -> bool:
        return all(ind.is_ready() for ind in self._indicators.values())

    def not_ready(self) -> list:
        return [name for name, ind in self._indicators.items() if not ind.is_ready()]

    def scores(self) -> Dict[str, float]:
        return {name: ind.get_signal() for name, ind in self._indicators.items()}

    def reset(self) -> None:
        for indicator in self._indicators.values():
            indicator.reset()
        self.samples = 0

    def values(self) -> Dict[str, Dict[str, Any]]:
        return {name: ind.values() for name, ind in self._indicators.items()}

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(self._indicators)

    def __getitem__(self, name: str) -> Indicator:
        return self._indicators[name]

    def __iter__(self) -> Iterator[Tuple[str, Indicator]]:
        return iter(self._indicators.items())

    def __len__(self) -> int:
        return len(self._indicators)

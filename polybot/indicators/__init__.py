from polybot.indicators.bank import IndicatorBank, default_indicators
from polybot.indicators.base import Indicator, clamp
from polybot.indicators.delta import Delta
from polybot.indicators.heiken_ashi import HeikenAshi, single_price_ohlc
from polybot.indicators.macd import MACD
from polybot.indicators.rsi import RSI
from polybot.indicators.vwap import VWAP

__all__ = [
    "Delta",
    "HeikenAshi",
    "Indicator",
    "IndicatorBank",
    "MACD",
    "RSI",
    "VWAP",
    "clamp",
    "default_indicators",
    "single_price_ohlc",
]

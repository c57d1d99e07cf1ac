"""Streaming indicator behaviour on synthetic price paths."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from polybot.indicators import MACD, RSI, VWAP, Delta, HeikenAshi, IndicatorBank

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_rsi_strictly_rising_is_overbought():
    rsi = RSI(period=14)
    for i in range(15):
        rsi.update(100.0 + i)
    assert rsi.is_ready()
    assert rsi.get_value() == 100.0
    assert rsi.get_signal() == -1.0
    assert rsi.explain(-1.0) == "RSI overbought (100.0)"


def test_rsi_strictly_falling_is_oversold():
    rsi = RSI(period=14)
    for i in range(15):
        rsi.update(200.0 - i)
    assert rsi.get_value() == pytest.approx(0.0)
    assert rsi.get_signal() == 1.0


def test_rsi_not_ready_reports_zero():
    rsi = RSI(period=14)
    for i in range(14):
        rsi.update(100.0 + i)
    # 14 prices yield only 13 changes
    assert not rsi.is_ready()
    assert rsi.get_signal() == 0.0


def test_macd_constant_series_is_flat():
    macd = MACD()
    for _ in range(40):
        macd.update(50_000.0)
    assert macd.is_ready()
    value = macd.get_value()
    assert value == pytest.approx((0.0, 0.0, 0.0))
    assert macd.get_signal() == 0.0


def test_macd_needs_slow_plus_signal_periods():
    macd = MACD(fast_period=12, slow_period=26, signal_period=9)
    for i in range(33):
        macd.update(100.0 + i)
    assert not macd.is_ready()
    macd.update(133.0)
    assert macd.is_ready()
    # On a linear ramp both EMAs lag by (period - 1) / 2
    assert macd.get_value()[0] == pytest.approx(7.0)


def test_macd_rejects_bad_periods():
    with pytest.raises(ValueError):
        MACD(fast_period=26, slow_period=12)


def test_vwap_single_sample_equals_price():
    vwap = VWAP()
    vwap.update(100.0, 5.0)
    assert vwap.get_value() == 100.0
    assert vwap.get_signal() == 0.0


def test_vwap_signal_tracks_distance_and_clamps():
    vwap = VWAP()
    vwap.update(100.0, 1.0)
    vwap.update(110.0, 1.0)
    assert vwap.get_value() == pytest.approx(105.0)
    assert vwap.get_signal() == 1.0
    assert vwap.explain(1.0) == "Price above VWAP"


def test_vwap_zero_volume_is_not_ready():
    vwap = VWAP()
    vwap.update(100.0, 0.0)
    assert not vwap.is_ready()
    assert vwap.get_signal() == 0.0


def test_delta_needs_two_samples():
    delta = Delta()
    delta.update(100.0, timestamp=T0)
    assert not delta.is_ready()
    assert delta.get_signal() == 0.0


def test_delta_uses_tick_timestamps_for_lookback():
    delta = Delta()
    delta.update(100.0, timestamp=T0)
    delta.update(101.0, timestamp=T0 + timedelta(minutes=1))
    assert delta.delta_1m() == pytest.approx(1.0)
    assert delta.delta_3m() == pytest.approx(1.0)
    assert delta.get_signal() == 1.0
    assert delta.explain(1.0) == "Upward momentum (1m: 1.00%, 3m: 1.00%)"


def test_delta_prunes_history_older_than_five_minutes():
    delta = Delta()
    delta.update(100.0, timestamp=T0)
    delta.update(150.0, timestamp=T0 + timedelta(minutes=6))
    assert not delta.is_ready()


def test_heiken_ashi_rising_prices_turn_bullish():
    ha = HeikenAshi()
    ha.update(100.0, timestamp=T0)
    assert ha.is_ready()
    assert ha.get_signal() == 0.0

    ha.update(101.0, timestamp=T0 + timedelta(minutes=1))
    # Previous candle was flat, so the signal is damped
    assert ha.get_signal() == pytest.approx(0.8)

    ha.update(102.0, timestamp=T0 + timedelta(minutes=2))
    assert ha.get_signal() == 1.0


def test_heiken_ashi_falling_prices_turn_bearish():
    ha = HeikenAshi()
    for i, price in enumerate([100.0, 99.0, 98.0]):
        ha.update(price, timestamp=T0 + timedelta(minutes=i))
    assert ha.get_signal() == -1.0


def test_heiken_ashi_strong_uptrend_after_three_bullish_candles():
    ha = HeikenAshi()
    for i, price in enumerate([100.0, 101.0, 102.0]):
        ha.update(price, timestamp=T0 + timedelta(minutes=i))
    assert not ha.is_strong_uptrend()
    ha.update(103.0, timestamp=T0 + timedelta(minutes=3))
    assert ha.is_strong_uptrend()
    assert ha.explain(1.0) == "Strong uptrend (HA)"


def test_heiken_ashi_accepts_custom_ohlc_source():
    ha = HeikenAshi(ohlc_source=lambda p, v, t: (p - 1.0, p + 2.0, p - 2.0, p + 1.0))
    ha.update(100.0)
    candle = ha.current_candle
    assert candle.close == pytest.approx(100.0)
    assert candle.high == pytest.approx(102.0)


def test_bank_reset_clears_every_indicator():
    bank = IndicatorBank()
    for i in range(60):
        bank.update(100.0 + (i % 7), 1000.0, T0 + timedelta(seconds=30 * i))
    assert bank.is_ready()
    assert bank.samples == 60

    bank.reset()
    assert bank.samples == 0
    assert not bank.is_ready()
    assert all(score == 0.0 for score in bank.scores().values())


def test_bank_reports_warming_indicators():
    bank = IndicatorBank()
    bank.update(100.0, 1000.0, T0)
    assert set(bank.not_ready()) == {"rsi", "macd", "delta"}
    assert bank.names == ("rsi", "macd", "vwap", "heiken_ashi", "delta")

"""Position sizing and fixed-point arithmetic."""

from __future__ import annotations

import pytest

from polybot.execution.risk_manager import (
    MIN_POSITION_USD,
    apply_gas_buffer,
    calculate_position_size,
    from_fixed_point,
    limits_for_tier,
    round_down_cents,
    to_fixed_point,
)


def test_fractional_kelly_even_odds():
    result = calculate_position_size(
        entry_price=0.5, confidence=80.0, max_position_size=100.0, kelly_fraction=0.25
    )
    assert result.kelly_full == pytest.approx(0.6)
    assert result.size_usd == 15.00
    assert not result.floor_applied
    assert not result.capped


def test_size_is_rounded_down_to_cents():
    result = calculate_position_size(
        entry_price=0.4, confidence=80.0, max_position_size=100.0, kelly_fraction=0.25
    )
    assert result.size_usd == 16.66


def test_small_kelly_is_raised_to_floor():
    result = calculate_position_size(
        entry_price=0.5, confidence=52.0, max_position_size=50.0, kelly_fraction=0.25
    )
    assert result.size_usd == MIN_POSITION_USD
    assert result.floor_applied


def test_negative_kelly_still_gets_floor():
    result = calculate_position_size(
        entry_price=0.5, confidence=40.0, max_position_size=100.0, kelly_fraction=0.25
    )
    assert result.kelly_fractional == 0.0
    assert result.size_usd == MIN_POSITION_USD


def test_cap_wins_over_floor():
    result = calculate_position_size(
        entry_price=0.5, confidence=80.0, max_position_size=5.0, kelly_fraction=0.25
    )
    assert result.size_usd == 5.00
    assert result.floor_applied
    assert result.capped


@pytest.mark.parametrize("entry_price", [0.0, 1.0, -0.2, 1.5])
def test_entry_price_outside_unit_interval_rejected(entry_price):
    with pytest.raises(ValueError):
        calculate_position_size(
            entry_price=entry_price, confidence=80.0, max_position_size=100.0, kelly_fraction=0.25
        )


def test_fixed_point_truncates_dust():
    assert to_fixed_point(15.0) == 15_000_000
    assert to_fixed_point(0.1234567) == 123_456
    assert from_fixed_point(16_660_000) == pytest.approx(16.66)


def test_round_down_cents():
    assert round_down_cents(12.349) == 12.34
    assert round_down_cents(12.0) == 12.0


def test_gas_buffer_is_integer_math():
    assert apply_gas_buffer(100_000, 20) == 120_000
    assert apply_gas_buffer(99_999, 20) == 119_998
    assert apply_gas_buffer(50_000, 0) == 50_000


def test_unknown_subscription_tier_has_no_allowance():
    assert limits_for_tier("platinum").max_daily_trades == 0
    assert limits_for_tier("PRO").max_position_size == 500.0
    assert limits_for_tier(None).max_position_size == 0.0

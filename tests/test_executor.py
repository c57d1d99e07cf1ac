"""Tests for TradeExecutor.execute_trade() covering every gate and the happy path."""

from __future__ import annotations

import asyncio

import pytest

from polybot.core.models import Direction
from polybot.execution.exceptions import (
    DailyLossLimitError,
    DailyTradeLimitError,
    EdgeBelowThresholdError,
    ExecutionUnavailableError,
    InsufficientAllowanceError,
    InvalidSignalError,
    OpenPositionLimitError,
    RiskLimitExceededError,
    TierLimitExceededError,
    TradeExecutionError,
    TransactionFailedError,
    UserNotFoundError,
)
from polybot.execution.executor import TradeExecutor

from tests.conftest import (
    MARKET_ADDRESS,
    WALLET,
    StubProvider,
    StubStore,
    make_config,
    make_signal,
    make_user,
)


def _setup(tier: str = "pro", provider=None, **config_overrides):
    store = StubStore()
    store.add_user(make_user(1, tier=tier), make_config(1, **config_overrides))
    provider = provider if provider is not None else StubProvider()
    executor = TradeExecutor(users=store, sink=store, provider=provider)
    return executor, store, provider


async def _run(executor, store, signal=None, user_id=1):
    return await executor.execute_trade(
        user_id, WALLET, store.configs[1], signal or make_signal()
    )


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_happy_path_records_open_trade():
    executor, store, provider = _setup()

    tx_hash = await _run(executor, store)

    assert tx_hash == "0x" + "ab" * 32
    assert provider.submitted == [(WALLET, MARKET_ADDRESS, 16_660_000, True)]

    assert len(store.trades) == 1
    trade = store.trades[0]
    assert trade.status == "open"
    assert trade.strategy == "btc15m_up"
    assert trade.side == "yes"
    assert trade.entry_value == 16.66
    assert trade.quantity == pytest.approx(16.66 / 0.40)
    assert trade.tx_hash == tx_hash
    assert trade.metadata["reasoning"] == "UP: RSI oversold (24.1)"

    assert any(m.startswith("Trade executed: UP") for m in store.messages(1))


@pytest.mark.asyncio
async def test_down_signal_buys_no_side():
    executor, store, provider = _setup()
    signal = make_signal(direction=Direction.DOWN, entry_price=0.60, edge=0.3)

    await _run(executor, store, signal)

    assert provider.submitted[0][3] is False
    assert store.trades[0].side == "no"
    assert store.trades[0].strategy == "btc15m_down"


@pytest.mark.asyncio
async def test_persistence_failure_does_not_fail_confirmed_trade():
    executor, store, provider = _setup()

    async def broken_create_trade(record):
        raise RuntimeError("disk full")

    store.create_trade = broken_create_trade
    tx_hash = await _run(executor, store)
    assert tx_hash.startswith("0x")
    assert len(provider.submitted) == 1


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_non_positive_edge_rejected():
    executor, store, provider = _setup()
    with pytest.raises(InvalidSignalError):
        await _run(executor, store, make_signal(edge=0.0))
    assert provider.submitted == []


@pytest.mark.asyncio
async def test_unknown_user_rejected():
    executor, store, _ = _setup()
    store.users.clear()
    with pytest.raises(UserNotFoundError):
        await _run(executor, store)


@pytest.mark.asyncio
async def test_edge_below_threshold_rejected():
    executor, store, _ = _setup(edge_threshold=0.10)
    with pytest.raises(EdgeBelowThresholdError):
        await _run(executor, store, make_signal(edge=0.09))


@pytest.mark.asyncio
async def test_edge_equal_to_threshold_accepted():
    executor, store, provider = _setup(edge_threshold=0.25)
    await _run(executor, store, make_signal(edge=0.25))
    assert len(provider.submitted) == 1


@pytest.mark.asyncio
async def test_missing_provider_rejected():
    store = StubStore()
    store.add_user(make_user(1), make_config(1))
    executor = TradeExecutor(users=store, sink=store, provider=None)
    assert not executor.provider_available
    with pytest.raises(ExecutionUnavailableError):
        await _run(executor, store)


@pytest.mark.asyncio
async def test_zero_allowance_rejected():
    executor, store, provider = _setup(provider=StubProvider(allowance=0))
    with pytest.raises(InsufficientAllowanceError):
        await _run(executor, store)
    assert provider.submitted == []


@pytest.mark.asyncio
async def test_invalid_entry_price_rejected():
    executor, store, _ = _setup()
    with pytest.raises(InvalidSignalError):
        await _run(executor, store, make_signal(entry_price=1.0, edge=0.5))


@pytest.mark.asyncio
async def test_contract_tier_ceiling_enforced():
    executor, store, _ = _setup(provider=StubProvider(tier_max=5_000_000))
    with pytest.raises(TierLimitExceededError) as exc:
        await _run(executor, store)
    assert exc.value.context["tier_max"] == 5.0


@pytest.mark.asyncio
async def test_subscription_tier_ceiling_enforced():
    executor, store, _ = _setup(tier="none")
    with pytest.raises(TierLimitExceededError):
        await _run(executor, store)


@pytest.mark.asyncio
async def test_configured_max_position_enforced():
    # Floor ($10) exceeds the user's $5 cap, sizing caps to $5 and passes
    executor, store, provider = _setup(max_position_size=5.0)
    await _run(executor, store)
    assert provider.submitted[0][2] == 5_000_000


@pytest.mark.asyncio
async def test_daily_trade_limit_uses_lower_of_config_and_tier():
    executor, store, _ = _setup(tier="basic", max_daily_trades=20)
    store.today_trades = 10
    with pytest.raises(DailyTradeLimitError):
        await _run(executor, store)


@pytest.mark.asyncio
async def test_open_position_limit_enforced():
    executor, store, _ = _setup(max_open_positions=3)
    store.open_trades = 3
    with pytest.raises(OpenPositionLimitError):
        await _run(executor, store)


@pytest.mark.asyncio
async def test_daily_loss_limit_enforced():
    executor, store, _ = _setup(max_daily_loss=25.0)
    store.realized_pnl = -25.0
    with pytest.raises(DailyLossLimitError):
        await _run(executor, store)


@pytest.mark.asyncio
async def test_transaction_failure_logged_with_context():
    provider = StubProvider()
    provider.fail_with = TransactionFailedError("Transaction reverted", tx_hash="0xdead")
    executor, store, _ = _setup(provider=provider)

    with pytest.raises(TransactionFailedError):
        await _run(executor, store)

    assert store.trades == []
    failures = [log for log in store.logs if log[1] == "error"]
    assert len(failures) == 1
    _, _, message, metadata = failures[0]
    assert message == (
        "Trade execution failed: Transaction reverted | "
        "Signal: direction=UP, edge=0.4800, confidence=80.00"
    )
    assert metadata["reason"] == "transaction_failed"
    assert metadata["tx_hash"] == "0xdead"
    assert metadata["direction"] == "UP"
    assert metadata["position_size"] == 16.66


@pytest.mark.asyncio
async def test_unexpected_error_wrapped():
    provider = StubProvider()
    provider.fail_with = RuntimeError("rpc exploded")
    executor, store, _ = _setup(provider=provider)

    with pytest.raises(TradeExecutionError) as exc:
        await _run(executor, store)
    assert isinstance(exc.value.__cause__, RuntimeError)
    assert any(m.startswith("Trade execution failed") for m in store.messages(1))


# ---------------------------------------------------------------------------
# Callers that stop waiting
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_broadcast_trade_is_recorded_after_caller_times_out():
    provider = StubProvider()
    provider.confirm_delay = 0.2
    executor, store, _ = _setup(provider=provider)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(_run(executor, store), timeout=0.05)

    assert len(provider.submitted) == 1
    assert executor.has_pending_submission(1)

    await executor.drain()

    assert not executor.has_pending_submission(1)
    assert len(store.trades) == 1
    assert store.trades[0].tx_hash == "0x" + "ab" * 32
    assert not [log for log in store.logs if log[1] == "error"]


@pytest.mark.asyncio
async def test_failure_after_caller_left_is_still_logged():
    provider = StubProvider()
    provider.confirm_delay = 0.1
    provider.fail_after_broadcast = True
    provider.fail_with = TransactionFailedError("Transaction reverted", tx_hash="0xbeef")
    executor, store, _ = _setup(provider=provider)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(_run(executor, store), timeout=0.02)
    await executor.drain()

    assert store.trades == []
    failures = [log for log in store.logs if log[1] == "error"]
    assert len(failures) == 1
    assert failures[0][3]["tx_hash"] == "0xbeef"
    assert not executor.has_pending_submission(1)


@pytest.mark.asyncio
async def test_drain_gives_up_at_timeout():
    provider = StubProvider()
    provider.confirm_delay = 0.3
    executor, store, _ = _setup(provider=provider)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(_run(executor, store), timeout=0.02)
    await executor.drain(timeout=0.02)
    assert executor.has_pending_submission(1)

    await executor.drain()
    assert len(store.trades) == 1


def test_risk_limit_error_is_a_trade_execution_error():
    assert issubclass(RiskLimitExceededError, TradeExecutionError)
    assert RiskLimitExceededError.reason == "risk_limit_exceeded"

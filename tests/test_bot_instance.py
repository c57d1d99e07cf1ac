"""TradingBot lifecycle and per-cycle decisions."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from polybot.bots.exceptions import BotAlreadyRunningError, BotStartupError, BotStateError
from polybot.bots.instance import TradingBot
from polybot.core.models import BotState, PricePoint
from polybot.engine.signal_engine import SignalEngine
from polybot.execution.exceptions import TransactionFailedError
from polybot.execution.executor import TradeExecutor
from polybot.indicators.bank import IndicatorBank

from tests.conftest import (
    StubMonitor,
    StubProvider,
    StubStore,
    fake_indicators,
    make_config,
    make_market,
    make_user,
)


def _make_bot(store=None, monitor=None, provider=None, engine=None, user_expires_in=None, **config):
    store = store or StubStore()
    if 1 not in store.users:
        store.add_user(make_user(1, expires_in=user_expires_in), make_config(1, **config))
    monitor = monitor or StubMonitor(market=make_market())
    provider = provider or StubProvider()
    executor = TradeExecutor(users=store, sink=store, provider=provider)
    engine = engine or SignalEngine(bank=IndicatorBank(fake_indicators(signal=1.0)))
    bot = TradingBot(user_id=1, store=store, monitor=monitor, executor=executor, signal_engine=engine)
    return bot, store, monitor, provider


async def _shutdown(bot):
    await bot.stop()
    # Let the cycle loop observe the stop event
    await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_start_runs_first_cycle_and_trades():
    bot, store, monitor, provider = _make_bot()

    await bot.start()
    try:
        assert bot.state == BotState.RUNNING
        assert monitor.start_calls == 1
        assert bot.cycles_run == 1
        assert len(provider.submitted) == 1
        assert store.statuses[1]["status"] == "running"
        assert "Bot started" in store.messages(1)
    finally:
        await _shutdown(bot)


@pytest.mark.asyncio
async def test_double_start_raises():
    bot, *_ = _make_bot()
    await bot.start()
    try:
        with pytest.raises(BotAlreadyRunningError, match="Bot is already running for user 1"):
            await bot.start()
    finally:
        await _shutdown(bot)


@pytest.mark.asyncio
async def test_stop_when_stopped_is_noop():
    bot, store, *_ = _make_bot()
    await bot.stop()
    assert bot.state == BotState.STOPPED
    assert store.statuses == {}


@pytest.mark.asyncio
async def test_stop_resets_indicators_and_persists_status():
    bot, store, *_ = _make_bot()
    await bot.start()
    assert bot.engine.bank.samples > 0

    await bot.stop(reason="maintenance")
    await asyncio.sleep(0)

    assert bot.engine.bank.samples == 0
    assert store.statuses[1]["status"] == "stopped"
    assert store.statuses[1]["error_message"] == "maintenance"
    assert store.statuses[1]["last_stopped_at"] is not None


@pytest.mark.asyncio
async def test_start_failure_leaves_error_state():
    class BrokenMonitor(StubMonitor):
        async def start(self):
            raise RuntimeError("feed unavailable")

    bot, store, *_ = _make_bot(monitor=BrokenMonitor(market=make_market()))

    with pytest.raises(BotStartupError) as exc:
        await bot.start()

    assert isinstance(exc.value.__cause__, RuntimeError)
    assert bot.state == BotState.ERROR
    assert store.statuses[1]["status"] == "error"
    assert store.statuses[1]["error_message"] == "feed unavailable"

    with pytest.raises(BotStateError):
        await bot.start()


@pytest.mark.asyncio
async def test_warm_up_feeds_history():
    now = datetime.now(timezone.utc)
    history = [
        PricePoint(price=65_000.0 + (i % 5) * 10, timestamp=now - timedelta(minutes=60 - i))
        for i in range(60)
    ]
    monitor = StubMonitor(market=None, history=history)
    bot, *_ = _make_bot(monitor=monitor, engine=SignalEngine())

    await bot.start()
    try:
        # No market, so the first cycle adds nothing
        assert bot.engine.bank.samples == 60
        assert bot.engine.is_ready()
    finally:
        await _shutdown(bot)


# ---------------------------------------------------------------------------
# Cycle decisions
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_deactivated_config_stops_bot():
    bot, store, *_ = _make_bot()
    await bot.start()

    store.configs[1] = make_config(1, is_active=False)
    await bot.run_trading_cycle()
    await asyncio.sleep(0)

    assert bot.state == BotState.STOPPED
    assert store.statuses[1]["status"] == "stopped"


@pytest.mark.asyncio
async def test_missing_config_stops_bot():
    bot, store, *_ = _make_bot()
    await bot.start()

    del store.configs[1]
    await bot.run_trading_cycle()
    await asyncio.sleep(0)

    assert bot.state == BotState.STOPPED
    assert store.statuses[1]["error_message"] == "Bot configuration not found"


@pytest.mark.asyncio
async def test_expired_subscription_stops_bot():
    bot, store, _, provider = _make_bot(user_expires_in=timedelta(minutes=-1))

    await bot.start()
    await asyncio.sleep(0)

    assert bot.state == BotState.STOPPED
    assert provider.submitted == []
    assert "Bot stopped: subscription expired" in store.messages(1)
    assert store.statuses[1]["error_message"] == "Subscription expired"


@pytest.mark.asyncio
async def test_edge_equal_to_threshold_trades():
    market = make_market()
    edge = SignalEngine(bank=IndicatorBank(fake_indicators(signal=0.5))).analyze(65_000.0, market).edge
    engine = SignalEngine(bank=IndicatorBank(fake_indicators(signal=0.5)))

    bot, _, _, provider = _make_bot(monitor=StubMonitor(market=market), engine=engine, edge_threshold=edge)
    await bot.start()
    try:
        assert len(provider.submitted) == 1
    finally:
        await _shutdown(bot)


@pytest.mark.asyncio
async def test_edge_just_below_threshold_skips():
    market = make_market()
    edge = SignalEngine(bank=IndicatorBank(fake_indicators(signal=0.5))).analyze(65_000.0, market).edge
    engine = SignalEngine(bank=IndicatorBank(fake_indicators(signal=0.5)))

    bot, _, _, provider = _make_bot(
        monitor=StubMonitor(market=market), engine=engine, edge_threshold=edge + 1e-9
    )
    await bot.start()
    try:
        assert provider.submitted == []
        assert bot.is_running
    finally:
        await _shutdown(bot)


@pytest.mark.asyncio
async def test_execution_failure_keeps_bot_running():
    provider = StubProvider()
    provider.fail_with = TransactionFailedError("Transaction reverted", tx_hash="0xdead")
    bot, store, *_ = _make_bot(provider=provider)

    await bot.start()
    try:
        assert bot.is_running
        assert any(m.startswith("Trade execution failed") for m in store.messages(1))

        await bot.run_trading_cycle()
        assert bot.is_running
        assert bot.cycles_run == 2
    finally:
        await _shutdown(bot)


@pytest.mark.asyncio
async def test_slow_confirmation_is_recorded_and_blocks_next_trade():
    provider = StubProvider()
    provider.confirm_delay = 0.2
    bot, store, *_ = _make_bot(provider=provider)
    bot.trade_timeout = 0.05

    await bot.start()
    try:
        assert bot.is_running
        assert bot.trades_executed == 0
        assert any(m.startswith("Trade confirmation pending") for m in store.messages(1))
        assert not any(m.startswith("Trade execution failed") for m in store.messages(1))

        await bot.run_trading_cycle()
        assert "Cycle skipped: previous trade still settling" in store.messages(1)
        assert len(provider.submitted) == 1

        await bot._executor.drain()
        assert len(store.trades) == 1
    finally:
        await _shutdown(bot)


@pytest.mark.asyncio
async def test_no_market_skips_cycle():
    bot, _, _, provider = _make_bot(monitor=StubMonitor(market=None))
    await bot.start()
    try:
        assert provider.submitted == []
        assert bot.engine.bank.samples == 0
        assert bot.is_running
    finally:
        await _shutdown(bot)


@pytest.mark.asyncio
async def test_no_price_skips_cycle():
    bot, _, _, provider = _make_bot(monitor=StubMonitor(market=make_market(), price=None))
    await bot.start()
    try:
        assert provider.submitted == []
        assert bot.is_running
    finally:
        await _shutdown(bot)


@pytest.mark.asyncio
async def test_transient_config_error_keeps_bot_running():
    bot, store, *_ = _make_bot()
    await bot.start()
    try:
        store.fail_config_for.add(1)
        await bot.run_trading_cycle()
        assert bot.is_running
    finally:
        store.fail_config_for.clear()
        await _shutdown(bot)


@pytest.mark.asyncio
async def test_overlapping_cycle_is_skipped():
    bot, *_ = _make_bot(monitor=StubMonitor(market=None))
    await bot.start()
    try:
        runs = bot.cycles_run
        async with bot._cycle_lock:
            await bot.run_trading_cycle()
        assert bot.cycles_run == runs
        assert bot.cycles_skipped_overlap == 1
    finally:
        await _shutdown(bot)


@pytest.mark.asyncio
async def test_status_view():
    bot, *_ = _make_bot()
    await bot.start()
    try:
        status = bot.get_status()
        assert status["state"] == "running"
        assert status["trades_executed"] == 1
        assert bot.runtime_state.running
    finally:
        await _shutdown(bot)

#!/usr/bin/env python3
"""
PolyBot - Main Entry Point

main.py owns the process lifecycle: preflight, config, logging, then
init / run / shutdown of the shared services and the bot manager.
"""

from __future__ import annotations

import asyncio
import random
import signal as sig
import sys
import time
from pathlib import Path


def preflight_checks(config_path: str = "config/config.yaml") -> bool:
    """Run pre-flight checks before startup."""
    for directory in ["data", "logs", "config"]:
        Path(directory).mkdir(parents=True, exist_ok=True)

    if not Path(config_path).exists():
        print(f"[WARN] {config_path} not found, using defaults")
    if not Path(".env").exists():
        print("[WARN] No .env file; execution stays disabled unless BOT_PRIVATE_KEY "
              "and POLYMARKET_BOT_PROXY_ADDRESS are set in the environment")
    return True


async def run_service() -> None:
    """Build shared services, run the bot manager until signalled, shut down."""
    from polybot.bots.manager import BotManager
    from polybot.core.config import get_config
    from polybot.core.database import DatabaseManager
    from polybot.core.logger import get_logger
    from polybot.core.runtime_safety import install_asyncio_exception_handler
    from polybot.exchange.market_monitor import MarketMonitor
    from polybot.execution.executor import TradeExecutor
    from polybot.execution.proxy_contract import ProxyContractClient

    logger = get_logger("main")
    settings = get_config()
    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    install_asyncio_exception_handler(loop, logger)
    for s in (sig.SIGINT, sig.SIGTERM):
        try:
            loop.add_signal_handler(s, shutdown_event.set)
        except NotImplementedError:
            sig.signal(s, lambda *_: shutdown_event.set())

    db = DatabaseManager(settings.app.db_path)
    await db.initialize()

    monitor = MarketMonitor.from_settings(settings)
    executor = TradeExecutor(
        users=db,
        sink=db,
        provider=ProxyContractClient.from_settings(settings),
        call_timeout=settings.bot.call_timeout_seconds,
    )
    manager = BotManager(db, monitor, executor, settings=settings)

    try:
        await monitor.start()
        await manager.initialize()
        logger.info("Service running", **manager.get_statistics())
        await shutdown_event.wait()
        logger.info("Shutdown requested")
    finally:
        await manager.shutdown()
        await executor.drain(timeout=settings.bot.trade_timeout_seconds)
        await monitor.stop()
        await db.close()
        logger.info("Service stopped")


def main():
    """Main entry point."""
    from polybot import __version__
    from polybot.core.config import ConfigManager
    from polybot.core.logger import get_logger, setup_logging
    from polybot.core.runtime_safety import install_global_exception_handler

    if not preflight_checks():
        sys.exit(1)

    config = ConfigManager().config
    setup_logging(
        log_level=config.app.log_level,
        log_dir=config.app.log_dir,
        json_output=config.app.json_logs,
    )
    logger = get_logger("main")
    install_global_exception_handler(logger)
    logger.info(
        "Starting PolyBot",
        version=__version__,
        python=sys.version.split()[0],
        execution_enabled=config.execution.enabled,
    )

    # Keep the process alive on unexpected fatal exceptions, with a cap.
    failures = 0
    max_failures = 10
    while failures < max_failures:
        try:
            asyncio.run(run_service())
            return
        except KeyboardInterrupt:
            logger.info("Shutdown requested via keyboard interrupt")
            return
        except Exception as e:
            failures += 1
            delay = min(60.0, 2.0 * (2 ** min(failures - 1, 6))) + random.random()
            logger.critical(
                "Fatal runtime error; restarting service",
                error=repr(e),
                failures=failures,
                restart_in_seconds=round(delay, 2),
            )
            time.sleep(delay)

    logger.critical("Max restart attempts reached, shutting down", failures=failures)
    sys.exit(1)


if __name__ == "__main__":
    main()

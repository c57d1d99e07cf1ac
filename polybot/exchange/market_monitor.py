"""
Market Monitor - shared source of the current market and BTC price.

One instance per process, constructed explicitly and injected into every
bot. Only the monitor writes its snapshot; bots read it.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from polybot.core.config import Settings
from polybot.core.logger import get_logger
from polybot.core.models import MarketSnapshot, PricePoint
from polybot.exchange.polymarket_rest import PolymarketRESTClient
from polybot.exchange.polymarket_ws import PolymarketWebSocketClient
from polybot.exchange.price_feeds import BinancePriceClient, ChainlinkPriceOracle

logger = get_logger("market_monitor")


class MarketMonitor:
    """
    Push feed for market updates with an HTTP pull fallback; Chainlink for
    price with a Binance fallback. Every read is best-effort: failures are
    logged and surface as None (or an empty list), never as exceptions.
    """

    def __init__(
        self,
        ws_client: PolymarketWebSocketClient,
        rest_client: PolymarketRESTClient,
        binance: BinancePriceClient,
        oracle: Optional[ChainlinkPriceOracle] = None,
        series_id: str = "10192",
        series_slug: str = "btc-up-or-down-15m",
        fallback_timeout: float = 10.0,
    ):
        self._ws = ws_client
        self._rest = rest_client
        self._binance = binance
        self._oracle = oracle
        self.series_id = series_id
        self.series_slug = series_slug
        self.fallback_timeout = fallback_timeout

        self._current_market: Optional[MarketSnapshot] = None
        self._running = False
        self._ws_task: Optional[asyncio.Task] = None
        self._ws.on_market_update(self._on_market_update)

    @classmethod
    def from_settings(cls, settings: Settings) -> MarketMonitor:
        oracle: Optional[ChainlinkPriceOracle] = None
        if settings.price.rpc_url and settings.price.chainlink_address:
            oracle = ChainlinkPriceOracle(
                rpc_url=settings.price.rpc_url,
                aggregator_address=settings.price.chainlink_address,
                decimals=settings.price.chainlink_decimals,
                timeout_seconds=settings.price.http_timeout_seconds,
            )
        return cls(
            ws_client=PolymarketWebSocketClient(
                url=settings.market.ws_url,
                reconnect_delay=settings.market.reconnect_delay_seconds,
            ),
            rest_client=PolymarketRESTClient(
                base_url=settings.market.rest_url,
                timeout_seconds=settings.market.http_timeout_seconds,
            ),
            binance=BinancePriceClient(
                base_url=settings.price.binance_url,
                symbol=settings.price.symbol,
                timeout_seconds=settings.price.http_timeout_seconds,
            ),
            oracle=oracle,
            series_id=settings.market.series_id,
            series_slug=settings.market.series_slug,
            fallback_timeout=settings.price.http_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Open the push subscription. Safe to call repeatedly."""
        if self._running:
            return
        self._running = True
        await self._rest.initialize()
        await self._binance.initialize()
        await self._ws.subscribe_series(self.series_id)
        self._ws_task = asyncio.create_task(self._ws.connect(), name="market-feed")
        logger.info("Market monitor started", series_id=self.series_id, slug=self.series_slug)

    async def stop(self) -> None:
        """Tear down the push subscription and HTTP clients. Safe to call repeatedly."""
        if not self._running:
            return
        self._running = False
        await self._ws.disconnect()
        if self._ws_task is not None:
            self._ws_task.cancel()
            await asyncio.gather(self._ws_task, return_exceptions=True)
            self._ws_task = None
        await self._rest.close()
        await self._binance.close()
        logger.info("Market monitor stopped")

    # ------------------------------------------------------------------
    # Push feed
    # ------------------------------------------------------------------

    def _on_market_update(self, message: Dict[str, Any]) -> None:
        data = message.get("data")
        if not isinstance(data, dict):
            logger.debug("Market update without data", message_type=message.get("type"))
            return
        try:
            snapshot = MarketSnapshot.from_payload(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Malformed market update", error=str(e))
            return
        self._current_market = snapshot
        logger.debug(
            "Market updated",
            market_id=snapshot.id,
            yes_price=snapshot.yes_price,
            no_price=snapshot.no_price,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_current_market(self) -> Optional[MarketSnapshot]:
        market = self._current_market
        if market is not None and not market.is_expired():
            return market

        market = await self._rest.get_active_market(self.series_slug)
        if market is None:
            logger.info("No active market found", slug=self.series_slug)
            return None
        self._current_market = market
        return market

    async def get_current_price(self) -> Optional[PricePoint]:
        if self._oracle is not None:
            try:
                return await self._oracle.get_price()
            except Exception as e:
                logger.warning("Oracle price read failed, falling back", error=repr(e))

        try:
            return await asyncio.wait_for(self._binance.get_price(), timeout=self.fallback_timeout)
        except Exception as e:
            logger.warning("Fallback price read failed", error=repr(e))
            return None

    async def get_historical_prices(self, minutes: int) -> List[PricePoint]:
        try:
            return await asyncio.wait_for(
                self._binance.get_minute_closes(minutes), timeout=self.fallback_timeout
            )
        except Exception as e:
            logger.warning("Historical price fetch failed", minutes=minutes, error=repr(e))
            return []

    def get_status(self) -> Dict[str, Any]:
        market = self._current_market
        return {
            "running": self._running,
            "feed": self._ws.get_connection_info(),
            "market_id": market.id if market else None,
            "market_expires_at": market.expires_at.isoformat() if market else None,
            "oracle": self._oracle is not None,
        }

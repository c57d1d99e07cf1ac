from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from polybot.core.logger import get_logger
from polybot.core.models import MarketSnapshot, utc_now

logger = get_logger("polymarket_rest")


class PolymarketRESTClient:
    """Minimal async client for pulling the active market of a series."""

    def __init__(
        self,
        base_url: str = "https://clob.polymarket.com",
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or "https://clob.polymarket.com").rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def initialize(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self._transport
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def get_series_markets(self, slug: str) -> List[Dict[str, Any]]:
        """Raw market dicts for a series; empty on any failure."""
        if self._client is None:
            await self.initialize()
        try:
            resp = await self._client.get(f"{self.base_url}/series/{slug}")
            resp.raise_for_status()
            data = resp.json()
            markets = data.get("markets", []) if isinstance(data, dict) else []
            return [m for m in markets if isinstance(m, dict)]
        except Exception as e:
            logger.warning("Series fetch failed", slug=slug, error=repr(e))
            return []

    async def get_active_market(self, slug: str) -> Optional[MarketSnapshot]:
        """First market in the series whose expiry is still in the future."""
        now = utc_now()
        for raw in await self.get_series_markets(slug):
            try:
                market = MarketSnapshot.from_payload(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.debug("Skipping malformed market", error=str(e), market_id=raw.get("id"))
                continue
            if not market.is_expired(now):
                return market
        return None

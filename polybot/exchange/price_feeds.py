"""
Reference price sources for BTC/USD.

The Chainlink aggregator on Polygon is the primary source (it is what the
markets resolve against); Binance is the fallback and the source of
historical minute candles for indicator warm-up.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, List, Optional

import httpx
from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

from polybot.core.logger import get_logger
from polybot.core.models import PricePoint, utc_now

logger = get_logger("price_feeds")

CHAINLINK_ABI = [
    {"inputs": [], "name": "latestRoundData", "outputs": [
        {"name": "roundId", "type": "uint80"}, {"name": "answer", "type": "int256"},
        {"name": "startedAt", "type": "uint256"}, {"name": "updatedAt", "type": "uint256"},
        {"name": "answeredInRound", "type": "uint80"}],
     "stateMutability": "view", "type": "function"},
]


def make_web3(rpc_url: str, timeout: float = 10.0) -> Web3:
    w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
    # Polygon blocks carry PoA extra data
    w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return w3


class ChainlinkPriceOracle:
    """Reads ``latestRoundData`` from a Chainlink aggregator."""

    def __init__(
        self,
        rpc_url: str,
        aggregator_address: str,
        decimals: int = 8,
        timeout_seconds: float = 10.0,
        w3: Optional[Web3] = None,
    ):
        self.rpc_url = rpc_url
        self.decimals = decimals
        self.timeout_seconds = timeout_seconds
        self.w3 = w3 or make_web3(rpc_url, timeout_seconds)
        self._contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(aggregator_address), abi=CHAINLINK_ABI
        )

    async def get_price(self) -> PricePoint:
        """Latest answer scaled by the feed decimals. Raises on any failure."""
        loop = asyncio.get_running_loop()
        data = await asyncio.wait_for(
            loop.run_in_executor(None, self._contract.functions.latestRoundData().call),
            timeout=self.timeout_seconds,
        )
        answer, updated_at = data[1], data[3]
        if answer <= 0:
            raise ValueError(f"non-positive oracle answer: {answer}")
        return PricePoint(
            price=answer / 10 ** self.decimals,
            timestamp=datetime.fromtimestamp(updated_at, tz=timezone.utc),
            source="chainlink",
        )


class BinancePriceClient:
    """Public Binance REST: spot ticker and 1-minute klines."""

    def __init__(
        self,
        base_url: str = "https://api.binance.com",
        symbol: str = "BTCUSDT",
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or "https://api.binance.com").rstrip("/")
        self.symbol = symbol
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

    async def get_price(self) -> PricePoint:
        """Current ticker price. Raises on any failure."""
        if self._client is None:
            await self.initialize()
        resp = await self._client.get(
            f"{self.base_url}/api/v3/ticker/price", params={"symbol": self.symbol}
        )
        resp.raise_for_status()
        price = float(resp.json()["price"])
        return PricePoint(price=price, timestamp=utc_now(), source="binance")

    async def get_minute_closes(self, minutes: int) -> List[PricePoint]:
        """Close of each of the last ``minutes`` one-minute candles, oldest first."""
        if minutes <= 0:
            return []
        if self._client is None:
            await self.initialize()
        resp = await self._client.get(
            f"{self.base_url}/api/v3/klines",
            params={"symbol": self.symbol, "interval": "1m", "limit": min(minutes, 1000)},
        )
        resp.raise_for_status()
        rows: Any = resp.json()
        return [
            PricePoint(
                price=float(row[4]),
                timestamp=datetime.fromtimestamp(row[0] / 1000.0, tz=timezone.utc),
                source="binance",
            )
            for row in rows
        ]

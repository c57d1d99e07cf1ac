"""
Polymarket WebSocket Client - live market updates for the BTC series.

One connection per process. Subscriptions are remembered and replayed
after every reconnect. Reconnects use a fixed delay.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from polybot.core.logger import get_logger

logger = get_logger("polymarket_ws")


class PolymarketWebSocketClient:
    """
    Polymarket live-data client.

    Features:
    - Auto-reconnection with a fixed delay
    - Series subscriptions replayed on reconnect
    - Message routing to registered callbacks by message type
    """

    def __init__(
        self,
        url: str = "wss://ws-live-data.polymarket.com",
        reconnect_delay: float = 5.0,
    ):
        self.url = url
        self.reconnect_delay = reconnect_delay

        self._ws: Optional[Any] = None
        self._connected = False
        self._running = False
        self._reconnect_count = 0
        self._last_message_at: float = 0.0
        self._subscriptions: Dict[str, Dict[str, Any]] = {}
        self._callbacks: Dict[str, List[Callable]] = defaultdict(list)

    # ------------------------------------------------------------------
    # Connection Management
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Run the connection until ``disconnect()`` is called."""
        self._running = True
        self._reconnect_count = 0

        while self._running:
            try:
                logger.info(
                    "Connecting to Polymarket WebSocket",
                    url=self.url,
                    attempt=self._reconnect_count + 1,
                )
                self._ws = await websockets.connect(
                    self.url,
                    ping_interval=20,
                    ping_timeout=10,
                    close_timeout=5,
                    max_size=2 ** 20,
                )
                self._connected = True
                self._reconnect_count = 0
                logger.info("WebSocket connected successfully")

                await self._resubscribe()
                await self._message_loop()

                # Server closed the stream cleanly; treat like a drop.
                self._connected = False
                if self._running:
                    logger.warning("WebSocket stream ended, reconnecting", delay=self.reconnect_delay)
                    await asyncio.sleep(self.reconnect_delay)

            except (ConnectionClosed, OSError, asyncio.TimeoutError) as e:
                self._connected = False
                self._reconnect_count += 1
                if not self._running:
                    break
                logger.warning(
                    "WebSocket disconnected, reconnecting",
                    error=str(e),
                    attempt=self._reconnect_count,
                    delay=self.reconnect_delay,
                )
                await asyncio.sleep(self.reconnect_delay)

            except asyncio.CancelledError:
                self._connected = False
                raise

            except Exception as e:
                self._connected = False
                self._reconnect_count += 1
                logger.error("WebSocket unexpected error", error=repr(e))
                if self._running:
                    await asyncio.sleep(self.reconnect_delay)

    async def disconnect(self) -> None:
        """Gracefully disconnect the WebSocket."""
        self._running = False
        self._connected = False

        if self._ws is not None:
            try:
                await self._ws.close()
            except (ConnectionClosed, OSError) as e:
                logger.debug("WebSocket close raised", error=str(e))
            self._ws = None

        logger.info("WebSocket disconnected")

    async def _message_loop(self) -> None:
        if not self._ws:
            return
        async for raw_message in self._ws:
            await self._handle_raw(raw_message)

    async def _handle_raw(self, raw_message: Any) -> None:
        try:
            message = json.loads(raw_message)
        except (TypeError, json.JSONDecodeError):
            logger.warning("Invalid JSON received", raw=str(raw_message)[:200])
            return
        if not isinstance(message, dict):
            return
        self._last_message_at = time.time()
        await self._route_message(str(message.get("type", "")), message)

    # ------------------------------------------------------------------
    # Subscription Management
    # ------------------------------------------------------------------

    async def subscribe_series(self, series_id: str) -> None:
        """Subscribe to market updates for a recurring market series."""
        message = {"type": "subscribe", "channel": "series", "seriesId": str(series_id)}
        self._subscriptions[f"series_{series_id}"] = message
        if self._connected and self._ws is not None:
            await self._send(message)

    async def _resubscribe(self) -> None:
        for message in self._subscriptions.values():
            if self._ws is None:
                break
            await self._send(message)

    async def _send(self, message: Dict[str, Any]) -> None:
        await self._ws.send(json.dumps(message))
        logger.debug("Subscription sent", channel=message.get("channel"), series=message.get("seriesId"))

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def on_market_update(self, callback: Callable) -> None:
        self._callbacks["market_update"].append(callback)

    async def _route_message(self, msg_type: str, message: Dict[str, Any]) -> None:
        for callback in self._callbacks.get(msg_type, []):
            try:
                if asyncio.iscoroutinefunction(callback):
                    await callback(message)
                else:
                    callback(message)
            except Exception as e:
                logger.error("Callback error", type=msg_type, error=repr(e))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._connected and self._ws is not None

    def get_connection_info(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "connected": self.is_connected,
            "reconnect_count": self._reconnect_count,
            "subscriptions": list(self._subscriptions.keys()),
            "last_message_age_s": (
                round(time.time() - self._last_message_at, 1) if self._last_message_at else None
            ),
        }

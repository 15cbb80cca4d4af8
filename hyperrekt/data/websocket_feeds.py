"""
Mid-price sources for the position close path.

The engine only ever asks "what is the current price of asset X".
Two sources answer it:

- RestPriceSource: one `allMids` request per call
- MidsFeed: Hyperliquid `allMids` WebSocket subscription, falling back to
  REST when the latest tick is stale (e.g. during a reconnect)

Usage:
    feed = MidsFeed(client)
    await feed.connect()
    price = await feed.get_price("BTC")
    await feed.disconnect()
"""

import asyncio
import json
import logging
import time
from typing import Callable, Optional, Protocol

import aiohttp

from config.settings import MAINNET_WS, TESTNET_WS, PRICE_STALE_SECONDS
from hyperrekt.data.hyperliquid_api import HyperliquidClient
from hyperrekt.errors import EngineError

logger = logging.getLogger(__name__)


class PriceSource(Protocol):
    async def get_price(self, asset: str) -> Optional[float]:
        ...


class RestPriceSource:
    """Pulls `allMids` over HTTP on every call."""

    def __init__(self, client: HyperliquidClient):
        self.client = client

    async def get_price(self, asset: str) -> Optional[float]:
        try:
            mids = await self.client.get_all_mids()
        except EngineError as e:
            logger.warning(f"allMids fetch failed: {e}")
            return None
        price = mids.get(asset)
        return price if price and price > 0 else None


class MidsFeed:
    """
    Real-time mid prices from the Hyperliquid WebSocket.

    Keeps the latest symbol -> price map. `get_price` serves from it while
    fresh and otherwise asks the REST fallback.
    """

    def __init__(
        self,
        client: HyperliquidClient,
        on_prices: Optional[Callable[[dict], None]] = None,
        max_age_seconds: float = PRICE_STALE_SECONDS,
    ):
        self.client = client
        self.on_prices = on_prices
        self.max_age_seconds = max_age_seconds
        self.fallback = RestPriceSource(client)

        self.mids: dict[str, float] = {}
        self.last_update: float = 0.0
        self.update_count: int = 0

        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def url(self) -> str:
        return TESTNET_WS if self.client.use_testnet else MAINNET_WS

    @property
    def age_seconds(self) -> float:
        """Seconds since the last tick."""
        return time.time() - self.last_update if self.last_update > 0 else float('inf')

    async def get_price(self, asset: str) -> Optional[float]:
        if self.age_seconds <= self.max_age_seconds:
            price = self.mids.get(asset)
            if price:
                return price
        return await self.fallback.get_price(asset)

    async def connect(self):
        """Connect and start receiving mids."""
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"allMids WS connecting to {self.url}")

    async def disconnect(self):
        """Disconnect and clean up."""
        self._running = False
        if self._ws and not self._ws.closed:
            await self._ws.close()
        if self._session and not self._session.closed:
            await self._session.close()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("allMids WS disconnected")

    async def _run_loop(self):
        """Connection loop with exponential reconnect delay."""
        attempts = 0
        while self._running:
            try:
                self._session = aiohttp.ClientSession()
                self._ws = await self._session.ws_connect(
                    self.url,
                    heartbeat=30,
                    timeout=aiohttp.ClientTimeout(total=30),
                )
                logger.info("allMids WS connected")
                attempts = 0

                await self._ws.send_str(json.dumps({
                    "method": "subscribe",
                    "subscription": {"type": "allMids"},
                }))

                async for msg in self._ws:
                    if not self._running:
                        break
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        self._handle_message(msg.data)
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        logger.error(f"allMids WS error: {self._ws.exception()}")
                        break

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"allMids WS connection error: {e}")
            finally:
                if self._session and not self._session.closed:
                    await self._session.close()

            if self._running:
                attempts += 1
                delay = min(2 ** attempts, 30)
                logger.info(f"allMids WS reconnecting in {delay}s...")
                await asyncio.sleep(delay)

    def _handle_message(self, raw: str):
        """Parse an `allMids` push and update the price map."""
        try:
            data = json.loads(raw)
            if data.get("channel") != "allMids":
                return
            mids = data.get("data", {}).get("mids", {})
            updated = {}
            for symbol, px in mids.items():
                price = float(px)
                if price > 0:
                    updated[symbol] = price
            if not updated:
                return

            self.mids.update(updated)
            self.last_update = time.time()
            self.update_count += 1

            if self.on_prices:
                self.on_prices(updated)

        except (json.JSONDecodeError, AttributeError, TypeError, ValueError) as e:
            logger.debug(f"allMids parse error: {e}")

"""
Periodic unrealized P&L poller.

While a bet is open the player wants to see live P&L. This polls
`clearinghouseState` on an asyncio task and hands every AccountState to a
callback. Polling stops by itself after PNL_MAX_FAILURES consecutive
failures.

Usage:
    poller = PnLPoller(client, user_address, on_update)
    poller.start()
    ...
    await poller.stop()
"""

import asyncio
import inspect
import logging
import time
from typing import Callable, Optional

from config.settings import PNL_MAX_FAILURES, PNL_POLL_INTERVAL
from hyperrekt.data.hyperliquid_api import AccountState, HyperliquidClient

logger = logging.getLogger(__name__)


class PnLPoller:
    """Polls account state for one user on a fixed interval."""

    def __init__(
        self,
        client: HyperliquidClient,
        user_address: str,
        on_update: Callable[[AccountState], object],
        interval: float = PNL_POLL_INTERVAL,
        max_failures: int = PNL_MAX_FAILURES,
    ):
        self.client = client
        self.user_address = user_address
        self.on_update = on_update
        self.interval = interval
        self.max_failures = max_failures

        self.last_state: Optional[AccountState] = None
        self._task: Optional[asyncio.Task] = None
        self._is_running = False
        self._consecutive_failures = 0
        self._total_polls = 0
        self._last_poll: float = 0.0
        self._last_error: str = ""

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def seconds_since_last(self) -> float:
        if self._last_poll == 0:
            return float('inf')
        return time.time() - self._last_poll

    def start(self):
        if self._is_running:
            logger.warning("P&L polling already running")
            return

        self._is_running = True
        self._consecutive_failures = 0
        self._task = asyncio.ensure_future(self._poll_loop())
        logger.info(f"P&L polling started for {self.user_address[:10]}... (every {self.interval}s)")

    async def stop(self):
        if not self._is_running and self._task is None:
            return

        self._is_running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info(f"P&L polling stopped ({self._total_polls} polls)")

    async def poll_once(self) -> AccountState:
        state = await self.client.get_clearinghouse_state(self.user_address)
        self.last_state = state
        self._total_polls += 1
        self._last_poll = time.time()

        returned = self.on_update(state)
        if inspect.isawaitable(returned):
            await returned
        return state

    async def _poll_loop(self):
        while self._is_running:
            try:
                await self.poll_once()
                self._consecutive_failures = 0
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._consecutive_failures += 1
                self._last_error = str(e)
                logger.error(
                    f"P&L poll failed ({self._consecutive_failures}/{self.max_failures}): {e}"
                )
                if self._consecutive_failures >= self.max_failures:
                    logger.error(f"P&L polling stopped after {self.max_failures} consecutive failures")
                    self._is_running = False
                    break

            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break

    def status(self) -> dict:
        return {
            'is_running': self._is_running,
            'total_polls': self._total_polls,
            'seconds_since_last': round(self.seconds_since_last, 1),
            'consecutive_failures': self._consecutive_failures,
            'last_error': self._last_error,
        }

"""
Auto-close scheduler for timed positions.

One asyncio timer task per cloid. When it fires (or on a manual close,
or when the game is abandoned) the position goes through the same
market-close path:

1. fetch the current price (bounded timeout)
2. cancel the order first if it is still resting
3. reduce-only IOC in the opposite direction (bounded timeout)
4. exit price = close fill price, else market price, else entry price
5. mark closed and deliver the outcome to the callback exactly once

Nothing here raises to the caller: every failure degrades to the next
exit-price fallback so the player always gets a result.

Usage:
    scheduler = PositionScheduler(trader, price_source)
    scheduler.arm(cloid, 30)
    scheduler.on_result(cloid, callback)   # callback(result, exit_price)
    ...
    await scheduler.cancel_all()           # abandon: close everything
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Optional

from config.settings import CLOSE_TIMEOUT, PRICE_TIMEOUT
from hyperrekt.data.websocket_feeds import PriceSource
from hyperrekt.errors import EngineError, SigningFailure
from hyperrekt.execution.positions import Position, PositionResult, ResultCallback
from hyperrekt.execution.trader import Trader
from hyperrekt.pricing.sizing import PnL

logger = logging.getLogger(__name__)


@dataclass
class CloseOutcome:
    """Result of closing one position."""
    success: bool
    cloid: str
    exit_price: Optional[float] = None
    result: Optional[PositionResult] = None
    pnl: Optional[PnL] = None
    exit_source: str = ""       # 'fill', 'market' or 'entry'
    error: str = ""

    @classmethod
    def from_position(cls, position: Position, exit_source: str = "", error: str = "") -> "CloseOutcome":
        return cls(
            success=True,
            cloid=position.cloid,
            exit_price=position.exit_price,
            result=position.result,
            pnl=position.pnl,
            exit_source=exit_source,
            error=error,
        )


class PositionScheduler:
    """
    Timers and the market-close path for a Trader's positions.

    A timer firing and a manual close for the same cloid share a single
    in-flight close task, so the exchange sees one close order and the
    callback fires once.
    """

    def __init__(
        self,
        trader: Trader,
        price_source: PriceSource,
        price_timeout: float = PRICE_TIMEOUT,
        close_timeout: float = CLOSE_TIMEOUT,
    ):
        self.trader = trader
        self.registry = trader.registry
        self.price_source = price_source
        self.price_timeout = price_timeout
        self.close_timeout = close_timeout
        trader.scheduler = self

        self._timers: dict[str, asyncio.Task] = {}
        self._closing: dict[str, asyncio.Task] = {}
        self._background: set = set()
        self._total_closed = 0
        self._last_error: str = ""

    # ================================================================
    # Timers
    # ================================================================

    def arm(self, cloid: str, duration: float):
        """Close `cloid` after `duration` seconds. Re-arming replaces the timer."""
        self.disarm(cloid)
        self._timers[cloid] = asyncio.ensure_future(self._timer(cloid, duration))
        logger.info(f"Auto-close armed for {cloid[:10]}... in {duration}s")

    def disarm(self, cloid: str) -> bool:
        task = self._timers.pop(cloid, None)
        if task is None:
            return False
        if task is not asyncio.current_task() and not task.done():
            task.cancel()
        return True

    def is_armed(self, cloid: str) -> bool:
        return cloid in self._timers

    async def _timer(self, cloid: str, duration: float):
        try:
            await asyncio.sleep(duration)
        except asyncio.CancelledError:
            return
        if self._timers.get(cloid) is asyncio.current_task():
            del self._timers[cloid]
        logger.info(f"Auto-closing {cloid[:10]}... at market price")
        await self.close(cloid, reason="timer")

    # ================================================================
    # Closing
    # ================================================================

    async def close(self, cloid: str, reason: str = "manual") -> CloseOutcome:
        """
        Close `cloid` at market. Safe to call concurrently and repeatedly:
        later callers get the outcome of the close already in flight or done.
        """
        self.disarm(cloid)

        inflight = self._closing.get(cloid)
        if inflight is not None:
            return await asyncio.shield(inflight)

        position = self.registry.begin_close(cloid)
        if position is None:
            existing = self.registry.find(cloid)
            if existing is not None and existing.is_closed:
                return CloseOutcome.from_position(existing)
            return CloseOutcome(success=False, cloid=cloid, error=f"Position {cloid} not found")

        task = asyncio.ensure_future(self._run_close(position, reason))
        self._closing[cloid] = task
        task.add_done_callback(lambda _: self._closing.pop(cloid, None))
        return await asyncio.shield(task)

    async def cancel_all(self) -> list[CloseOutcome]:
        """Abandon: run the market-close path for every open position."""
        cloids = [p.cloid for p in self.registry.active()]
        for cloid in list(self._timers):
            self.disarm(cloid)
        if not cloids:
            return []
        logger.warning(f"Abandoning {len(cloids)} open position(s), closing at market")
        return list(await asyncio.gather(*(self.close(c, reason="abandon") for c in cloids)))

    async def _fetch_price(self, asset: str) -> Optional[float]:
        try:
            return await asyncio.wait_for(self.price_source.get_price(asset), self.price_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Price fetch for {asset} timed out after {self.price_timeout}s")
        except Exception as e:
            logger.warning(f"Price fetch for {asset} failed: {e}")
        return None

    async def _run_close(self, position: Position, reason: str) -> CloseOutcome:
        cloid = position.cloid
        logger.info(f"Closing {cloid[:10]}... ({reason}) {position.direction.value.upper()} {position.asset}")

        market_price = await self._fetch_price(position.asset)
        fill_price = None
        error = ""

        try:
            # Signed by the agent that opened the position
            identity = position.agent or self.trader.agent
            if identity is None:
                raise SigningFailure("No agent wallet available to sign the close order")

            if not position.filled and position.order_id is not None:
                await asyncio.wait_for(
                    self.trader.cancel_order(position.asset, position.order_id, identity),
                    self.close_timeout,
                )

            reference = market_price or position.entry_price
            fill = await asyncio.wait_for(
                self.trader.submit_close_order(position, reference, identity),
                self.close_timeout,
            )
            if fill.filled:
                fill_price = fill.fill_price
            else:
                error = "Close order did not fill"
                logger.warning(f"Close order for {cloid[:10]}... rested, oid={fill.order_id}")

        except asyncio.TimeoutError:
            error = f"Close order timed out after {self.close_timeout}s"
            logger.warning(f"{error} for {cloid[:10]}...")
        except (EngineError, ValueError) as e:
            error = str(e)
            logger.warning(f"Close order for {cloid[:10]}... failed: {e}")
        except Exception as e:
            error = str(e)
            logger.error(f"Unexpected error closing {cloid[:10]}...: {e}", exc_info=True)

        if fill_price:
            exit_price, source = fill_price, "fill"
        elif market_price:
            exit_price, source = market_price, "market"
        else:
            exit_price, source = position.entry_price, "entry"
            logger.warning(f"No close fill or market price for {cloid[:10]}..., using entry price")

        if error:
            self._last_error = error
        self.registry.finish_close(cloid, exit_price)
        self._total_closed += 1
        outcome = CloseOutcome.from_position(position, exit_source=source, error=error)

        await self._deliver(cloid)
        return outcome

    # ================================================================
    # Outcome delivery
    # ================================================================

    def on_result(self, cloid: str, callback: ResultCallback) -> bool:
        """
        Register the outcome callback for `cloid`.

        If the position already closed and nobody has received its outcome
        yet, the callback fires right away.

        Returns:
            True when the callback was accepted (delivered now or later),
            False when the cloid is unknown or its outcome was delivered.
        """
        if not self.registry.set_callback(cloid, callback):
            return False
        claim = self.registry.take_delivery(cloid)
        if claim is None:
            return True

        pending = self._dispatch(*claim)
        if pending is not None:
            task = asyncio.ensure_future(self._await_callback(cloid, pending))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return True

    async def _deliver(self, cloid: str) -> bool:
        claim = self.registry.take_delivery(cloid)
        if claim is None:
            return False
        pending = self._dispatch(*claim)
        if pending is not None:
            await self._await_callback(cloid, pending)
        return True

    def _dispatch(self, callback: ResultCallback, position: Position):
        """Call the callback; hand back its awaitable if it is a coroutine function."""
        try:
            returned = callback(position.result, position.exit_price)
        except Exception as e:
            logger.error(f"Outcome callback for {position.cloid[:10]}... raised: {e}", exc_info=True)
            return None
        return returned if inspect.isawaitable(returned) else None

    async def _await_callback(self, cloid: str, pending):
        try:
            await pending
        except Exception as e:
            logger.error(f"Outcome callback for {cloid[:10]}... raised: {e}", exc_info=True)

    # ================================================================
    # Lifecycle
    # ================================================================

    async def shutdown(self):
        """Stop all timers and wait for closes already in flight. Opens nothing."""
        for cloid in list(self._timers):
            self.disarm(cloid)
        pending = list(self._closing.values()) + list(self._background)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        open_positions = self.registry.active()
        if open_positions:
            logger.warning(
                f"Scheduler stopped with {len(open_positions)} open position(s) "
                f"not closed on the exchange"
            )

    def status(self) -> dict:
        return {
            'armed': len(self._timers),
            'closing': len(self._closing),
            'total_closed': self._total_closed,
            'last_error': self._last_error,
        }

"""
Position tracking for timed prediction bets.

Each bet is one Position keyed by its client order id (cloid):

    open ──(timer fires / manual close / abandon)──> closing ──> closed

Transitions are plain synchronous methods on the registry, so the
check-and-set in `begin_close` cannot interleave with another coroutine.
Whoever wins `begin_close` runs the close; everyone else waits on it.

A closed position stays in the registry until its outcome has been
delivered to a callback, then moves to `history`.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from hyperrekt.pricing.sizing import PnL, compute_pnl

if TYPE_CHECKING:
    from hyperrekt.execution.agent import AgentIdentity

logger = logging.getLogger(__name__)

MAX_HISTORY = 100


class Direction(str, Enum):
    UP = "up"
    DOWN = "down"

    @property
    def is_buy(self) -> bool:
        """Up opens long (buy), down opens short (sell)."""
        return self is Direction.UP


class PositionState(str, Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class PositionResult(str, Enum):
    WIN = "win"
    LOSS = "loss"


@dataclass
class Position:
    """A single timed bet on one asset."""
    cloid: str
    asset: str
    direction: Direction
    entry_price: float
    size: str                   # Wire string, as sent / filled
    filled: bool = True
    order_id: Optional[int] = None
    opened_at: float = 0.0
    duration: float = 0.0       # Seconds until auto-close; 0 = no timer
    margin: float = 0.0
    leverage: int = 1
    state: PositionState = PositionState.OPEN
    exit_price: Optional[float] = None
    result: Optional[PositionResult] = None
    pnl: Optional[PnL] = None
    closed_at: float = 0.0
    delivered: bool = False
    # Agent that opened the position; its close is signed with the same key
    agent: Optional["AgentIdentity"] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if not self.opened_at:
            self.opened_at = time.time()
        self.direction = Direction(self.direction)

    @property
    def is_closed(self) -> bool:
        return self.state == PositionState.CLOSED

    @property
    def expires_at(self) -> float:
        return self.opened_at + self.duration

    @property
    def seconds_remaining(self) -> float:
        if not self.duration:
            return float('inf')
        return max(0.0, self.expires_at - time.time())

    @property
    def size_value(self) -> float:
        try:
            return float(self.size or 0)
        except ValueError:
            return 0.0

    def summary(self) -> dict:
        return {
            'cloid': self.cloid,
            'asset': self.asset,
            'direction': self.direction.value,
            'state': self.state.value,
            'entry_price': self.entry_price,
            'size': self.size,
            'filled': self.filled,
            'leverage': self.leverage,
            'agent': self.agent.address if self.agent else None,
            'exit_price': self.exit_price,
            'result': self.result.value if self.result else None,
            'pnl': self.pnl.dollar_value if self.pnl else None,
        }


ResultCallback = Callable[[PositionResult, float], object]


@dataclass
class PositionRegistry:
    """
    All positions of one engine, indexed by cloid.

    Owns the state machine and the outcome callbacks. Delivery itself
    (calling the callback, awaiting it if needed) belongs to the scheduler;
    the registry only hands out each callback once.
    """

    positions: dict = field(default_factory=dict)     # cloid -> Position
    callbacks: dict = field(default_factory=dict)     # cloid -> ResultCallback
    history: list = field(default_factory=list)       # delivered, evicted positions

    def register(self, position: Position):
        if position.cloid in self.positions:
            raise ValueError(f"Duplicate cloid: {position.cloid}")
        self.positions[position.cloid] = position
        logger.info(
            f"Position opened: {position.cloid[:10]}... {position.direction.value.upper()} "
            f"{position.size} {position.asset} @ {position.entry_price} "
            f"(filled={position.filled}, {position.leverage}x, {position.duration}s)"
        )

    def get(self, cloid: str) -> Optional[Position]:
        return self.positions.get(cloid)

    def find(self, cloid: str) -> Optional[Position]:
        """Tracked position, or the most recent evicted one with this cloid."""
        position = self.positions.get(cloid)
        if position is not None:
            return position
        for past in reversed(self.history):
            if past.cloid == cloid:
                return past
        return None

    def active(self) -> list[Position]:
        """Every position that has not reached `closed`."""
        return [p for p in self.positions.values() if not p.is_closed]

    def has_active(self) -> bool:
        return any(not p.is_closed for p in self.positions.values())

    # ============================================================
    # Transitions
    # ============================================================

    def begin_close(self, cloid: str) -> Optional[Position]:
        """
        open -> closing. Returns the position if this call won the
        transition, None if it is unknown or already closing/closed.
        """
        position = self.positions.get(cloid)
        if position is None or position.state != PositionState.OPEN:
            return None
        position.state = PositionState.CLOSING
        return position

    def finish_close(self, cloid: str, exit_price: float) -> Optional[Position]:
        """closing -> closed, with result and realized P&L."""
        position = self.positions.get(cloid)
        if position is None or position.state != PositionState.CLOSING:
            return None

        pnl = compute_pnl(
            position.direction.value,
            position.entry_price,
            exit_price,
            position.size,
            position.leverage,
        )
        position.exit_price = exit_price
        position.pnl = pnl
        position.result = PositionResult.WIN if pnl.is_win else PositionResult.LOSS
        position.state = PositionState.CLOSED
        position.closed_at = time.time()

        logger.info(
            f"Position closed: {cloid[:10]}... {position.result.value.upper()} "
            f"entry={position.entry_price} exit={exit_price} P&L=${pnl.dollar_value:+.2f} "
            f"({pnl.percent:+.1f}%)"
        )
        return position

    # ============================================================
    # Outcome delivery
    # ============================================================

    def set_callback(self, cloid: str, callback: ResultCallback) -> bool:
        """Only positions still tracked (not yet delivered) accept a callback."""
        if cloid not in self.positions:
            return False
        self.callbacks[cloid] = callback
        return True

    def take_delivery(self, cloid: str) -> Optional[tuple[ResultCallback, Position]]:
        """
        Claim the outcome of a closed position for delivery.

        Returns (callback, position) at most once per cloid; None if the
        position is not closed yet, has no callback, or was delivered.
        """
        position = self.positions.get(cloid)
        if position is None or not position.is_closed or position.delivered:
            return None
        callback = self.callbacks.pop(cloid, None)
        if callback is None:
            return None

        position.delivered = True
        self._evict(cloid)
        return callback, position

    def _evict(self, cloid: str):
        position = self.positions.pop(cloid, None)
        self.callbacks.pop(cloid, None)
        if position is not None:
            self.history.append(position)
            del self.history[:-MAX_HISTORY]

    def clear_completed(self) -> int:
        """Drop closed positions (delivered or not) and their callbacks."""
        closed = [cloid for cloid, p in self.positions.items() if p.is_closed]
        for cloid in closed:
            self._evict(cloid)
        if closed:
            logger.info(f"Cleared {len(closed)} completed positions")
        return len(closed)

    def summary(self) -> dict:
        return {
            'num_active': len(self.active()),
            'num_tracked': len(self.positions),
            'num_history': len(self.history),
            'positions': [p.summary() for p in self.positions.values()],
        }

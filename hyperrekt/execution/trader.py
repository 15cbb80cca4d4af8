"""
Order placement, leverage and cancellation on Hyperliquid perps.

Every trade action is signed by the approved agent wallet:
- updateLeverage: always acknowledged before the order goes out
- order: aggressive IOC limit so it fills immediately
- cancel: used on orders that rested instead of filling

Opened positions go into the PositionRegistry and, when the bet has a
duration, are handed to the scheduler for auto-close.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from config.settings import DEFAULT_LEVERAGE, MARGIN_AMOUNT
from hyperrekt.data.assets import AssetConfig, AssetDirectory
from hyperrekt.data.hyperliquid_api import AssetPnL, HyperliquidClient, raise_for_status
from hyperrekt.errors import (
    EngineError,
    ErrorKind,
    ExchangeRejection,
    InvalidRequest,
    NeedsDeposit,
    is_deposit_required,
)
from hyperrekt.execution.agent import AgentIdentity
from hyperrekt.execution.positions import Direction, Position, PositionRegistry
from hyperrekt.execution.signing import sign_agent_action
from hyperrekt.pricing.sizing import aggressive_price, compute_order_size

if TYPE_CHECKING:
    from hyperrekt.execution.scheduler import PositionScheduler

logger = logging.getLogger(__name__)


def generate_cloid() -> str:
    """Client order id: 0x + 32 hex chars (16 bytes)."""
    return "0x" + uuid.uuid4().hex


@dataclass
class OrderRequest:
    """One attempt to open a bet. Leverage is clamped to the asset maximum."""
    asset: str
    direction: Direction
    reference_price: float
    margin: float = MARGIN_AMOUNT
    leverage: int = DEFAULT_LEVERAGE
    duration: float = 0.0

    def __post_init__(self):
        self.direction = Direction(self.direction)

    def validate(self):
        if not self.asset:
            raise InvalidRequest("Asset is required")
        if not self.reference_price or self.reference_price <= 0:
            raise InvalidRequest(f"Invalid reference price: {self.reference_price}")
        if self.margin <= 0:
            raise InvalidRequest(f"Invalid margin: {self.margin}")
        if self.leverage < 1:
            raise InvalidRequest(f"Invalid leverage: {self.leverage}")
        if self.duration < 0:
            raise InvalidRequest(f"Invalid duration: {self.duration}")


@dataclass
class FillInfo:
    filled: bool
    fill_price: Optional[float] = None
    fill_size: Optional[str] = None
    order_id: Optional[int] = None


@dataclass
class OrderResult:
    """Result of an order attempt."""
    success: bool
    cloid: str = ""
    order_id: Optional[int] = None
    fill_info: Optional[FillInfo] = None
    asset: str = ""
    direction: str = ""
    price: str = ""
    size: str = ""
    leverage: int = 0
    error: str = ""
    error_kind: Optional[ErrorKind] = None
    raw_response: Any = None
    timestamp: float = 0.0

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = time.time()


def parse_order_status(envelope: dict) -> FillInfo:
    """
    First entry of `response.data.statuses` for a single-order action.

    Raises:
        NeedsDeposit / ExchangeRejection: the order itself was rejected
    """
    try:
        status = envelope["response"]["data"]["statuses"][0]
    except (KeyError, IndexError, TypeError):
        raise ExchangeRejection(f"Unexpected order response: {envelope}")

    if isinstance(status, dict) and "filled" in status:
        try:
            filled = status["filled"]
            fill_price = float(filled["avgPx"])
            fill_size = str(filled["totalSz"])
            order_id = filled.get("oid")
        except (KeyError, TypeError, ValueError, AttributeError):
            raise ExchangeRejection(f"Unexpected order response: {envelope}")
        if fill_price <= 0:
            raise ExchangeRejection(f"Unexpected order response: {envelope}")
        return FillInfo(
            filled=True,
            fill_price=fill_price,
            fill_size=fill_size,
            order_id=order_id,
        )
    if isinstance(status, dict) and "resting" in status:
        resting = status["resting"]
        if not isinstance(resting, dict):
            raise ExchangeRejection(f"Unexpected order response: {envelope}")
        return FillInfo(filled=False, order_id=resting.get("oid"))

    message = status.get("error") if isinstance(status, dict) else status
    message = str(message or status)
    if is_deposit_required(message):
        raise NeedsDeposit(message)
    raise ExchangeRejection(message)


class Trader:
    """
    Signed trade actions for one network.

    Every Position records the agent identity that opened it, so the
    scheduler signs its close with the same key. `agent` is the identity
    of the last successful placement.
    """

    def __init__(
        self,
        client: HyperliquidClient,
        assets: Optional[AssetDirectory] = None,
        registry: Optional[PositionRegistry] = None,
    ):
        self.client = client
        self.assets = assets or AssetDirectory(client)
        self.registry = registry or PositionRegistry()
        self.scheduler: Optional["PositionScheduler"] = None
        self.agent: Optional[AgentIdentity] = None

        self.order_history: list[OrderResult] = []
        self._last_nonce = 0

    @property
    def is_mainnet(self) -> bool:
        return not self.client.use_testnet

    def _next_nonce(self) -> int:
        """Millisecond timestamp, strictly increasing per trader."""
        nonce = max(int(time.time() * 1000), self._last_nonce + 1)
        self._last_nonce = nonce
        return nonce

    async def _submit(self, action: dict, identity: AgentIdentity, context: str) -> dict:
        """Sign `action` with the agent key and post it once."""
        nonce = self._next_nonce()
        signature = sign_agent_action(identity, action, nonce, self.is_mainnet)
        result = await self.client.exchange({
            "action": action,
            "nonce": nonce,
            "signature": signature,
        })
        return raise_for_status(result, context)

    # ================================================================
    # Leverage
    # ================================================================

    async def set_leverage(
        self,
        config: AssetConfig,
        leverage: int,
        identity: AgentIdentity,
        is_cross: bool = False,
    ) -> dict:
        """
        Set per-asset leverage. Returns only once the exchange has answered.

        Raises:
            EngineError: signing failed or the exchange refused
        """
        action = {
            "type": "updateLeverage",
            "asset": config.asset_id,
            "isCross": is_cross,
            "leverage": int(leverage),
        }
        logger.info(
            f"Setting leverage: {config.name} {leverage}x "
            f"({'cross' if is_cross else 'isolated'})"
        )
        return await self._submit(action, identity, "Leverage update")

    # ================================================================
    # Orders
    # ================================================================

    def _order_wire(
        self,
        config: AssetConfig,
        is_buy: bool,
        price: str,
        size: str,
        reduce_only: bool,
        cloid: str,
    ) -> dict:
        return {
            "a": config.asset_id,
            "b": is_buy,
            "p": price,
            "s": size,
            "r": reduce_only,
            "t": {"limit": {"tif": "Ioc"}},
            "c": cloid,
        }

    async def _submit_order(self, order: dict, identity: AgentIdentity, context: str) -> tuple[FillInfo, dict]:
        action = {"type": "order", "orders": [order], "grouping": "na"}
        envelope = await self._submit(action, identity, context)
        return parse_order_status(envelope), envelope

    async def place_order(self, request: OrderRequest, identity: AgentIdentity) -> OrderResult:
        """
        Open a bet with an aggressive IOC order.

        Steps: asset lookup, size from margin × leverage, aggressive limit
        price, leverage (acknowledged before the order), submit, then
        register the Position (filled or resting) and arm the auto-close
        timer.

        Returns:
            OrderResult; never raises
        """
        cloid = generate_cloid()
        result = OrderResult(
            success=False,
            cloid=cloid,
            asset=request.asset,
            direction=Direction(request.direction).value,
        )

        try:
            request.validate()

            config = await self.assets.get(request.asset)
            if config is None:
                raise InvalidRequest(f"Unknown asset: {request.asset}")

            leverage = min(int(request.leverage), config.max_leverage)
            if leverage != request.leverage:
                logger.warning(
                    f"Leverage {request.leverage}x above {config.name} max, "
                    f"clamped to {leverage}x"
                )
            result.leverage = leverage

            size = compute_order_size(
                request.margin, leverage, request.reference_price, config.sz_decimals
            )
            if float(size) <= 0:
                raise InvalidRequest(
                    f"Order size rounds to zero: ${request.margin} × {leverage}x "
                    f"at {request.reference_price} ({config.sz_decimals} size decimals)"
                )
            is_buy = request.direction.is_buy
            price = aggressive_price(request.reference_price, is_buy, config.sz_decimals)
            result.size = size
            result.price = price

            # Leverage is per-asset exchange state: acknowledged before the order
            await self.set_leverage(config, leverage, identity)

            logger.info(
                f"ORDER {'BUY' if is_buy else 'SELL'} {size} {config.name} @ {price} IOC "
                f"(ref={request.reference_price}, ${request.margin} × {leverage}x) "
                f"cloid={cloid[:10]}..."
            )
            order = self._order_wire(config, is_buy, price, size, False, cloid)
            fill, envelope = await self._submit_order(order, identity, "Order")

        except EngineError as e:
            result.error = str(e)
            result.error_kind = e.kind
            logger.error(f"Order failed for {request.asset}: {e}")
            self.order_history.append(result)
            return result
        except ValueError as e:
            result.error = str(e)
            result.error_kind = ErrorKind.INVALID_REQUEST
            logger.error(f"Order failed for {request.asset}: {e}")
            self.order_history.append(result)
            return result

        self.agent = identity
        result.success = True
        result.order_id = fill.order_id
        result.fill_info = fill
        result.raw_response = envelope

        if fill.filled:
            position = Position(
                cloid=cloid,
                asset=config.name,
                direction=request.direction,
                entry_price=fill.fill_price,
                size=fill.fill_size,
                filled=True,
                order_id=fill.order_id,
                duration=request.duration,
                margin=request.margin,
                leverage=leverage,
                agent=identity,
            )
        else:
            logger.warning(
                f"Aggressive order resting instead of filling: {cloid[:10]}... "
                f"oid={fill.order_id}"
            )
            position = Position(
                cloid=cloid,
                asset=config.name,
                direction=request.direction,
                entry_price=float(price),
                size=size,
                filled=False,
                order_id=fill.order_id,
                duration=request.duration,
                margin=request.margin,
                leverage=leverage,
                agent=identity,
            )

        self.registry.register(position)
        if request.duration > 0 and self.scheduler is not None:
            self.scheduler.arm(cloid, request.duration)

        self.order_history.append(result)
        return result

    async def cancel_order(self, asset: str, order_id: int, identity: AgentIdentity) -> bool:
        """Cancel a resting order by exchange id."""
        try:
            config = await self.assets.get(asset)
            if config is None:
                raise InvalidRequest(f"Unknown asset: {asset}")
            action = {"type": "cancel", "cancels": [{"a": config.asset_id, "o": order_id}]}
            envelope = await self._submit(action, identity, "Cancel")
        except EngineError as e:
            logger.error(f"Cancel failed for {asset} oid={order_id}: {e}")
            return False

        statuses = envelope.get("response", {}).get("data", {}).get("statuses", [])
        status = statuses[0] if statuses else None
        if isinstance(status, dict) and "error" in status:
            logger.warning(f"Cancel rejected for oid={order_id}: {status['error']}")
            return False
        logger.info(f"Cancelled order {asset} oid={order_id}")
        return True

    async def submit_close_order(
        self,
        position: Position,
        reference_price: float,
        identity: AgentIdentity,
    ) -> FillInfo:
        """
        Reduce-only IOC in the opposite direction of `position`.

        Sized to the actual fill size; recomputed from margin × leverage
        when that is missing.

        Raises:
            EngineError / ValueError: the close could not be submitted
        """
        config = await self.assets.get(position.asset)
        if config is None:
            raise InvalidRequest(f"Unknown asset: {position.asset}")

        size = position.size
        if position.size_value <= 0:
            size = compute_order_size(
                position.margin or MARGIN_AMOUNT,
                position.leverage,
                reference_price,
                config.sz_decimals,
            )
            logger.warning(f"Position {position.cloid[:10]}... has no size, recomputed {size}")

        is_buy = not position.direction.is_buy
        price = aggressive_price(reference_price, is_buy, config.sz_decimals)
        close_cloid = generate_cloid()

        logger.info(
            f"CLOSE {'BUY' if is_buy else 'SELL'} {size} {config.name} @ {price} IOC reduce-only "
            f"(ref={reference_price}) for {position.cloid[:10]}..."
        )
        order = self._order_wire(config, is_buy, price, size, True, close_cloid)
        fill, _ = await self._submit_order(order, identity, "Close order")
        return fill

    # ================================================================
    # Account
    # ================================================================

    async def get_asset_pnl(self, user_address: str, asset: str) -> Optional[AssetPnL]:
        """Unrealized P&L of the user's open exchange position in `asset`."""
        try:
            state = await self.client.get_clearinghouse_state(user_address)
        except EngineError as e:
            logger.warning(f"Could not fetch P&L for {asset}: {e}")
            return None
        return state.positions.get(asset)

    # ================================================================
    # Status & Reporting
    # ================================================================

    def summary(self) -> dict:
        return {
            'network': self.client.network,
            'agent': self.agent.address if self.agent else None,
            'total_orders': len(self.order_history),
            'successful_orders': sum(1 for o in self.order_history if o.success),
            'failed_orders': sum(1 for o in self.order_history if not o.success),
            'positions': self.registry.summary(),
            'scheduler': self.scheduler.status() if self.scheduler else None,
        }

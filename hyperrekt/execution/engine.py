"""
PredictionEngine: open a timed, leveraged bet and get told how it ended.

Owns one user's delegation, trading and scheduling on one network. Create
one per user; nothing is shared between instances.

Usage:
    async with PredictionEngine(user_address, user_signer) as engine:
        result = await engine.place_prediction_order(
            OrderRequest(asset="BTC", direction="up", reference_price=65000, duration=30)
        )
        if result.success:
            engine.on_position_result(result.cloid, lambda r, px: print(r, px))
"""

import logging
from typing import Callable, Optional

from config.settings import DEFAULT_AGENT_NAME, PNL_POLL_INTERVAL, USE_TESTNET
from hyperrekt.data.assets import AssetDirectory
from hyperrekt.data.hyperliquid_api import AccountState, AssetPnL, HyperliquidClient
from hyperrekt.data.websocket_feeds import PriceSource, RestPriceSource
from hyperrekt.errors import EngineError, ErrorKind, InvalidRequest
from hyperrekt.execution.agent import AgentManager
from hyperrekt.execution.keystore import KeyStore
from hyperrekt.execution.pnl_poller import PnLPoller
from hyperrekt.execution.positions import Position, PositionRegistry, ResultCallback
from hyperrekt.execution.scheduler import CloseOutcome, PositionScheduler
from hyperrekt.execution.signing import UserSigner
from hyperrekt.execution.trader import OrderRequest, OrderResult, Trader

logger = logging.getLogger(__name__)


class PredictionEngine:
    """
    The exposed surface of the engine.

    Enforces one placement in flight and one open position at a time,
    checks that the account exists, makes sure the agent wallet is
    approved, then hands the request to the Trader.
    """

    def __init__(
        self,
        user_address: str,
        user_signer: UserSigner,
        use_testnet: bool = USE_TESTNET,
        keystore: Optional[KeyStore] = None,
        client: Optional[HyperliquidClient] = None,
        price_source: Optional[PriceSource] = None,
        agent_name: str = DEFAULT_AGENT_NAME,
    ):
        self.user_address = user_address
        self.user_signer = user_signer
        self.agent_name = agent_name

        self.client = client or HyperliquidClient(use_testnet=use_testnet)
        self.client.set_network(use_testnet)
        self.assets = AssetDirectory(self.client)
        self.registry = PositionRegistry()
        self.agents = AgentManager(self.client, keystore, use_testnet=use_testnet)
        self.trader = Trader(self.client, self.assets, self.registry)
        self.price_source = price_source or RestPriceSource(self.client)
        self.scheduler = PositionScheduler(self.trader, self.price_source)

        self.poller: Optional[PnLPoller] = None
        self._placing = False

    @property
    def use_testnet(self) -> bool:
        return self.client.use_testnet

    @property
    def is_placing(self) -> bool:
        return self._placing

    async def __aenter__(self) -> "PredictionEngine":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    # ================================================================
    # Orders
    # ================================================================

    async def place_prediction_order(self, request: OrderRequest) -> OrderResult:
        """
        Open a bet. Never raises.

        Returns:
            OrderResult; `error_kind` is NEEDS_DEPOSIT when the account has
            no collateral on this network.
        """
        if self._placing:
            return OrderResult(
                success=False,
                error="An order is already being placed",
                error_kind=ErrorKind.INVALID_REQUEST,
            )
        if self.registry.has_active():
            return OrderResult(
                success=False,
                error="A position is already open; wait for it to close",
                error_kind=ErrorKind.INVALID_REQUEST,
            )

        try:
            request.validate()
        except InvalidRequest as e:
            return OrderResult(success=False, asset=request.asset, error=str(e), error_kind=e.kind)

        self._placing = True
        try:
            try:
                exists = await self.client.account_exists(self.user_address)
            except EngineError as e:
                logger.error(f"Account check failed: {e}")
                return OrderResult(success=False, error=str(e), error_kind=e.kind)

            if not exists:
                logger.warning(f"No Hyperliquid account for {self.user_address[:10]}... on {self.client.network}")
                return OrderResult(
                    success=False,
                    error="You need to deposit funds to Hyperliquid before trading.",
                    error_kind=ErrorKind.NEEDS_DEPOSIT,
                )

            approval = await self.agents.ensure_ready(self.user_address, self.user_signer, self.agent_name)
            if not approval.success:
                return OrderResult(
                    success=False,
                    error=approval.error,
                    error_kind=approval.error_kind,
                )

            return await self.trader.place_order(request, approval.identity)
        finally:
            self._placing = False

    def on_position_result(self, cloid: str, callback: ResultCallback) -> bool:
        """`callback(result, exit_price)` once the position closes. May be async."""
        return self.scheduler.on_result(cloid, callback)

    def get_active_positions(self) -> list[Position]:
        return self.registry.active()

    def clear_completed_positions(self) -> int:
        return self.registry.clear_completed()

    async def close_position(self, cloid: str) -> CloseOutcome:
        """Close now instead of waiting for the timer."""
        return await self.scheduler.close(cloid, reason="manual")

    async def abandon(self) -> list[CloseOutcome]:
        """Game abandoned: close every open position at market."""
        return await self.scheduler.cancel_all()

    # ================================================================
    # Network
    # ================================================================

    def set_network(self, use_testnet: bool) -> bool:
        """
        Switch between testnet and mainnet.

        Refused while a position is open, since its close has to go to the
        network it was opened on.
        """
        if use_testnet == self.client.use_testnet:
            return True
        if self.registry.has_active():
            logger.warning("Network switch refused: a position is still open")
            return False

        self.client.set_network(use_testnet)
        self.agents.set_network(use_testnet)
        self.assets.invalidate()
        self.trader.agent = None
        logger.info(f"Switched to {self.client.network}")
        return True

    # ================================================================
    # P&L
    # ================================================================

    async def get_asset_pnl(self, asset: str) -> Optional[AssetPnL]:
        return await self.trader.get_asset_pnl(self.user_address, asset)

    def start_pnl_polling(
        self,
        callback: Callable[[AccountState], object],
        interval: float = PNL_POLL_INTERVAL,
    ) -> PnLPoller:
        if self.poller and self.poller.is_running:
            logger.warning("P&L polling already running, updating callback")
            self.poller.on_update = callback
            self.poller.interval = interval
            return self.poller
        self.poller = PnLPoller(self.client, self.user_address, callback, interval=interval)
        self.poller.start()
        return self.poller

    async def stop_pnl_polling(self):
        if self.poller:
            await self.poller.stop()
            self.poller = None

    # ================================================================
    # Status & Shutdown
    # ================================================================

    def agent_status(self) -> dict:
        return self.agents.status(self.user_address)

    def summary(self) -> dict:
        return {
            'user': self.user_address,
            'network': self.client.network,
            'agent': self.agent_status(),
            'trader': self.trader.summary(),
            'pnl_polling': self.poller.status() if self.poller else None,
        }

    async def aclose(self):
        """Stop polling and timers, then release the HTTP session."""
        await self.stop_pnl_polling()
        await self.scheduler.shutdown()
        await self.client.close()

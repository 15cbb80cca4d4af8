"""
Hyperliquid HTTP client for reference data, account state and signed actions.

Endpoints:
- POST /info: asset universe (meta), mid prices (allMids), account state
- POST /exchange: signed actions (approveAgent, updateLeverage, order, cancel)

Reads are retried with exponential backoff. Posts to /exchange are sent
exactly once: a duplicated order is worse than a failed one.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import aiohttp

from config.settings import (
    MAINNET_API,
    TESTNET_API,
    INFO_TIMEOUT,
    EXCHANGE_TIMEOUT,
    INFO_RETRIES,
    RETRY_BACKOFF,
)
from hyperrekt.errors import (
    ExchangeRejection,
    NeedsDeposit,
    NetworkFailure,
    is_deposit_required,
)

logger = logging.getLogger(__name__)


@dataclass
class AssetPnL:
    """Unrealized P&L of one open exchange position."""
    asset: str
    size: float
    entry_price: float
    unrealized_pnl: float
    return_on_equity: float
    position_value: float
    leverage: int = 0


@dataclass
class AccountState:
    """Parsed `clearinghouseState` response."""
    account_value: float = 0.0
    total_margin_used: float = 0.0
    withdrawable: float = 0.0
    positions: dict = field(default_factory=dict)  # asset -> AssetPnL

    @property
    def exists(self) -> bool:
        """An account with no collateral and no positions cannot trade."""
        return self.account_value > 0 or self.withdrawable > 0 or bool(self.positions)

    @property
    def total_unrealized_pnl(self) -> float:
        return sum(p.unrealized_pnl for p in self.positions.values())

    @classmethod
    def from_response(cls, data: Optional[dict]) -> "AccountState":
        if not isinstance(data, dict):
            return cls()

        summary = data.get("marginSummary") or {}
        positions = {}
        for entry in data.get("assetPositions", []):
            pos = entry.get("position", {})
            coin = pos.get("coin")
            if not coin:
                continue
            leverage = pos.get("leverage") or {}
            positions[coin] = AssetPnL(
                asset=coin,
                size=float(pos.get("szi", 0) or 0),
                entry_price=float(pos.get("entryPx", 0) or 0),
                unrealized_pnl=float(pos.get("unrealizedPnl", 0) or 0),
                return_on_equity=float(pos.get("returnOnEquity", 0) or 0),
                position_value=float(pos.get("positionValue", 0) or 0),
                leverage=int(leverage.get("value", 0)) if isinstance(leverage, dict) else 0,
            )

        return cls(
            account_value=float(summary.get("accountValue", 0) or 0),
            total_margin_used=float(summary.get("totalMarginUsed", 0) or 0),
            withdrawable=float(data.get("withdrawable", 0) or 0),
            positions=positions,
        )


def raise_for_status(result: Any, context: str = "Action") -> dict:
    """
    Check an /exchange response envelope.

    Returns the envelope when `status == "ok"`. Raises NeedsDeposit when the
    exchange reports a missing account, ExchangeRejection otherwise, with
    the exchange's reason kept verbatim.
    """
    if isinstance(result, dict) and result.get("status") == "ok":
        return result

    if isinstance(result, dict):
        reason = result.get("response") or result.get("error") or result
        if isinstance(reason, dict):
            reason = reason.get("message") or json.dumps(reason)
    else:
        reason = result
    message = str(reason)

    if is_deposit_required(message):
        raise NeedsDeposit(message)
    raise ExchangeRejection(f"{context} failed: {message}")


class HyperliquidClient:
    """
    Async HTTP client for the Hyperliquid API.

    One instance per network; `set_network()` switches the base URL.
    No authentication is needed for reads; /exchange payloads arrive
    already signed.
    """

    def __init__(
        self,
        use_testnet: bool = True,
        session: Optional[aiohttp.ClientSession] = None,
        info_timeout: float = INFO_TIMEOUT,
        exchange_timeout: float = EXCHANGE_TIMEOUT,
        retries: int = INFO_RETRIES,
        backoff: float = RETRY_BACKOFF,
    ):
        self.use_testnet = use_testnet
        self.info_timeout = info_timeout
        self.exchange_timeout = exchange_timeout
        self.retries = max(1, retries)
        self.backoff = backoff
        self._session = session
        self._owns_session = session is None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    @property
    def base_url(self) -> str:
        return TESTNET_API if self.use_testnet else MAINNET_API

    @property
    def network(self) -> str:
        return "testnet" if self.use_testnet else "mainnet"

    def set_network(self, use_testnet: bool):
        self.use_testnet = use_testnet

    async def close(self):
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None

    # ============================================================
    # Transport
    # ============================================================

    async def _post(self, path: str, payload: dict, timeout: float) -> Any:
        """POST JSON and decode the reply. Maps transport errors to NetworkFailure."""
        url = f"{self.base_url}{path}"
        try:
            async with self.session.post(
                url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                text = await resp.text()
                if resp.status >= 500:
                    raise NetworkFailure(f"HTTP {resp.status} from {path}: {text[:200]}")
                if resp.status != 200:
                    raise ExchangeRejection(f"HTTP {resp.status}: {text}")
                try:
                    return json.loads(text)
                except json.JSONDecodeError:
                    raise ExchangeRejection(f"Invalid JSON response from {path}: {text[:200]}")
        except asyncio.TimeoutError as e:
            raise NetworkFailure(f"{path} timed out after {timeout}s") from e
        except aiohttp.ClientError as e:
            raise NetworkFailure(f"{path} connection error: {e}") from e

    async def info(self, payload: dict) -> Any:
        """Read call with bounded retries and exponential backoff."""
        delay = self.backoff
        for attempt in range(1, self.retries + 1):
            try:
                return await self._post("/info", payload, self.info_timeout)
            except NetworkFailure as e:
                if attempt >= self.retries:
                    raise
                logger.warning(
                    f"Info {payload.get('type')} failed ({attempt}/{self.retries}): {e}, "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                delay *= 2

    async def exchange(self, payload: dict) -> Any:
        """Submit a signed action. Never retried."""
        return await self._post("/exchange", payload, self.exchange_timeout)

    # ============================================================
    # Reference data & account state
    # ============================================================

    async def get_meta(self) -> list[dict]:
        """Perpetual asset universe: [{name, szDecimals, maxLeverage}, ...]."""
        data = await self.info({"type": "meta"})
        if not isinstance(data, dict):
            return []
        return data.get("universe", [])

    async def get_all_mids(self) -> dict[str, float]:
        """Current mid price of every asset."""
        data = await self.info({"type": "allMids"})
        mids = {}
        if isinstance(data, dict):
            for symbol, px in data.items():
                try:
                    mids[symbol] = float(px)
                except (TypeError, ValueError):
                    continue
        return mids

    async def get_clearinghouse_state(self, user_address: str) -> AccountState:
        data = await self.info({"type": "clearinghouseState", "user": user_address.lower()})
        return AccountState.from_response(data)

    async def account_exists(self, user_address: str) -> bool:
        state = await self.get_clearinghouse_state(user_address)
        return state.exists

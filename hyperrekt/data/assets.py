"""
Perpetual asset reference data.

AssetConfig is read-only: the asset id (index in the exchange universe),
size precision and maximum leverage. Sizing, price formatting and signing
all need it, so it is cached and refreshed periodically.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from config.settings import META_REFRESH_SECONDS
from hyperrekt.data.hyperliquid_api import HyperliquidClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssetConfig:
    asset_id: int
    name: str
    sz_decimals: int
    max_leverage: int


class AssetDirectory:
    """
    Cached view of the `meta` universe.

    Refreshes when the cache is older than `refresh_seconds`, and once more
    on a miss in case the asset was listed since the last refresh.
    """

    def __init__(self, client: HyperliquidClient, refresh_seconds: float = META_REFRESH_SECONDS):
        self.client = client
        self.refresh_seconds = refresh_seconds
        self._assets: dict[str, AssetConfig] = {}
        self._loaded_at: float = 0.0
        self._network: str = client.network

    @property
    def is_stale(self) -> bool:
        if not self._assets or self._network != self.client.network:
            return True
        return time.time() - self._loaded_at > self.refresh_seconds

    async def refresh(self) -> dict[str, AssetConfig]:
        universe = await self.client.get_meta()
        assets = {}
        for index, entry in enumerate(universe):
            name = entry.get("name")
            if not name:
                continue
            assets[name] = AssetConfig(
                asset_id=index,
                name=name,
                sz_decimals=int(entry.get("szDecimals", 0)),
                max_leverage=int(entry.get("maxLeverage", 1)),
            )
        self._assets = assets
        self._loaded_at = time.time()
        self._network = self.client.network
        logger.info(f"Loaded {len(assets)} perp assets ({self._network})")
        return assets

    async def get(self, asset: str) -> Optional[AssetConfig]:
        """AssetConfig for `asset`, or None if the exchange does not list it."""
        if self.is_stale:
            await self.refresh()
        config = self._assets.get(asset)
        if config is None and time.time() - self._loaded_at > 1.0:
            await self.refresh()
            config = self._assets.get(asset)
        return config

    def invalidate(self):
        self._assets = {}
        self._loaded_at = 0.0

    def names(self) -> list[str]:
        return list(self._assets.keys())

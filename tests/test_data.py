"""
Tests for the HTTP client, asset directory and mid-price sources.
"""

import asyncio
import json
import os
import sys
import time

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from hyperrekt.data.assets import AssetDirectory
from hyperrekt.data.hyperliquid_api import AccountState, raise_for_status
from hyperrekt.data.websocket_feeds import MidsFeed, RestPriceSource
from hyperrekt.errors import ExchangeRejection, NeedsDeposit, NetworkFailure

from fakes import EMPTY_ACCOUNT, FUNDED_ACCOUNT, FakeHyperliquidClient, OK, rejected


def run(coro):
    return asyncio.run(coro)


# ============================================================
# HyperliquidClient
# ============================================================

class FlakyClient(FakeHyperliquidClient):
    """Fails the first `failures` /info calls with a NetworkFailure."""

    def __init__(self, failures, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures

    async def _post(self, path, payload, timeout):
        if path == "/info" and self.failures > 0:
            self.failures -= 1
            self.calls.append((path, payload))
            raise NetworkFailure("/info connection error")
        return await super()._post(path, payload, timeout)


def test_info_retried_until_success():
    client = FlakyClient(failures=2, retries=3)
    mids = run(client.get_all_mids())
    assert mids["BTC"] == 50000.0
    assert len(client.calls) == 3


def test_info_gives_up_after_retries():
    client = FlakyClient(failures=5, retries=3)
    with pytest.raises(NetworkFailure):
        run(client.get_meta())
    assert len(client.calls) == 3


def test_exchange_not_retried():
    client = FakeHyperliquidClient(retries=3)
    client.responses["order"] = NetworkFailure("/exchange timed out after 10s")
    with pytest.raises(NetworkFailure):
        run(client.exchange({"action": {"type": "order"}, "nonce": 1, "signature": {}}))
    assert len(client.exchange_calls) == 1


def test_network_switch_changes_base_url():
    client = FakeHyperliquidClient(use_testnet=True)
    assert "testnet" in client.base_url
    client.set_network(False)
    assert "testnet" not in client.base_url
    assert client.network == "mainnet"


def test_raise_for_status():
    assert raise_for_status(OK) is OK
    with pytest.raises(NeedsDeposit):
        raise_for_status(rejected("Must deposit before performing actions. User: 0xabc"))
    with pytest.raises(ExchangeRejection, match="Order failed: Price must be divisible by tick size."):
        raise_for_status(rejected("Price must be divisible by tick size."), "Order")
    with pytest.raises(ExchangeRejection):
        raise_for_status(None)


def test_account_state_parsing():
    state = AccountState.from_response(dict(FUNDED_ACCOUNT, assetPositions=[
        {"position": {"coin": "ETH", "szi": "-0.1", "entryPx": "3000", "unrealizedPnl": "-2.5",
                      "returnOnEquity": "-0.05", "positionValue": "302.5",
                      "leverage": {"type": "isolated", "value": 20}}},
        {"position": {}},
    ]))
    assert state.exists
    assert state.account_value == 1000.0
    assert list(state.positions) == ["ETH"]
    assert state.positions["ETH"].size == -0.1
    assert state.total_unrealized_pnl == -2.5


def test_empty_account_does_not_exist():
    assert not AccountState.from_response(EMPTY_ACCOUNT).exists
    assert not AccountState.from_response(None).exists


# ============================================================
# AssetDirectory
# ============================================================

def test_asset_ids_follow_universe_order():
    client = FakeHyperliquidClient()
    assets = AssetDirectory(client)
    btc = run(assets.get("BTC"))
    sol = run(assets.get("SOL"))
    assert (btc.asset_id, btc.sz_decimals, btc.max_leverage) == (0, 5, 40)
    assert sol.asset_id == 2
    assert sorted(assets.names()) == ["BTC", "ETH", "SOL"]


def test_asset_directory_caches():
    client = FakeHyperliquidClient()
    assets = AssetDirectory(client)

    async def lookups():
        await assets.get("BTC")
        await assets.get("ETH")

    run(lookups())
    assert len([c for c in client.calls if c[1].get("type") == "meta"]) == 1


def test_asset_directory_reloads_on_network_change():
    client = FakeHyperliquidClient()
    assets = AssetDirectory(client)
    run(assets.get("BTC"))
    client.set_network(False)
    assert assets.is_stale


def test_unknown_asset_is_none():
    assets = AssetDirectory(FakeHyperliquidClient())
    assert run(assets.get("DOGE")) is None


# ============================================================
# Price sources
# ============================================================

def test_rest_price_source():
    client = FakeHyperliquidClient()
    source = RestPriceSource(client)
    assert run(source.get_price("ETH")) == 3000.0
    assert run(source.get_price("DOGE")) is None


def test_rest_price_source_failure_is_none():
    client = FakeHyperliquidClient(retries=1)
    client.info_errors["allMids"] = NetworkFailure("/info timed out after 10s")
    assert run(RestPriceSource(client).get_price("ETH")) is None


def test_mids_feed_message_updates_prices():
    received = []
    feed = MidsFeed(FakeHyperliquidClient(), on_prices=received.append)
    feed._handle_message(json.dumps({
        "channel": "allMids",
        "data": {"mids": {"BTC": "65000.5", "ETH": "0"}},
    }))

    assert feed.mids == {"BTC": 65000.5}
    assert received == [{"BTC": 65000.5}]
    assert run(feed.get_price("BTC")) == 65000.5


def test_mids_feed_ignores_other_channels_and_garbage():
    feed = MidsFeed(FakeHyperliquidClient())
    feed._handle_message(json.dumps({"channel": "subscriptionResponse", "data": {}}))
    feed._handle_message("not json")
    assert feed.mids == {}
    assert feed.update_count == 0


def test_mids_feed_falls_back_when_stale():
    client = FakeHyperliquidClient()
    feed = MidsFeed(client, max_age_seconds=5)
    feed.mids = {"ETH": 2500.0}
    feed.last_update = time.time() - 60
    assert run(feed.get_price("ETH")) == 3000.0

    feed.last_update = time.time()
    assert run(feed.get_price("ETH")) == 2500.0

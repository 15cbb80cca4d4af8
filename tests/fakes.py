"""
In-process stand-in for the Hyperliquid API.

FakeHyperliquidClient replaces only the HTTP transport (`_post`), so the
real retry, parsing and error mapping in HyperliquidClient still run.
"""

import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from hyperrekt.data.hyperliquid_api import HyperliquidClient

# Well-known throwaway key, never funded
USER_KEY = "0x0123456789012345678901234567890123456789012345678901234567890123"

UNIVERSE = [
    {"name": "BTC", "szDecimals": 5, "maxLeverage": 40},
    {"name": "ETH", "szDecimals": 4, "maxLeverage": 25},
    {"name": "SOL", "szDecimals": 2, "maxLeverage": 20},
]

FUNDED_ACCOUNT = {
    "marginSummary": {"accountValue": "1000.0", "totalMarginUsed": "0.0"},
    "withdrawable": "1000.0",
    "assetPositions": [],
}

EMPTY_ACCOUNT = {
    "marginSummary": {"accountValue": "0.0", "totalMarginUsed": "0.0"},
    "withdrawable": "0.0",
    "assetPositions": [],
}

OK = {"status": "ok", "response": {"type": "default"}}


def filled(avg_px, total_sz, oid=1001):
    return {
        "status": "ok",
        "response": {"type": "order", "data": {"statuses": [
            {"filled": {"totalSz": str(total_sz), "avgPx": str(avg_px), "oid": oid}}
        ]}},
    }


def resting(oid=2002):
    return {
        "status": "ok",
        "response": {"type": "order", "data": {"statuses": [{"resting": {"oid": oid}}]}},
    }


def order_error(message):
    return {
        "status": "ok",
        "response": {"type": "order", "data": {"statuses": [{"error": message}]}},
    }


def rejected(message):
    return {"status": "err", "response": message}


CANCEL_OK = {"status": "ok", "response": {"type": "cancel", "data": {"statuses": ["success"]}}}


class FakeHyperliquidClient(HyperliquidClient):
    """
    Scripted exchange.

    `responses[action_type]` is a reply, a list of replies consumed in
    order (the last one repeats), an exception to raise, or a callable
    taking the payload. `delays[action_type]` sleeps before answering.
    """

    def __init__(self, use_testnet=True, **kwargs):
        kwargs.setdefault("backoff", 0)
        super().__init__(use_testnet=use_testnet, **kwargs)
        self.universe = list(UNIVERSE)
        self.mids = {"BTC": "50000.0", "ETH": "3000.0", "SOL": "150.0"}
        self.account = dict(FUNDED_ACCOUNT)
        self.responses = {
            "approveAgent": OK,
            "updateLeverage": OK,
            "order": filled(50000.0, "0.008"),
            "cancel": CANCEL_OK,
        }
        self.info_errors = {}
        self.delays = {}
        self.calls = []

    @property
    def exchange_calls(self):
        return [payload for path, payload in self.calls if path == "/exchange"]

    def actions(self, action_type=None):
        actions = [p["action"] for p in self.exchange_calls]
        if action_type is None:
            return actions
        return [a for a in actions if a["type"] == action_type]

    async def _post(self, path, payload, timeout):
        self.calls.append((path, payload))
        key = payload["action"]["type"] if path == "/exchange" else payload["type"]

        delay = self.delays.get(key)
        if delay:
            await asyncio.sleep(delay)

        if path == "/info":
            error = self.info_errors.get(key)
            if error is not None:
                raise error
            if key == "meta":
                return {"universe": self.universe}
            if key == "allMids":
                return dict(self.mids)
            if key == "clearinghouseState":
                return self.account
            return None

        reply = self.responses.get(key, OK)
        if isinstance(reply, list):
            reply = reply.pop(0) if len(reply) > 1 else reply[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(payload)
        return reply

    async def close(self):
        pass

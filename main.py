#!/usr/bin/env python3
"""
Hyper-rekt prediction engine
============================

Opens one timed, leveraged bet on a Hyperliquid perp and waits for the
auto-close to report the outcome:
- Agent wallet (created and approved on first run)
- allMids WebSocket feed for the reference and exit price
- Auto-close after --duration seconds

Usage:
    # Testnet (default), 30 second bet that BTC goes up
    USER_PRIVATE_KEY=0x... python main.py --asset BTC --direction up --duration 30

    # Persist the agent wallet between runs
    KEYSTORE_PASSPHRASE=... USER_PRIVATE_KEY=0x... python main.py --asset ETH --direction down

    # Mainnet
    USE_TESTNET=false USER_PRIVATE_KEY=0x... python main.py --asset BTC --direction up
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from datetime import datetime
from typing import Optional

from config.settings import (
    DEFAULT_LEVERAGE,
    KEYSTORE_DIR,
    KEYSTORE_PASSPHRASE,
    LOG_DIR,
    MARGIN_AMOUNT,
    USE_TESTNET,
    USER_PRIVATE_KEY,
)
from hyperrekt.data.hyperliquid_api import HyperliquidClient
from hyperrekt.data.websocket_feeds import MidsFeed
from hyperrekt.execution import (
    EncryptedFileKeyStore,
    LocalAccountSigner,
    MemoryKeyStore,
    OrderRequest,
    PredictionEngine,
)

# ============================================================
# Logging setup
# ============================================================
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(name)s] %(levelname)s: %(message)s',
    datefmt='%H:%M:%S',
)
logger = logging.getLogger('hyperrekt')


async def wait_for_price(feed: MidsFeed, asset: str, timeout: float = 10.0) -> float:
    """First usable price for `asset` (WebSocket tick or REST fallback)."""
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        price = await feed.get_price(asset)
        if price:
            return price
        await asyncio.sleep(0.5)
    return 0.0


def save_session_log(engine: PredictionEngine) -> str:
    """Write the closed positions of this run to a JSON file in LOG_DIR."""
    os.makedirs(LOG_DIR, exist_ok=True)
    ts = datetime.now().strftime('%Y%m%d_%H%M%S')
    filepath = os.path.join(LOG_DIR, f"session_{ts}.json")

    data = {
        'network': engine.client.network,
        'user': engine.user_address,
        'positions': [p.summary() for p in engine.registry.history],
        'open_positions': [p.summary() for p in engine.get_active_positions()],
        'orders': engine.trader.summary(),
    }
    with open(filepath, 'w') as f:
        json.dump(data, f, indent=2, default=str)
    return filepath


class GracefulExit:
    """
    SIGINT / SIGTERM handling: close whatever is open at market, then stop.

    With a position open, its outcome ends the run as usual. With nothing
    open (still waiting for a price, or the order failed) the run task is
    cancelled. An order already in flight is closed right after it lands.
    """

    def __init__(self, engine: PredictionEngine, done: asyncio.Event, task: Optional[asyncio.Task] = None):
        self.engine = engine
        self.done = done
        self.task = task or asyncio.current_task()
        self.requested = False
        self._shutdown_task: Optional[asyncio.Task] = None

    def request(self):
        if self.requested:
            logger.warning("Shutdown already in progress")
            return
        self.requested = True
        logger.warning("Shutdown requested, closing open positions...")
        self._shutdown_task = asyncio.ensure_future(self._shutdown())

    async def _shutdown(self):
        await self.engine.abandon()
        if not self.done.is_set() and not self.engine.is_placing:
            self.task.cancel()


async def run(args) -> int:
    if not USER_PRIVATE_KEY:
        logger.error("USER_PRIVATE_KEY is not set")
        return 1
    if args.duration <= 0:
        logger.error("--duration must be positive")
        return 1

    use_testnet = not args.mainnet and USE_TESTNET
    signer = LocalAccountSigner(USER_PRIVATE_KEY)

    if KEYSTORE_PASSPHRASE:
        keystore = EncryptedFileKeyStore(KEYSTORE_DIR, KEYSTORE_PASSPHRASE)
    else:
        logger.warning("KEYSTORE_PASSPHRASE not set, agent wallet will not survive restarts")
        keystore = MemoryKeyStore()

    client = HyperliquidClient(use_testnet=use_testnet)
    feed = MidsFeed(client)

    logger.info(f"{'='*60}")
    logger.info(f"Hyper-rekt prediction engine")
    logger.info(f"{'='*60}")
    logger.info(f"  Network:   {client.network}")
    logger.info(f"  Wallet:    {signer.address}")
    logger.info(f"  Bet:       {args.direction.upper()} {args.asset} for {args.duration}s")
    logger.info(f"  Margin:    ${args.margin:.2f} × {args.leverage}x")
    logger.info(f"{'='*60}")

    async with PredictionEngine(
        signer.address,
        signer,
        use_testnet=use_testnet,
        keystore=keystore,
        client=client,
        price_source=feed,
    ) as engine:
        await feed.connect()
        done = asyncio.Event()

        stopper = GracefulExit(engine, done)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stopper.request)
            except NotImplementedError:
                pass

        try:
            price = await wait_for_price(feed, args.asset)
            if not price:
                logger.error(f"No price for {args.asset}")
                return 1
            logger.info(f"  {args.asset}: ${price:,.2f}")

            result = await engine.place_prediction_order(OrderRequest(
                asset=args.asset,
                direction=args.direction,
                reference_price=price,
                margin=args.margin,
                leverage=args.leverage,
                duration=args.duration,
            ))
            if not result.success:
                logger.error(f"Order failed ({result.error_kind}): {result.error}")
                return 1

            fill = result.fill_info
            logger.info(
                f"Opened {result.cloid[:10]}...: "
                f"{'filled @ ' + str(fill.fill_price) if fill.filled else 'resting'} "
                f"size={fill.fill_size or result.size}"
            )

            def on_result(outcome, exit_price):
                logger.info(f"Result: {outcome.value.upper()} exit=${exit_price:,.2f}")
                done.set()

            engine.on_position_result(result.cloid, on_result)
            if stopper.requested:
                await engine.abandon()
            engine.start_pnl_polling(
                lambda state: logger.info(f"  Unrealized P&L: ${state.total_unrealized_pnl:+.2f}")
            )

            await done.wait()
            for position in engine.registry.history[-1:]:
                if position.pnl:
                    logger.info(
                        f"Realized P&L: ${position.pnl.dollar_value:+.2f} ({position.pnl.percent:+.1f}%)"
                    )
            return 0
        except asyncio.CancelledError:
            logger.warning("Run interrupted, nothing left open")
            return 130
        finally:
            await feed.disconnect()
            logger.info(f"Summary: {engine.summary()['trader']}")
            logger.info(f"Log saved: {save_session_log(engine)}")


def main():
    parser = argparse.ArgumentParser(description='Hyper-rekt timed prediction on Hyperliquid')
    parser.add_argument('--asset', default='BTC',
                        help='Perp asset to bet on (default: BTC)')
    parser.add_argument('--direction', choices=['up', 'down'], default='up',
                        help='Price direction to bet on (default: up)')
    parser.add_argument('--duration', type=float, default=30,
                        help='Seconds until auto-close (default: 30)')
    parser.add_argument('--margin', type=float, default=MARGIN_AMOUNT,
                        help=f'Margin in USDC (default: {MARGIN_AMOUNT})')
    parser.add_argument('--leverage', type=int, default=DEFAULT_LEVERAGE,
                        help=f'Leverage, clamped to the asset max (default: {DEFAULT_LEVERAGE})')
    parser.add_argument('--mainnet', action='store_true',
                        help='Trade on mainnet instead of testnet')
    args = parser.parse_args()

    sys.exit(asyncio.run(run(args)))


if __name__ == '__main__':
    main()

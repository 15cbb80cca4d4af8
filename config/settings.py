"""
Engine configuration settings.
All tunable parameters in one place.
"""
import os

# ============================================================
# API Endpoints
# ============================================================
MAINNET_API = "https://api.hyperliquid.xyz"
TESTNET_API = "https://api.hyperliquid-testnet.xyz"
MAINNET_WS = "wss://api.hyperliquid.xyz/ws"
TESTNET_WS = "wss://api.hyperliquid-testnet.xyz/ws"

USE_TESTNET = os.getenv("USE_TESTNET", "true").lower() == "true"

# ============================================================
# Trading Parameters
# ============================================================
MARGIN_AMOUNT = float(os.getenv("MARGIN_AMOUNT", "10.0"))   # USDC per bet
DEFAULT_LEVERAGE = 20
AGGRESSIVE_SLIPPAGE = 0.02     # Limit offset that makes an IOC cross the book
PRICE_SIG_FIGS = 5             # Hyperliquid price precision
MAX_PERP_DECIMALS = 6          # Perp prices: at most 6 - szDecimals decimals
MAX_SPOT_DECIMALS = 8

# ============================================================
# Timeouts & Retries (seconds)
# ============================================================
INFO_TIMEOUT = 10
EXCHANGE_TIMEOUT = 10
PRICE_TIMEOUT = 2              # Price pull during close
CLOSE_TIMEOUT = 10             # Close-order submission
INFO_RETRIES = 3               # Read calls only; /exchange is never retried
RETRY_BACKOFF = 0.5            # First backoff delay, doubled per attempt
META_REFRESH_SECONDS = 300     # AssetConfig cache lifetime
PRICE_STALE_SECONDS = 5        # WebSocket tick age before REST fallback

# ============================================================
# Signing
# ============================================================
AGENT_SIGNING_CHAIN_ID = 1337  # Same on testnet and mainnet
MAINNET_CHAIN_ID = 42161       # Arbitrum One
TESTNET_CHAIN_ID = 421614      # Arbitrum Sepolia
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# ============================================================
# Agent Wallet
# ============================================================
DEFAULT_AGENT_NAME = "Hyper-rektAgent"
AGENT_STORAGE_PREFIX = "hyperliquid_agent"

# ============================================================
# Persistence (set via environment variables)
# ============================================================
KEYSTORE_DIR = os.getenv(
    "KEYSTORE_DIR",
    os.path.join(os.path.expanduser("~"), ".hyperrekt", "agents"),
)
KEYSTORE_PASSPHRASE = os.getenv("KEYSTORE_PASSPHRASE", "")
USER_PRIVATE_KEY = os.getenv("USER_PRIVATE_KEY", "")

# ============================================================
# P&L Polling
# ============================================================
PNL_POLL_INTERVAL = 2.0
PNL_MAX_FAILURES = 5

# ============================================================
# Session Logs
# ============================================================
LOG_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "logs")

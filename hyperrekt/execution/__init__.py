"""
Execution module: delegation, signing, trading and position lifecycle.

Components:
- agent: Agent wallet creation, persistence and one-time approval
- signing: EIP-712 signing for user-signed and agent-signed actions
- keystore: Storage for agent wallet records
- trader: Leverage, order placement and cancellation
- positions: Position state machine and registry
- scheduler: Auto-close timers and the market-close path
- pnl_poller: Periodic unrealized P&L
- engine: PredictionEngine, the surface callers use
"""

from .agent import AgentIdentity, AgentManager, ApprovalResult
from .signing import LocalAccountSigner, UserSigner
from .keystore import KeyStore, MemoryKeyStore, EncryptedFileKeyStore
from .trader import Trader, OrderRequest, OrderResult, FillInfo
from .positions import Direction, Position, PositionRegistry, PositionResult, PositionState
from .scheduler import PositionScheduler, CloseOutcome
from .pnl_poller import PnLPoller
from .engine import PredictionEngine

__all__ = [
    'AgentIdentity',
    'AgentManager',
    'ApprovalResult',
    'LocalAccountSigner',
    'UserSigner',
    'KeyStore',
    'MemoryKeyStore',
    'EncryptedFileKeyStore',
    'Trader',
    'OrderRequest',
    'OrderResult',
    'FillInfo',
    'Direction',
    'Position',
    'PositionRegistry',
    'PositionResult',
    'PositionState',
    'PositionScheduler',
    'CloseOutcome',
    'PnLPoller',
    'PredictionEngine',
]

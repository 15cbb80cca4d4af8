"""
Agent wallet delegation for Hyperliquid.

Two-tier signing:
- Primary wallet: signs one `approveAgent` action (user-signed, EIP-712)
- Agent wallet: generated locally, approved once, then signs every trade

Agents are scoped to (user address, network) and persisted through a
KeyStore, so switching accounts or networks never reuses a stale agent.

Usage:
    manager = AgentManager(client, keystore, use_testnet=True)
    result = await manager.ensure_ready(user_address, user_signer)
    if result.success:
        identity = result.identity  # ready to sign trades
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from eth_account import Account
from eth_utils import to_hex

from config.settings import AGENT_STORAGE_PREFIX, DEFAULT_AGENT_NAME
from hyperrekt.data.hyperliquid_api import HyperliquidClient, raise_for_status
from hyperrekt.errors import EngineError, ErrorKind, KeyStoreFailure, NeedsDeposit
from hyperrekt.execution.keystore import KeyStore, MemoryKeyStore
from hyperrekt.execution.signing import (
    UserSigner,
    approve_agent_payload,
    hyperliquid_chain,
    sign_user_action,
    signature_chain_id,
)

logger = logging.getLogger(__name__)


@dataclass
class AgentIdentity:
    """Delegated signing key. Only `is_approved` ever changes."""
    address: str
    private_key: str
    is_approved: bool = False

    def __repr__(self) -> str:
        return f"AgentIdentity(address={self.address!r}, is_approved={self.is_approved})"


@dataclass
class ApprovalResult:
    """Outcome of an approval attempt."""
    success: bool
    identity: Optional[AgentIdentity] = None
    needs_deposit: bool = False
    error: str = ""
    error_kind: Optional[ErrorKind] = None


class AgentManager:
    """
    Creates, persists and approves agent wallets.

    Handles:
    - Per-(user, network) agent generation and persistence
    - One-time approval signed by the user's primary wallet
    - Distinguishing "deposit first" from other approval failures
    """

    def __init__(
        self,
        client: HyperliquidClient,
        keystore: Optional[KeyStore] = None,
        use_testnet: bool = True,
    ):
        self.client = client
        self.keystore = keystore or MemoryKeyStore()
        self.use_testnet = use_testnet

    @property
    def network(self) -> str:
        return "testnet" if self.use_testnet else "mainnet"

    def set_network(self, use_testnet: bool):
        self.use_testnet = use_testnet

    def storage_key(self, user_address: str) -> str:
        return f"{AGENT_STORAGE_PREFIX}_{user_address.lower()}_{self.network}"

    # ============================================================
    # Persistence
    # ============================================================

    def _read(self, key: str) -> Optional[dict]:
        try:
            return self.keystore.get(key)
        except (OSError, ValueError) as e:
            raise KeyStoreFailure(f"Agent record {key} could not be read: {e}") from e

    def _write(self, key: str, record: dict):
        try:
            self.keystore.put(key, record)
        except (OSError, ValueError, TypeError) as e:
            raise KeyStoreFailure(f"Agent record {key} could not be written: {e}") from e

    def load(self, user_address: str) -> Optional[AgentIdentity]:
        """
        Stored agent for this user on the current network, if any.

        Raises:
            KeyStoreFailure: a record exists but cannot be read. It is never
            replaced, so the approved key is not lost to a wrong passphrase.
        """
        record = self._read(self.storage_key(user_address))
        if not record:
            return None

        if not record.get("address") or not record.get("privateKey"):
            logger.warning(f"Ignoring incomplete agent record for {user_address[:10]}...")
            return None
        if record.get("network") != self.network:
            logger.warning(
                f"Ignoring agent record for {user_address[:10]}... "
                f"stored for {record.get('network')}, expected {self.network}"
            )
            return None

        identity = AgentIdentity(
            address=record["address"],
            private_key=record["privateKey"],
            is_approved=bool(record.get("isApproved", False)),
        )
        logger.info(f"Agent loaded: {identity.address} (approved={identity.is_approved})")
        return identity

    def save(self, user_address: str, identity: AgentIdentity):
        key = self.storage_key(user_address)
        existing = self._read(key) or {}
        self._write(key, {
            "address": identity.address,
            "privateKey": identity.private_key,
            "isApproved": identity.is_approved,
            "masterAddress": user_address.lower(),
            "network": self.network,
            "createdAt": existing.get("createdAt") or int(time.time() * 1000),
        })
        logger.info(f"Agent saved: {key} (approved={identity.is_approved})")

    def clear(self, user_address: str):
        """Forget the agent for this user on the current network."""
        self.keystore.delete(self.storage_key(user_address))
        logger.info(f"Agent cleared for {user_address[:10]}... ({self.network})")

    # ============================================================
    # Lifecycle
    # ============================================================

    def generate(self) -> AgentIdentity:
        account = Account.create()
        identity = AgentIdentity(
            address=account.address.lower(),
            private_key=to_hex(account.key),
            is_approved=False,
        )
        logger.info(f"Generated new agent wallet: {identity.address}")
        return identity

    def get_or_create_identity(self, user_address: str) -> AgentIdentity:
        """Persisted agent for (user, network), or a new unapproved one."""
        identity = self.load(user_address)
        if identity is None:
            identity = self.generate()
            self.save(user_address, identity)
        return identity

    async def approve(
        self,
        user_address: str,
        identity: AgentIdentity,
        user_signer: UserSigner,
        label: str = DEFAULT_AGENT_NAME,
    ) -> ApprovalResult:
        """
        Approve `identity` as an agent of the user's primary wallet.

        Builds the approveAgent action, has the primary wallet sign it,
        submits it, and on success flips `is_approved` and persists.

        Returns:
            ApprovalResult; `needs_deposit` is set when the exchange has no
            account for the user. The identity stays unapproved on failure.
        """
        is_mainnet = not self.use_testnet
        nonce = int(time.time() * 1000)

        action = {
            "type": "approveAgent",
            "hyperliquidChain": hyperliquid_chain(is_mainnet),
            "signatureChainId": signature_chain_id(is_mainnet),
            "agentAddress": identity.address,
            "agentName": label,
            "nonce": nonce,
        }

        try:
            payload = approve_agent_payload(action, is_mainnet)
            signature = await sign_user_action(user_signer, payload)

            logger.info(
                f"Submitting agent approval: agent={identity.address} "
                f"name={label} network={self.network}"
            )
            result = await self.client.exchange({
                "action": action,
                "nonce": nonce,
                "signature": signature,
            })
            raise_for_status(result, "Agent approval")

        except NeedsDeposit as e:
            logger.warning(f"Agent approval needs deposit: {e}")
            return ApprovalResult(
                success=False,
                identity=identity,
                needs_deposit=True,
                error="You need to deposit funds to Hyperliquid before approving an agent wallet.",
                error_kind=ErrorKind.NEEDS_DEPOSIT,
            )
        except EngineError as e:
            logger.error(f"Agent approval failed: {e}")
            return ApprovalResult(
                success=False,
                identity=identity,
                error=str(e),
                error_kind=e.kind,
            )

        identity.is_approved = True
        try:
            self.save(user_address, identity)
        except KeyStoreFailure as e:
            logger.error(f"Agent approved but not persisted: {e}")
        logger.info(f"Agent approved: {identity.address}")
        return ApprovalResult(success=True, identity=identity)

    async def ensure_ready(
        self,
        user_address: str,
        user_signer: UserSigner,
        label: str = DEFAULT_AGENT_NAME,
    ) -> ApprovalResult:
        """Approved agent for the user, approving once if needed."""
        try:
            identity = self.get_or_create_identity(user_address)
        except KeyStoreFailure as e:
            logger.error(f"Agent wallet unavailable: {e}")
            return ApprovalResult(success=False, error=str(e), error_kind=e.kind)

        if identity.is_approved:
            return ApprovalResult(success=True, identity=identity)

        logger.info(f"Agent {identity.address} not approved yet, requesting approval")
        return await self.approve(user_address, identity, user_signer, label)

    def status(self, user_address: str) -> dict:
        error = ""
        try:
            identity = self.load(user_address)
        except KeyStoreFailure as e:
            identity, error = None, str(e)
        return {
            'exists': identity is not None,
            'approved': identity.is_approved if identity else False,
            'address': identity.address if identity else None,
            'network': self.network,
            'error': error,
        }

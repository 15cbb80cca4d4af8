"""
Hyperliquid signing protocol.

Two EIP-712 modes with different domains:

- User-signed (agent approval): signed by the user's primary wallet.
    domain   HyperliquidSignTransaction, chainId = real network id
             (421614 testnet / 42161 mainnet)
    type     HyperliquidTransaction:ApproveAgent
    The wire action carries `signatureChainId`; the signed message does not.

- Agent-signed (every trade action): signed by the approved agent key.
    hash     keccak(msgpack(action) | nonce u64 big-endian | 0x00)
             or keccak(... | 0x01 | vault address) when trading for a vault
    message  Agent {source: "a" mainnet / "b" testnet, connectionId: hash}
    domain   Exchange, chainId 1337 on every network

A payload signed under the wrong domain still produces a well-formed
signature. The exchange recovers a different address from it and rejects
the action as coming from an unknown wallet, so both paths are checked by
recovering the signer.
"""

import logging
from typing import TYPE_CHECKING, Optional, Protocol, Union

import msgpack
from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import keccak, to_bytes, to_hex

from config.settings import (
    AGENT_SIGNING_CHAIN_ID,
    MAINNET_CHAIN_ID,
    TESTNET_CHAIN_ID,
    ZERO_ADDRESS,
)
from hyperrekt.errors import SigningFailure

if TYPE_CHECKING:
    from hyperrekt.execution.agent import AgentIdentity

logger = logging.getLogger(__name__)


EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

AGENT_TYPE = [
    {"name": "source", "type": "string"},
    {"name": "connectionId", "type": "bytes32"},
]

APPROVE_AGENT_PRIMARY_TYPE = "HyperliquidTransaction:ApproveAgent"
APPROVE_AGENT_TYPE = [
    {"name": "hyperliquidChain", "type": "string"},
    {"name": "agentAddress", "type": "address"},
    {"name": "agentName", "type": "string"},
    {"name": "nonce", "type": "uint64"},
]

Signature = dict  # {"r": "0x..", "s": "0x..", "v": 27 | 28}


def network_chain_id(is_mainnet: bool) -> int:
    return MAINNET_CHAIN_ID if is_mainnet else TESTNET_CHAIN_ID


def signature_chain_id(is_mainnet: bool) -> str:
    """Hex chain id sent alongside user-signed actions ('0xa4b1' / '0x66eee')."""
    return hex(network_chain_id(is_mainnet))


def hyperliquid_chain(is_mainnet: bool) -> str:
    return "Mainnet" if is_mainnet else "Testnet"


# ================================================================
# Agent-signed (L1) actions
# ================================================================

def address_to_bytes(address: str) -> bytes:
    return to_bytes(hexstr=address[2:] if address.startswith("0x") else address)


def action_hash_input(action: dict, nonce: int, vault_address: Optional[str] = None) -> bytes:
    """Byte string that gets hashed for an agent-signed action."""
    data = msgpack.packb(action)
    data += nonce.to_bytes(8, "big")
    if vault_address is None:
        data += b"\x00"
    else:
        data += b"\x01"
        data += address_to_bytes(vault_address.lower())
    return data


def action_hash(action: dict, nonce: int, vault_address: Optional[str] = None) -> bytes:
    return keccak(action_hash_input(action, nonce, vault_address))


def construct_phantom_agent(hash_: bytes, is_mainnet: bool) -> dict:
    return {"source": "a" if is_mainnet else "b", "connectionId": hash_}


def l1_payload(phantom_agent: dict) -> dict:
    return {
        "domain": {
            "chainId": AGENT_SIGNING_CHAIN_ID,
            "name": "Exchange",
            "verifyingContract": ZERO_ADDRESS,
            "version": "1",
        },
        "types": {
            "Agent": AGENT_TYPE,
            "EIP712Domain": EIP712_DOMAIN_TYPE,
        },
        "primaryType": "Agent",
        "message": phantom_agent,
    }


def agent_action_payload(
    action: dict,
    nonce: int,
    is_mainnet: bool,
    vault_address: Optional[str] = None,
) -> dict:
    phantom_agent = construct_phantom_agent(action_hash(action, nonce, vault_address), is_mainnet)
    return l1_payload(phantom_agent)


# ================================================================
# User-signed actions
# ================================================================

def user_signed_payload(primary_type: str, payload_types: list, message: dict, chain_id: int) -> dict:
    return {
        "domain": {
            "name": "HyperliquidSignTransaction",
            "version": "1",
            "chainId": chain_id,
            "verifyingContract": ZERO_ADDRESS,
        },
        "types": {
            primary_type: payload_types,
            "EIP712Domain": EIP712_DOMAIN_TYPE,
        },
        "primaryType": primary_type,
        "message": message,
    }


def approve_agent_payload(action: dict, is_mainnet: bool) -> dict:
    """
    Typed data for an approveAgent action.

    Only the typed fields are signed; `type` and `signatureChainId` travel
    on the wire but are not part of the message.
    """
    message = {field["name"]: action[field["name"]] for field in APPROVE_AGENT_TYPE}
    return user_signed_payload(
        APPROVE_AGENT_PRIMARY_TYPE,
        APPROVE_AGENT_TYPE,
        message,
        network_chain_id(is_mainnet),
    )


# ================================================================
# Signatures
# ================================================================

def sign_typed_data(private_key: str, payload: dict) -> Signature:
    structured = encode_typed_data(full_message=payload)
    signed = Account.sign_message(structured, private_key)
    return {"r": to_hex(signed.r), "s": to_hex(signed.s), "v": signed.v}


def split_signature(signature: Union[str, bytes]) -> Signature:
    """65-byte `r | s | v` signature (wallet format) -> {r, s, v}."""
    raw = to_bytes(hexstr=signature) if isinstance(signature, str) else bytes(signature)
    if len(raw) != 65:
        raise SigningFailure(f"Malformed signature: expected 65 bytes, got {len(raw)}")
    v = raw[64]
    if v < 27:
        v += 27
    return {
        "r": to_hex(int.from_bytes(raw[0:32], "big")),
        "s": to_hex(int.from_bytes(raw[32:64], "big")),
        "v": v,
    }


def recover_typed_data_signer(payload: dict, signature: Signature) -> str:
    structured = encode_typed_data(full_message=payload)
    vrs = (signature["v"], int(signature["r"], 16), int(signature["s"], 16))
    return Account.recover_message(structured, vrs=vrs)


def sign_agent_action(
    identity: "AgentIdentity",
    action: dict,
    nonce: int,
    is_mainnet: bool,
    vault_address: Optional[str] = None,
) -> Signature:
    """
    Sign a trade action with the agent key.

    Raises:
        SigningFailure: identity not approved, or signing failed
    """
    if identity is None or not identity.is_approved:
        raise SigningFailure("Agent wallet not approved. Approve the agent first.")
    try:
        payload = agent_action_payload(action, nonce, is_mainnet, vault_address)
        return sign_typed_data(identity.private_key, payload)
    except Exception as e:
        raise SigningFailure(f"Failed to sign {action.get('type')} with agent: {e}") from e


def recover_agent_signer(
    action: dict,
    nonce: int,
    is_mainnet: bool,
    signature: Signature,
    vault_address: Optional[str] = None,
) -> str:
    payload = agent_action_payload(action, nonce, is_mainnet, vault_address)
    return recover_typed_data_signer(payload, signature)


# ================================================================
# Primary-wallet signers
# ================================================================

class UserSigner(Protocol):
    """The user's primary wallet: anything that can sign EIP-712 typed data."""
    address: str

    async def sign_typed_data(self, payload: dict) -> str:
        """Return a 65-byte hex signature over `payload`."""
        ...


class LocalAccountSigner:
    """UserSigner backed by a private key held in-process."""

    def __init__(self, private_key: str):
        self._account = Account.from_key(private_key)
        self.address = self._account.address

    async def sign_typed_data(self, payload: dict) -> str:
        structured = encode_typed_data(full_message=payload)
        signed = self._account.sign_message(structured)
        return to_hex(signed.signature)


async def sign_user_action(user_signer: UserSigner, payload: dict) -> Signature:
    """
    Have the primary wallet sign `payload` and check who signed it.

    Raises:
        SigningFailure: declined, malformed, or signed by another account
    """
    try:
        raw = await user_signer.sign_typed_data(payload)
    except SigningFailure:
        raise
    except Exception as e:
        raise SigningFailure(f"User declined or failed to sign: {e}") from e

    signature = split_signature(raw)
    recovered = recover_typed_data_signer(payload, signature)
    if recovered.lower() != user_signer.address.lower():
        raise SigningFailure(
            f"Address mismatch: expected {user_signer.address}, recovered {recovered}. "
            f"Check that the connected wallet account is the one trading."
        )
    return signature

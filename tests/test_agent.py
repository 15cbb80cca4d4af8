"""
Tests for agent wallet delegation and key storage.
"""

import os
import sys
import tempfile
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from eth_account import Account
from eth_utils import to_hex

from hyperrekt.errors import ErrorKind, NetworkFailure
from hyperrekt.execution.agent import AgentIdentity, AgentManager
from hyperrekt.execution.keystore import EncryptedFileKeyStore, MemoryKeyStore
from hyperrekt.execution.signing import (
    LocalAccountSigner,
    approve_agent_payload,
    recover_typed_data_signer,
)

from fakes import USER_KEY, FakeHyperliquidClient, rejected

USER = Account.from_key(USER_KEY).address


class TestIdentityPersistence(unittest.TestCase):

    def setUp(self):
        self.client = FakeHyperliquidClient()
        self.store = MemoryKeyStore()
        self.manager = AgentManager(self.client, self.store, use_testnet=True)

    def test_storage_key(self):
        self.assertEqual(
            self.manager.storage_key("0xABCdef"),
            "hyperliquid_agent_0xabcdef_testnet",
        )
        self.manager.set_network(False)
        self.assertEqual(
            self.manager.storage_key("0xABCdef"),
            "hyperliquid_agent_0xabcdef_mainnet",
        )

    def test_create_persists_unapproved(self):
        identity = self.manager.get_or_create_identity(USER)
        self.assertFalse(identity.is_approved)
        self.assertEqual(Account.from_key(identity.private_key).address.lower(), identity.address)

        record = self.store.get(self.manager.storage_key(USER))
        self.assertEqual(record["address"], identity.address)
        self.assertEqual(record["network"], "testnet")
        self.assertEqual(record["masterAddress"], USER.lower())
        self.assertFalse(record["isApproved"])

    def test_same_identity_returned(self):
        first = self.manager.get_or_create_identity(USER)
        second = self.manager.get_or_create_identity(USER)
        self.assertEqual(first.address, second.address)

    def test_scoped_per_network(self):
        testnet = self.manager.get_or_create_identity(USER)
        self.manager.set_network(False)
        mainnet = self.manager.get_or_create_identity(USER)
        self.assertNotEqual(testnet.address, mainnet.address)
        self.assertEqual(len(self.store.keys()), 2)

    def test_scoped_per_user(self):
        other_user = Account.create().address
        a = self.manager.get_or_create_identity(USER)
        b = self.manager.get_or_create_identity(other_user)
        self.assertNotEqual(a.address, b.address)

    def test_record_from_other_network_ignored(self):
        identity = self.manager.get_or_create_identity(USER)
        record = self.store.get(self.manager.storage_key(USER))
        record["network"] = "mainnet"
        self.store.put(self.manager.storage_key(USER), record)

        replacement = self.manager.get_or_create_identity(USER)
        self.assertNotEqual(replacement.address, identity.address)

    def test_clear_and_status(self):
        self.assertFalse(self.manager.status(USER)['exists'])
        identity = self.manager.get_or_create_identity(USER)
        status = self.manager.status(USER)
        self.assertTrue(status['exists'])
        self.assertFalse(status['approved'])
        self.assertEqual(status['address'], identity.address)

        self.manager.clear(USER)
        self.assertFalse(self.manager.status(USER)['exists'])

    def test_repr_hides_private_key(self):
        identity = AgentIdentity(address="0xabc", private_key="0xsecret")
        self.assertNotIn("secret", repr(identity))


class TestApproval(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.client = FakeHyperliquidClient()
        self.store = MemoryKeyStore()
        self.manager = AgentManager(self.client, self.store, use_testnet=True)
        self.signer = LocalAccountSigner(USER_KEY)

    async def test_approve_success(self):
        identity = self.manager.get_or_create_identity(USER)
        result = await self.manager.approve(USER, identity, self.signer, "TestAgent")

        self.assertTrue(result.success)
        self.assertTrue(identity.is_approved)
        self.assertTrue(self.store.get(self.manager.storage_key(USER))["isApproved"])
        self.assertTrue(self.manager.load(USER).is_approved)

    async def test_approval_wire_format(self):
        identity = self.manager.get_or_create_identity(USER)
        await self.manager.approve(USER, identity, self.signer, "TestAgent")

        payload = self.client.exchange_calls[0]
        action = payload["action"]
        self.assertEqual(action["type"], "approveAgent")
        self.assertEqual(action["hyperliquidChain"], "Testnet")
        self.assertEqual(action["signatureChainId"], "0x66eee")
        self.assertEqual(action["agentAddress"], identity.address)
        self.assertEqual(action["agentName"], "TestAgent")
        self.assertEqual(action["nonce"], payload["nonce"])

        # Signed by the user's primary wallet under the user domain
        recovered = recover_typed_data_signer(
            approve_agent_payload(action, is_mainnet=False),
            payload["signature"],
        )
        self.assertEqual(recovered.lower(), USER.lower())

    async def test_mainnet_approval(self):
        self.manager.set_network(False)
        self.client.set_network(False)
        identity = self.manager.get_or_create_identity(USER)
        await self.manager.approve(USER, identity, self.signer)

        action = self.client.actions("approveAgent")[0]
        self.assertEqual(action["hyperliquidChain"], "Mainnet")
        self.assertEqual(action["signatureChainId"], "0xa4b1")
        self.assertEqual(action["agentName"], "Hyper-rektAgent")

    async def test_needs_deposit(self):
        self.client.responses["approveAgent"] = rejected(
            "Must deposit before performing actions. User: " + USER.lower()
        )
        identity = self.manager.get_or_create_identity(USER)
        result = await self.manager.approve(USER, identity, self.signer)

        self.assertFalse(result.success)
        self.assertTrue(result.needs_deposit)
        self.assertEqual(result.error_kind, ErrorKind.NEEDS_DEPOSIT)
        self.assertFalse(identity.is_approved)
        self.assertFalse(self.store.get(self.manager.storage_key(USER))["isApproved"])

    async def test_user_does_not_exist(self):
        self.client.responses["approveAgent"] = rejected("User or API Wallet 0x123 does not exist.")
        identity = self.manager.get_or_create_identity(USER)
        result = await self.manager.approve(USER, identity, self.signer)
        self.assertTrue(result.needs_deposit)

    async def test_other_rejection_is_not_deposit(self):
        self.client.responses["approveAgent"] = rejected("Extra agent already used.")
        identity = self.manager.get_or_create_identity(USER)
        result = await self.manager.approve(USER, identity, self.signer)

        self.assertFalse(result.success)
        self.assertFalse(result.needs_deposit)
        self.assertEqual(result.error_kind, ErrorKind.EXCHANGE_REJECTION)
        self.assertIn("Extra agent already used.", result.error)

    async def test_network_failure_not_retried(self):
        self.client.responses["approveAgent"] = NetworkFailure("/exchange timed out")
        identity = self.manager.get_or_create_identity(USER)
        result = await self.manager.approve(USER, identity, self.signer)

        self.assertEqual(result.error_kind, ErrorKind.NETWORK_FAILURE)
        self.assertEqual(len(self.client.exchange_calls), 1)
        self.assertFalse(identity.is_approved)

    async def test_signer_mismatch_never_submits(self):
        other = LocalAccountSigner("0x" + "22" * 32)
        identity = self.manager.get_or_create_identity(USER)
        other.address = USER  # claims the user's address
        result = await self.manager.approve(USER, identity, other)

        self.assertEqual(result.error_kind, ErrorKind.SIGNING_FAILURE)
        self.assertEqual(self.client.exchange_calls, [])

    async def test_ensure_ready_approves_once(self):
        first = await self.manager.ensure_ready(USER, self.signer)
        second = await self.manager.ensure_ready(USER, self.signer)

        self.assertTrue(first.success and second.success)
        self.assertEqual(first.identity.address, second.identity.address)
        self.assertEqual(len(self.client.actions("approveAgent")), 1)


class TestEncryptedFileKeyStore(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = EncryptedFileKeyStore(
            self.tmp.name, "correct horse", kdf="pbkdf2", iterations=2
        )

    def tearDown(self):
        self.tmp.cleanup()

    def test_round_trip_without_cleartext_key(self):
        account = Account.create()
        key = "hyperliquid_agent_0xabc_testnet"
        self.store.put(key, {
            "address": account.address.lower(),
            "privateKey": to_hex(account.key),
            "isApproved": True,
            "network": "testnet",
        })

        with open(self.store._path(key)) as f:
            raw = f.read()
        self.assertNotIn(to_hex(account.key)[2:], raw)
        self.assertNotIn("privateKey", raw)

        record = self.store.get(key)
        self.assertEqual(Account.from_key(record["privateKey"]).address, account.address)
        self.assertTrue(record["isApproved"])

    def test_survives_new_instance(self):
        manager = AgentManager(FakeHyperliquidClient(), self.store, use_testnet=True)
        identity = manager.get_or_create_identity(USER)

        reopened = EncryptedFileKeyStore(self.tmp.name, "correct horse")
        manager = AgentManager(FakeHyperliquidClient(), reopened, use_testnet=True)
        self.assertEqual(manager.get_or_create_identity(USER).address, identity.address)

    def test_wrong_passphrase(self):
        self.store.put("k", {"address": "0xabc", "privateKey": "0x" + "33" * 32})
        with self.assertRaises(ValueError):
            EncryptedFileKeyStore(self.tmp.name, "wrong").get("k")

    def test_delete_and_missing(self):
        self.assertIsNone(self.store.get("missing"))
        self.store.put("k", {"address": "0xabc"})
        self.store.delete("k")
        self.assertIsNone(self.store.get("k"))
        self.store.delete("k")

    def test_requires_passphrase(self):
        with self.assertRaises(ValueError):
            EncryptedFileKeyStore(self.tmp.name, "")


if __name__ == '__main__':
    unittest.main()

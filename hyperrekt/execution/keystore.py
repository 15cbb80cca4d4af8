"""
Key-store abstraction for agent wallet records.

A record is a plain dict keyed by a deterministic composite string
(`hyperliquid_agent_<user>_<network>`). Two implementations:

- MemoryKeyStore: process-local, for tests and throwaway sessions
- EncryptedFileKeyStore: one JSON file per record; the private key is
  stored as an eth_account V3 keystore encrypted with a passphrase
"""

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Optional

from eth_account import Account
from eth_utils import to_hex

logger = logging.getLogger(__name__)


class KeyStore(ABC):
    """get / put / delete of agent records by composite key."""

    @abstractmethod
    def get(self, key: str) -> Optional[dict]:
        ...

    @abstractmethod
    def put(self, key: str, record: dict):
        ...

    @abstractmethod
    def delete(self, key: str):
        ...


class MemoryKeyStore(KeyStore):

    def __init__(self):
        self._records: dict[str, dict] = {}

    def get(self, key: str) -> Optional[dict]:
        record = self._records.get(key)
        return dict(record) if record is not None else None

    def put(self, key: str, record: dict):
        self._records[key] = dict(record)

    def delete(self, key: str):
        self._records.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._records.keys())


class EncryptedFileKeyStore(KeyStore):
    """
    Durable store: `<directory>/<key>.json`.

    `privateKey` never touches disk in clear text; it is replaced by a
    `keystore` field (Web3 Secret Storage) and restored on read.
    """

    def __init__(
        self,
        directory: str,
        passphrase: str,
        kdf: Optional[str] = None,
        iterations: Optional[int] = None,
    ):
        if not passphrase:
            raise ValueError("EncryptedFileKeyStore requires a passphrase")
        self.directory = directory
        self._passphrase = passphrase
        self._kdf = kdf
        self._iterations = iterations
        os.makedirs(directory, exist_ok=True)

    def _path(self, key: str) -> str:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return os.path.join(self.directory, f"{safe}.json")

    def get(self, key: str) -> Optional[dict]:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        with open(path, "r") as f:
            stored = json.load(f)

        keyfile = stored.pop("keystore", None)
        if keyfile is not None:
            stored["privateKey"] = to_hex(Account.decrypt(keyfile, self._passphrase))
        return stored

    def put(self, key: str, record: dict):
        stored = dict(record)
        private_key = stored.pop("privateKey", None)
        if private_key:
            stored["keystore"] = Account.encrypt(
                private_key,
                self._passphrase,
                kdf=self._kdf,
                iterations=self._iterations,
            )

        path = self._path(key)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(stored, f)
        os.replace(tmp_path, path)
        try:
            os.chmod(path, 0o600)
        except OSError as e:
            logger.debug(f"chmod failed for {path}: {e}")

    def delete(self, key: str):
        path = self._path(key)
        if os.path.exists(path):
            os.remove(path)

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict

from eth_account import Account

from .base import KeyRef
from .local_key import KeySource


class KeystoreKeySource(KeySource):
    """
    Decrypts an Ethereum keystore JSON (scrypt/pbkdf2 + AES) on every call.

    `paths` maps KeyRef names to keystore files; the "" entry is the default.
    The passphrase is read from `password_env` at call time.
    """

    def __init__(self, paths: Dict[str, str], password_env: str = "KEYSTORE_PASSWORD") -> None:  # nosec B107
        if not paths:
            raise ValueError("at least one keystore path is required")
        self._paths = {k: str(Path(v).expanduser()) for k, v in paths.items()}
        self._password_env = password_env

    def _path_for(self, key_ref: KeyRef) -> Path:
        raw = self._paths.get(key_ref.name) or self._paths.get(key_ref.role) or self._paths.get("")
        if not raw:
            raise ValueError(f"no keystore configured for key '{key_ref.name or key_ref.role}'")
        path = Path(raw)
        if not path.exists():
            raise ValueError(f"Keystore file not found: {path}")
        return path

    def load(self, key_ref: KeyRef) -> bytes:
        password = os.getenv(self._password_env)
        if not password:
            raise ValueError(f"{self._password_env} environment variable not set")
        keystore = json.loads(self._path_for(key_ref).read_text())
        secret = bytes(Account.decrypt(keystore, password))
        if len(secret) != 32:
            raise ValueError(f"keystore secret must be 32 bytes, got {len(secret)}")
        return secret

import os
import sys
from typing import Dict

import pytest

# Add project root to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from signing import KeyRef, KeySource, LocalKeySigner, PublicKey
from signing.base import Curve

ETH_PRIVATE_KEY = bytes.fromhex("4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318")


class DictKeySource(KeySource):
    """In-memory key source for tests: KeyRef name (or role) -> 32-byte secret."""

    def __init__(self, secrets: Dict[str, bytes]):
        self.secrets = dict(secrets)
        self.loads = 0

    def load(self, key_ref: KeyRef) -> bytes:
        self.loads += 1
        return self.secrets[key_ref.name or key_ref.role]


def ed25519_public(seed: bytes) -> PublicKey:
    raw = Ed25519PrivateKey.from_private_bytes(seed).public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    return PublicKey(Curve.ED25519, raw)


def seed(n: int) -> bytes:
    return bytes([n]) * 32


@pytest.fixture
def local_signer():
    def _make(secrets: Dict[str, bytes]) -> LocalKeySigner:
        return LocalKeySigner(DictKeySource(secrets))
    return _make


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    # keep a developer's .env / shell from leaking into settings-driven tests
    for name in (
        "SIGNER_TYPE",
        "NETWORK",
        "AUDIT_DB_PATH",
        "CUSTODIAN_API_KEY",
        "CUSTODIAN_SECRET_PATH",
        "CUSTODIAN_VAULT_ACCOUNT_ID",
        "SOLANA_RPC_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("STAKING_API_KEY", "test-api-key")

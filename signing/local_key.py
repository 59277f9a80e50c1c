from __future__ import annotations

import base64
import binascii
import json
import os
import string
from abc import ABC, abstractmethod
from typing import Dict, Optional, Union

import base58
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from eth_keys import keys
from eth_keys.exceptions import ValidationError as KeyValidationError

from errors import SignerMisconfigured
from observability import log_event

from .base import Curve, KeyRef, PublicKey, Signature, SignatureResult, Signer


class KeySource(ABC):
    """
    Resolves a KeyRef to a 32-byte secret (Ed25519 seed or secp256k1 scalar).

    Implementations must read the secret on every call and must not cache it.
    """

    @abstractmethod
    def load(self, key_ref: KeyRef) -> bytes:
        raise NotImplementedError


def _ed25519_public(seed: bytes) -> bytes:
    return Ed25519PrivateKey.from_private_bytes(seed).public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)


def _from_keypair_bytes(curve: Curve, b: bytes) -> bytes:
    if len(b) == 32:
        return b
    if curve is Curve.ED25519 and len(b) == 64:
        # Solana-style secret key: seed || public key
        seed, pub = b[:32], b[32:]
        if _ed25519_public(seed) != pub:
            raise ValueError("ed25519 keypair bytes are inconsistent (public half does not match seed)")
        return seed
    if curve is Curve.ED25519 and len(b) == 33 and b[0] == 0x00:
        # Sui keystore entry: flag(0x00 = ed25519) || seed
        return b[1:]
    raise ValueError(f"unsupported {curve.value} secret length: {len(b)} bytes")


def decode_secret(curve: Curve, raw: str) -> bytes:
    """
    Decode a secret as stored in env/config into 32 raw bytes.

    Accepted encodings: hex (optional 0x), a JSON byte array (Solana CLI keypair file
    contents), base64 `flag || seed` (Sui keystore) and base58 (Solana secret key).
    """
    s = (raw or "").strip()
    if not s:
        raise ValueError("empty secret")
    h = s[2:] if s.startswith(("0x", "0X")) else s
    if len(h) % 2 == 0 and all(c in string.hexdigits for c in h):
        return _from_keypair_bytes(curve, bytes.fromhex(h))
    if s.startswith("["):
        arr = json.loads(s)
        return _from_keypair_bytes(curve, bytes(int(x) for x in arr))
    if curve is Curve.ED25519:
        try:
            b = base64.b64decode(s, validate=True)
        except binascii.Error:
            b = b""
        if len(b) == 33 and b[0] == 0x00:
            return b[1:]
        try:
            return _from_keypair_bytes(curve, base58.b58decode(s))
        except ValueError as e:
            raise ValueError(f"unrecognized ed25519 secret encoding: {e}") from e
    raise ValueError("secp256k1 secrets must be hex-encoded")


class EnvKeySource(KeySource):
    """
    Reads secrets from environment variables at call time.

    `names` maps KeyRef names to env var names; an unmapped name is used as the env var itself.
    """

    def __init__(self, names: Optional[Dict[str, str]] = None) -> None:
        self._names = dict(names or {})

    def env_var_for(self, key_ref: KeyRef) -> str:
        name = key_ref.name or key_ref.role
        return self._names.get(name, name)

    def load(self, key_ref: KeyRef) -> bytes:
        env_var = self.env_var_for(key_ref)
        raw = os.getenv(env_var)
        if not raw:
            raise ValueError(f"{env_var} environment variable not set")
        return decode_secret(key_ref.curve, raw)


class LocalKeySigner(Signer):
    """
    Signs with key material held in process memory for the duration of one call.

    A key that cannot be loaded or decoded surfaces as SignerMisconfigured.
    """

    def __init__(self, key_source: KeySource) -> None:
        self._source = key_source

    def _private_key(self, key_ref: KeyRef) -> Union[Ed25519PrivateKey, keys.PrivateKey]:
        try:
            secret = self._source.load(key_ref)
            if key_ref.curve is Curve.ED25519:
                return Ed25519PrivateKey.from_private_bytes(secret)
            return keys.PrivateKey(secret)
        except (ValueError, KeyValidationError) as e:
            raise SignerMisconfigured(
                f"cannot load {key_ref.curve.value} key for role '{key_ref.role}': {e}",
                {"role": key_ref.role, "key": key_ref.name or key_ref.role},
            ) from e

    def sign(self, digest: bytes, key_ref: KeyRef) -> SignatureResult:
        if key_ref.curve is Curve.SECP256K1 and len(digest) != 32:
            raise ValueError(f"secp256k1 signing requires a 32-byte digest, got {len(digest)}")
        sk = self._private_key(key_ref)
        if isinstance(sk, Ed25519PrivateKey):
            sig = Signature(Curve.ED25519, sk.sign(digest))
            pub = PublicKey(Curve.ED25519, sk.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw))
        else:
            raw_sig = sk.sign_msg_hash(digest)
            value = raw_sig.r.to_bytes(32, "big") + raw_sig.s.to_bytes(32, "big")
            sig = Signature(Curve.SECP256K1, value, raw_sig.v)
            pub = PublicKey(Curve.SECP256K1, sk.public_key.to_bytes())
        log_event(
            "local_signature",
            data={"role": key_ref.role, "curve": key_ref.curve.value, "public_key": pub.hex()},
            level="debug",
        )
        return SignatureResult(key_ref.role, sig, pub)

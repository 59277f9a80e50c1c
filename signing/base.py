from __future__ import annotations

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from eth_keys import keys

from errors import OperationCancelled
from polling import CancelToken

from .intents import SigningIntent


class Curve(Enum):
    ED25519 = "ed25519"
    SECP256K1 = "secp256k1"


def strip_hex(value: str) -> str:
    s = value.strip()
    if s.startswith(("0x", "0X")):
        s = s[2:]
    return s


def hex_to_bytes(value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        return value
    return bytes.fromhex(strip_hex(value))


@dataclass(frozen=True)
class PublicKey:
    """
    Canonical public key bytes.

    Ed25519: 32 raw bytes. secp256k1: 64-byte uncompressed x||y (no 0x04 prefix).
    """

    curve: Curve
    value: bytes

    @classmethod
    def normalize(cls, curve: Curve, raw: str | bytes) -> "PublicKey":
        b = hex_to_bytes(raw)
        if curve is Curve.ED25519:
            if len(b) == 33 and b[0] == 0x00:
                b = b[1:]
            if len(b) != 32:
                raise ValueError(f"ed25519 public key must be 32 bytes, got {len(b)}")
            return cls(curve, b)
        if len(b) == 33:
            return cls(curve, keys.PublicKey.from_compressed_bytes(b).to_bytes())
        if len(b) == 65 and b[0] == 0x04:
            b = b[1:]
        if len(b) != 64:
            raise ValueError(f"secp256k1 public key must be 33, 64 or 65 bytes, got {len(b)}")
        return cls(curve, b)

    def hex(self) -> str:
        return self.value.hex()


@dataclass(frozen=True)
class Signature:
    """
    64-byte signature (Ed25519, or secp256k1 r||s) plus the secp256k1 recovery id when known.
    """

    curve: Curve
    value: bytes
    recovery_id: Optional[int] = None

    @classmethod
    def from_hex(cls, curve: Curve, raw: str | bytes, recovery_id: Optional[int] = None) -> "Signature":
        b = hex_to_bytes(raw)
        if curve is Curve.SECP256K1 and len(b) == 65 and recovery_id is None:
            v = b[64]
            recovery_id = v - 27 if v >= 27 else v
            b = b[:64]
        if len(b) != 64:
            raise ValueError(f"{curve.value} signature must be 64 bytes, got {len(b)}")
        if recovery_id is not None and recovery_id not in (0, 1):
            raise ValueError(f"invalid recovery id: {recovery_id}")
        return cls(curve, b, recovery_id)

    @property
    def r(self) -> int:
        return int.from_bytes(self.value[:32], "big")

    @property
    def s(self) -> int:
        return int.from_bytes(self.value[32:], "big")

    def hex(self) -> str:
        return self.value.hex()


@dataclass(frozen=True)
class KeyRef:
    """
    Which key should sign for a given role.

    `name` is resolved by the signer's key source (local signers) and the bip44
    hints select the derived key inside a custodian vault account.
    """

    role: str
    curve: Curve
    name: str = ""
    bip44_change: int = 0
    bip44_address_index: int = 0


@dataclass(frozen=True)
class SigningRequest:
    role: str
    digest: bytes
    key_ref: KeyRef


@dataclass(frozen=True)
class SignatureResult:
    role: str
    signature: Signature
    public_key: PublicKey


class Signer(ABC):
    """
    Signs opaque digests. Implementations never see the transaction, only the bytes to sign.
    """

    max_workers: int = 4

    @abstractmethod
    def sign(self, digest: bytes, key_ref: KeyRef) -> SignatureResult:
        raise NotImplementedError

    def sign_many(
        self,
        requests: Sequence[SigningRequest],
        *,
        intent: Optional[SigningIntent] = None,
        cancel: Optional[CancelToken] = None,
    ) -> List[SignatureResult]:
        """
        Sign several independent requests; results are returned in request order and
        each carries the role of the request that produced it.
        """
        if cancel is not None and cancel.cancelled:
            raise OperationCancelled("signing cancelled before it started", {"roles": [r.role for r in requests]})
        if len(requests) <= 1:
            results = [self.sign(r.digest, r.key_ref) for r in requests]
        else:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(requests))) as pool:
                futures = [pool.submit(self.sign, r.digest, r.key_ref) for r in requests]
                results = [f.result() for f in futures]
        if cancel is not None and cancel.cancelled:
            raise OperationCancelled("signing cancelled; signatures discarded", {"roles": [r.role for r in requests]})
        return [SignatureResult(req.role, res.signature, res.public_key) for req, res in zip(requests, results)]


@dataclass(frozen=True)
class Witness:
    """A (role, public key, signature) triple ready to be embedded in a transaction."""

    role: str
    public_key: PublicKey
    signature: Signature

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "role": self.role,
            "curve": self.public_key.curve.value,
            "public_key": self.public_key.hex(),
            "signature": self.signature.hex(),
        }
        if self.signature.recovery_id is not None:
            out["recovery_id"] = self.signature.recovery_id
        return out

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Witness":
        curve = Curve(str(d["curve"]))
        return cls(
            role=str(d["role"]),
            public_key=PublicKey.normalize(curve, str(d["public_key"])),
            signature=Signature.from_hex(curve, str(d["signature"]), d.get("recovery_id")),
        )

    @classmethod
    def from_result(cls, result: SignatureResult) -> "Witness":
        return cls(result.role, result.public_key, result.signature)

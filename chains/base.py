from __future__ import annotations

import base64
import binascii
import dataclasses
import string
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from errors import IncompleteWitnessSet, MalformedTransaction, UnknownSignerRole
from signing.base import Curve, Witness, strip_hex
from signing.verifier import SignatureVerifier


class ChainKind(Enum):
    ETHEREUM = "ethereum"
    SOLANA = "solana"
    CARDANO = "cardano"
    SUI = "sui"

    @classmethod
    def parse(cls, value: "ChainKind | str") -> "ChainKind":
        if isinstance(value, ChainKind):
            return value
        v = str(value or "").strip().lower()
        for kind in cls:
            if kind.value == v or kind.name.lower() == v:
                return kind
        raise ValueError(f"Unsupported chain: {value}")

    @property
    def curve(self) -> Curve:
        return Curve.SECP256K1 if self is ChainKind.ETHEREUM else Curve.ED25519


def _frozen(d: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(d or {}))


@dataclass(frozen=True)
class UnsignedTransaction:
    """
    Chain-native unsigned blob as received from upstream, plus what the adapter learned decoding it.

    `raw` is never modified; adapters re-decode it whenever they need fields.
    """

    chain: ChainKind
    raw: bytes
    required_roles: Tuple[str, ...]
    summary: Mapping[str, Any] = field(default_factory=lambda: _frozen(None))
    context: Mapping[str, Any] = field(default_factory=lambda: _frozen(None))

    def raw_hex(self) -> str:
        return self.raw.hex()


@dataclass(frozen=True)
class SigningDigest:
    chain: ChainKind
    value: bytes

    def hex(self) -> str:
        return self.value.hex()


@dataclass(frozen=True)
class SignedTransaction:
    chain: ChainKind
    unsigned: UnsignedTransaction
    witnesses: Tuple[Witness, ...]
    payload: bytes
    serialized_signatures: Tuple[str, ...]
    transaction_hash: str

    def payload_hex(self) -> str:
        return self.payload.hex()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": self.chain.value,
            "payload": self.payload.hex(),
            "signatures": list(self.serialized_signatures),
            "transaction_hash": self.transaction_hash,
            "witnesses": [w.to_dict() for w in self.witnesses],
        }


@dataclass(frozen=True)
class PartiallySignedTransaction:
    """
    Some but not all required roles carry a verified witness.

    A hand-off artifact, not an error: `to_dict()` is JSON-safe and `from_dict()`
    rebuilds it (re-parsing the unsigned blob) for another signer to resume.
    """

    unsigned: UnsignedTransaction
    witnesses: Tuple[Witness, ...]
    missing_roles: Tuple[str, ...]
    payload: Optional[bytes] = None

    @property
    def chain(self) -> ChainKind:
        return self.unsigned.chain

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": self.unsigned.chain.value,
            "unsigned_transaction": self.unsigned.raw.hex(),
            "context": dict(self.unsigned.context),
            "witnesses": [w.to_dict() for w in self.witnesses],
            "missing_roles": list(self.missing_roles),
            "payload": self.payload.hex() if self.payload is not None else None,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "PartiallySignedTransaction":
        from . import get_adapter

        adapter = get_adapter(ChainKind.parse(str(d["chain"])))
        unsigned = adapter.parse_unsigned(str(d["unsigned_transaction"]), **dict(d.get("context") or {}))
        witnesses = [Witness.from_dict(w) for w in d.get("witnesses") or []]
        return adapter.assemble_partial(unsigned, witnesses)


def decode_blob(data: bytes | str) -> bytes:
    """
    Accept raw bytes, hex (optional 0x) or base64 text.
    """
    if isinstance(data, (bytes, bytearray, memoryview)):
        b = bytes(data)
    else:
        s = str(data or "").strip()
        h = strip_hex(s)
        if h and len(h) % 2 == 0 and all(c in string.hexdigits for c in h):
            b = bytes.fromhex(h)
        else:
            try:
                b = base64.b64decode(s, validate=True)
            except (binascii.Error, ValueError) as e:
                raise MalformedTransaction("transaction is neither hex nor base64", {"kind": "encoding"}) from e
    if not b:
        raise MalformedTransaction("empty transaction blob", {"kind": "encoding"})
    return b


class ChainAdapter(ABC):
    """
    Chain-specific knowledge of the unsigned blob: what to sign, who must sign, and how
    signatures are put back on the wire.

    Subclasses implement decoding, digest derivation, role resolution and the
    chain-native assembly; witness bookkeeping and verification live here.
    """

    chain: ChainKind

    def __init__(self, verifier: Optional[SignatureVerifier] = None) -> None:
        self._verifier = verifier or SignatureVerifier()

    @property
    def curve(self) -> Curve:
        return self.chain.curve

    @abstractmethod
    def parse_unsigned(self, data: bytes | str, **context: Any) -> UnsignedTransaction:
        raise NotImplementedError

    @abstractmethod
    def derive_digest(self, unsigned: UnsignedTransaction) -> SigningDigest:
        raise NotImplementedError

    def matches_signing_payload(self, unsigned: UnsignedTransaction, payload: bytes | str) -> bool:
        """Cross-check an upstream-supplied signing payload against the locally derived digest."""
        try:
            b = decode_blob(payload)
        except MalformedTransaction:
            return False
        return b == self.derive_digest(unsigned).value

    def existing_witnesses(self, unsigned: UnsignedTransaction) -> Tuple[Witness, ...]:
        return ()

    def canonical_role(self, unsigned: UnsignedTransaction, role: str) -> str:
        return role

    @abstractmethod
    def resolve_role(self, unsigned: UnsignedTransaction, witness: Witness) -> str:
        """Return the required role this witness fills, or raise UnknownSignerRole."""
        raise NotImplementedError

    @abstractmethod
    def _assemble(self, unsigned: UnsignedTransaction, by_role: Dict[str, Witness]) -> SignedTransaction:
        raise NotImplementedError

    def _partial_payload(self, unsigned: UnsignedTransaction, by_role: Dict[str, Witness]) -> Optional[bytes]:
        return None

    @abstractmethod
    def extract_witnesses(self, signed: SignedTransaction) -> Tuple[Witness, ...]:
        raise NotImplementedError

    def missing_roles(self, unsigned: UnsignedTransaction, witnesses: Iterable[Witness]) -> Tuple[str, ...]:
        present = {w.role for w in witnesses}
        return tuple(r for r in unsigned.required_roles if r not in present)

    def collect(self, unsigned: UnsignedTransaction, witnesses: Iterable[Witness]) -> Dict[str, Witness]:
        """
        Merge pre-existing and supplied witnesses into one verified witness per required role.

        Supplied witnesses override pre-existing ones for the same role.
        """
        digest = self.derive_digest(unsigned)
        by_role: Dict[str, Witness] = {}
        for w in list(self.existing_witnesses(unsigned)) + list(witnesses):
            if w.public_key.curve is not self.curve or w.signature.curve is not self.curve:
                raise UnknownSignerRole(
                    f"{self.chain.value} expects {self.curve.value} keys, got {w.public_key.curve.value}",
                    {"role": w.role, "public_key": w.public_key.hex()},
                )
            role = self.resolve_role(unsigned, w)
            if role != w.role:
                w = dataclasses.replace(w, role=role)
            by_role[role] = self._verifier.require_valid(digest.value, w, stage="ASSEMBLED")
        return by_role

    def _ordered(self, unsigned: UnsignedTransaction, by_role: Mapping[str, Witness]) -> Tuple[Witness, ...]:
        return tuple(by_role[r] for r in unsigned.required_roles if r in by_role)

    def assemble_signed(self, unsigned: UnsignedTransaction, witnesses: Iterable[Witness]) -> SignedTransaction:
        by_role = self.collect(unsigned, witnesses)
        missing = self.missing_roles(unsigned, by_role.values())
        if missing:
            raise IncompleteWitnessSet(
                f"missing witnesses for roles: {', '.join(missing)}",
                {"present": sorted(by_role)},
                stage="ASSEMBLED",
                missing_roles=missing,
            )
        return self._assemble(unsigned, by_role)

    def assemble_partial(self, unsigned: UnsignedTransaction, witnesses: Iterable[Witness]) -> PartiallySignedTransaction:
        by_role = self.collect(unsigned, witnesses)
        return PartiallySignedTransaction(
            unsigned=unsigned,
            witnesses=self._ordered(unsigned, by_role),
            missing_roles=self.missing_roles(unsigned, by_role.values()),
            payload=self._partial_payload(unsigned, by_role),
        )


def unknown_role(chain: ChainKind, witness: Witness, expected: List[str]) -> UnknownSignerRole:
    return UnknownSignerRole(
        f"public key {witness.public_key.hex()} does not match any required {chain.value} signer",
        {"role": witness.role, "public_key": witness.public_key.hex(), "expected": expected},
    )

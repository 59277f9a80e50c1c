from __future__ import annotations

import hashlib
import io
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import cbor2

from errors import MalformedTransaction
from signing.base import Curve, PublicKey, Signature, Witness

from .base import ChainAdapter, ChainKind, SignedTransaction, SigningDigest, UnsignedTransaction, _frozen, decode_blob, unknown_role

PAYMENT = "payment"
STAKE = "stake"

# certificate kinds whose stake credential must witness the transaction
_WITNESSED_CERTS = frozenset({1, 2, 7, 8, 9, 10, 11, 12, 13})
_VKEY_WITNESSES = 0


def blake2b224(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=28).digest()


def _entries(value: Any) -> List[Any]:
    if isinstance(value, cbor2.CBORTag):
        value = value.value
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return []


def _decode(raw: bytes) -> List[Any]:
    try:
        tx = cbor2.loads(raw)
    except (cbor2.CBORDecodeError, ValueError) as e:
        raise MalformedTransaction(f"invalid CBOR: {e}", {"kind": "cbor"}) from e
    if not isinstance(tx, list) or len(tx) not in (3, 4):
        raise MalformedTransaction("Cardano transaction must be a 3 or 4 element array", {"kind": "cbor"})
    body, ws = tx[0], tx[1]
    if not isinstance(body, dict) or not all(k in body for k in (0, 1, 2)):
        raise MalformedTransaction("transaction body must be a map with inputs, outputs and fee", {"kind": "cbor"})
    if not isinstance(ws, dict):
        raise MalformedTransaction("witness set must be a map", {"kind": "cbor"})
    return tx


def _item_spans(raw: bytes) -> List[Tuple[int, int]]:
    """
    Byte ranges of the top-level transaction items exactly as they were encoded.
    """
    head = raw[0]
    if head in (0x83, 0x84):
        count: Optional[int] = head & 0x1F
    elif head == 0x9F:
        count = None
    else:
        raise MalformedTransaction("Cardano transaction must start with a 3 or 4 element array header", {"kind": "cbor"})
    fp = io.BytesIO(raw)
    fp.seek(1)
    decoder = cbor2.CBORDecoder(fp)
    spans: List[Tuple[int, int]] = []
    while (count is None and raw[fp.tell() : fp.tell() + 1] != b"\xff") or (count is not None and len(spans) < count):
        start = fp.tell()
        try:
            decoder.decode()
        except (cbor2.CBORDecodeError, ValueError) as e:
            raise MalformedTransaction(f"invalid CBOR: {e}", {"kind": "cbor"}) from e
        spans.append((start, fp.tell()))
    return spans


def stake_key_hashes(body: Dict[Any, Any]) -> FrozenSet[bytes]:
    """
    Key hashes of stake credentials that certificates or reward withdrawals in `body` require as witnesses.
    """
    hashes = set()
    for cert in _entries(body.get(4)):
        if not isinstance(cert, (list, tuple)) or len(cert) < 2 or cert[0] not in _WITNESSED_CERTS:
            continue
        cred = cert[1]
        if isinstance(cred, (list, tuple)) and len(cred) == 2 and cred[0] == 0 and isinstance(cred[1], bytes):
            hashes.add(bytes(cred[1]))
    withdrawals = body.get(5)
    if isinstance(withdrawals, dict):
        for addr in withdrawals:
            # reward address header 0xe0/0xe1: key-hash stake credential
            if isinstance(addr, bytes) and len(addr) == 29 and addr[0] >> 4 == 0xE:
                hashes.add(bytes(addr[1:29]))
    return frozenset(hashes)


def vkey_witness_hex(witness: Witness) -> str:
    return cbor2.dumps([witness.public_key.value, witness.signature.value]).hex()


class CardanoAdapter(ChainAdapter):
    """
    Signs the Blake2b-256 hash of the transaction body bytes as the API encoded them.

    Assembly replaces only the witness set; the body, validity flag and auxiliary
    data keep their original bytes, so the body that reaches the chain is exactly
    the one that was hashed.
    """

    chain = ChainKind.CARDANO

    def parse_unsigned(self, data: bytes | str, **context: Any) -> UnsignedTransaction:
        raw = decode_blob(data)
        tx = _decode(raw)
        _item_spans(raw)
        body = tx[0]
        stake = stake_key_hashes(body)
        roles: Tuple[str, ...] = (PAYMENT, STAKE) if stake else (PAYMENT,)
        summary = {
            "era": "alonzo+" if len(tx) == 4 else "shelley",
            "inputs": len(_entries(body.get(0))),
            "outputs": len(_entries(body.get(1))),
            "fee": body.get(2),
            "ttl": body.get(3),
            "certificates": len(_entries(body.get(4))),
            "stake_key_hashes": sorted(h.hex() for h in stake),
        }
        return UnsignedTransaction(self.chain, raw, roles, _frozen(summary), _frozen(None))

    def body_bytes(self, unsigned: UnsignedTransaction) -> bytes:
        start, end = _item_spans(unsigned.raw)[0]
        return unsigned.raw[start:end]

    def derive_digest(self, unsigned: UnsignedTransaction) -> SigningDigest:
        return SigningDigest(self.chain, hashlib.blake2b(self.body_bytes(unsigned), digest_size=32).digest())

    def _stake_hashes(self, unsigned: UnsignedTransaction) -> FrozenSet[bytes]:
        return frozenset(bytes.fromhex(h) for h in unsigned.summary["stake_key_hashes"])

    def _role_of(self, unsigned: UnsignedTransaction, public_key: PublicKey) -> str:
        return STAKE if blake2b224(public_key.value) in self._stake_hashes(unsigned) else PAYMENT

    def _split(self, unsigned: UnsignedTransaction, vkeys: List[Any]) -> Tuple[List[Witness], List[Any]]:
        """Sort raw [vkey, sig] pairs into role witnesses and extra entries kept verbatim."""
        found: List[Witness] = []
        extra: List[Any] = []
        seen = set()
        for entry in vkeys:
            if not isinstance(entry, (list, tuple)) or len(entry) != 2:
                raise MalformedTransaction("vkey witness must be a [vkey, signature] pair", {"kind": "cbor"})
            vk, sig = bytes(entry[0]), bytes(entry[1])
            if len(vk) != 32 or len(sig) != 64:
                raise MalformedTransaction("vkey witness has wrong key or signature length", {"kind": "cbor"})
            pub = PublicKey(Curve.ED25519, vk)
            role = self._role_of(unsigned, pub)
            if role in seen:
                extra.append([vk, sig])
                continue
            seen.add(role)
            found.append(Witness(role, pub, Signature(Curve.ED25519, sig)))
        return found, extra

    def existing_witnesses(self, unsigned: UnsignedTransaction) -> Tuple[Witness, ...]:
        ws = _decode(unsigned.raw)[1]
        found, _ = self._split(unsigned, _entries(ws.get(_VKEY_WITNESSES)))
        return tuple(found)

    def resolve_role(self, unsigned: UnsignedTransaction, witness: Witness) -> str:
        role = self._role_of(unsigned, witness.public_key)
        if witness.role == STAKE and role != STAKE:
            raise unknown_role(self.chain, witness, list(unsigned.summary["stake_key_hashes"]))
        return role

    def _encode(self, unsigned: UnsignedTransaction, by_role: Dict[str, Witness]) -> Tuple[bytes, Tuple[Witness, ...]]:
        tx = _decode(unsigned.raw)
        ws = dict(tx[1])
        _, extra = self._split(unsigned, _entries(ws.get(_VKEY_WITNESSES)))
        ordered = self._ordered(unsigned, by_role)
        vkeys = [[w.public_key.value, w.signature.value] for w in ordered] + extra
        if vkeys:
            ws[_VKEY_WITNESSES] = vkeys
        raw = unsigned.raw
        start, end = _item_spans(raw)[1]
        return raw[:start] + cbor2.dumps(ws, canonical=True) + raw[end:], ordered

    def _partial_payload(self, unsigned: UnsignedTransaction, by_role: Dict[str, Witness]) -> bytes:
        payload, _ = self._encode(unsigned, by_role)
        return payload

    def _assemble(self, unsigned: UnsignedTransaction, by_role: Dict[str, Witness]) -> SignedTransaction:
        payload, ordered = self._encode(unsigned, by_role)
        return SignedTransaction(
            chain=self.chain,
            unsigned=unsigned,
            witnesses=ordered,
            payload=payload,
            serialized_signatures=tuple(vkey_witness_hex(w) for w in ordered),
            transaction_hash=self.derive_digest(unsigned).hex(),
        )

    def extract_witnesses(self, signed: SignedTransaction) -> Tuple[Witness, ...]:
        ws = _decode(signed.payload)[1]
        found, _ = self._split(signed.unsigned, _entries(ws.get(_VKEY_WITNESSES)))
        order = {r: i for i, r in enumerate(signed.unsigned.required_roles)}
        return tuple(sorted(found, key=lambda w: order.get(w.role, len(order))))

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import rlp
from eth_keys import keys
from eth_utils import keccak, to_checksum_address
from rlp.exceptions import DecodingError

from errors import MalformedTransaction
from signing.base import Curve, PublicKey, Signature, Witness
from signing.verifier import normalize_low_s, recover_secp256k1

from .base import ChainAdapter, ChainKind, SignedTransaction, SigningDigest, UnsignedTransaction, _frozen, decode_blob, unknown_role

SENDER = "sender"

# unsigned field layouts per envelope type
_TYPED_FIELDS = {
    1: ("chainId", "nonce", "gasPrice", "gas", "to", "value", "data", "accessList"),
    2: ("chainId", "nonce", "maxPriorityFeePerGas", "maxFeePerGas", "gas", "to", "value", "data", "accessList"),
}
_LEGACY_FIELDS = ("nonce", "gasPrice", "gas", "to", "value", "data")


def _rlp_int(i: int) -> bytes:
    if i == 0:
        return b""
    return int(i).to_bytes((int(i).bit_length() + 7) // 8, "big")


def _to_int(v: Any, *, name: str) -> int:
    if v is None:
        raise ValueError(f"Missing required tx field: {name}")
    if isinstance(v, bool):
        raise ValueError(f"Invalid int field {name}: {v}")
    if isinstance(v, int):
        return v
    if isinstance(v, str):
        s = v.strip().lower()
        if s.startswith("0x"):
            return int(s, 16)
        return int(s, 10)
    raise ValueError(f"Invalid int field {name}: {type(v).__name__}")


def _to_bytes(v: Any, *, name: str) -> bytes:
    if v is None:
        return b""
    if isinstance(v, bytes):
        return v
    if isinstance(v, str):
        s = v.strip()
        if s.startswith("0x"):
            s = s[2:]
        if s == "":
            return b""
        return bytes.fromhex(s)
    raise ValueError(f"Invalid bytes field {name}: {type(v).__name__}")


def _to_address_bytes(v: Any) -> bytes:
    b = _to_bytes(v, name="to")
    if b and len(b) != 20:
        raise ValueError("to must be 20 bytes")
    return b


def _access_list(v: Any) -> List[Any]:
    out: List[Any] = []
    for entry in v or []:
        if isinstance(entry, dict):
            addr, slots = entry.get("address"), entry.get("storageKeys") or []
        else:
            addr, slots = entry
        out.append([_to_address_bytes(addr), [_to_bytes(s, name="storageKey") for s in slots]])
    return out


def encode_unsigned(tx: Dict[str, Any]) -> bytes:
    """
    Serialize a web3-style tx dict into its unsigned signing encoding.

    Type is taken from `type`, else inferred (EIP-1559 fee fields -> 2, accessList -> 1, else legacy).
    Legacy transactions with a chainId use the EIP-155 9-field form.
    """
    tx_type = tx.get("type")
    if isinstance(tx_type, str):
        tx_type = int(tx_type, 16) if tx_type.startswith("0x") else int(tx_type)
    if tx_type is None:
        if "maxFeePerGas" in tx or "maxPriorityFeePerGas" in tx:
            tx_type = 2
        elif "accessList" in tx:
            tx_type = 1
        else:
            tx_type = 0

    if tx_type == 0:
        fields: List[Any] = [
            _rlp_int(_to_int(tx.get("nonce"), name="nonce")),
            _rlp_int(_to_int(tx.get("gasPrice"), name="gasPrice")),
            _rlp_int(_to_int(tx.get("gas"), name="gas")),
            _to_address_bytes(tx.get("to")),
            _rlp_int(_to_int(tx.get("value", 0), name="value")),
            _to_bytes(tx.get("data", b""), name="data"),
        ]
        if tx.get("chainId") is not None:
            fields += [_rlp_int(_to_int(tx.get("chainId"), name="chainId")), b"", b""]
        return rlp.encode(fields)

    if tx_type not in _TYPED_FIELDS:
        raise ValueError(f"Unsupported tx type: {tx_type} (supported: 0, 1, 2)")
    fields = []
    for name in _TYPED_FIELDS[tx_type]:
        if name == "to":
            fields.append(_to_address_bytes(tx.get("to")))
        elif name == "data":
            fields.append(_to_bytes(tx.get("data", b""), name="data"))
        elif name == "accessList":
            fields.append(_access_list(tx.get("accessList")))
        elif name == "value":
            fields.append(_rlp_int(_to_int(tx.get("value", 0), name="value")))
        else:
            fields.append(_rlp_int(_to_int(tx.get(name), name=name)))
    return bytes([tx_type]) + rlp.encode(fields)


def address_of(public_key: PublicKey) -> str:
    return keys.PublicKey(public_key.value).to_checksum_address()


class EthereumAdapter(ChainAdapter):
    chain = ChainKind.ETHEREUM

    def _decode(self, raw: bytes) -> Tuple[int, List[Any]]:
        if not raw:
            raise MalformedTransaction("empty transaction", {"kind": "rlp"})
        if raw[0] >= 0xC0:
            tx_type, body = 0, raw
        elif raw[0] in _TYPED_FIELDS:
            tx_type, body = raw[0], raw[1:]
        else:
            raise MalformedTransaction(f"unsupported transaction envelope type 0x{raw[0]:02x}", {"kind": "envelope"})
        try:
            fields = rlp.decode(body)
        except DecodingError as e:
            raise MalformedTransaction(f"invalid RLP: {e}", {"kind": "rlp"}) from e
        if not isinstance(fields, list):
            raise MalformedTransaction("transaction payload is not an RLP list", {"kind": "rlp"})

        if tx_type == 0:
            if len(fields) == 9 and (fields[7] or fields[8]):
                raise MalformedTransaction("legacy transaction is already signed", {"kind": "signed_input"})
            if len(fields) not in (6, 9):
                raise MalformedTransaction(f"legacy transaction must have 6 or 9 fields, got {len(fields)}", {"kind": "rlp"})
            names: Tuple[str, ...] = _LEGACY_FIELDS + (("chainId", "r", "s") if len(fields) == 9 else ())
        else:
            names = _TYPED_FIELDS[tx_type]
            if len(fields) == len(names) + 3:
                raise MalformedTransaction("typed transaction is already signed", {"kind": "signed_input"})
            if len(fields) != len(names):
                raise MalformedTransaction(
                    f"type {tx_type} transaction must have {len(names)} fields, got {len(fields)}", {"kind": "rlp"}
                )
        for name, value in zip(names, fields):
            if name == "accessList":
                if not isinstance(value, list):
                    raise MalformedTransaction("accessList must be a list", {"kind": "rlp"})
            elif not isinstance(value, bytes):
                raise MalformedTransaction(f"field {name} must be a byte string", {"kind": "rlp"})
            elif name == "to" and len(value) not in (0, 20):
                raise MalformedTransaction("to must be empty or 20 bytes", {"kind": "rlp"})
        return tx_type, fields

    @staticmethod
    def _chain_id(tx_type: int, fields: List[Any]) -> Optional[int]:
        if tx_type == 0:
            return int.from_bytes(fields[6], "big") if len(fields) == 9 else None
        return int.from_bytes(fields[0], "big")

    def parse_unsigned(self, data: bytes | str, **context: Any) -> UnsignedTransaction:
        raw = decode_blob(data)
        tx_type, fields = self._decode(raw)
        names = _LEGACY_FIELDS if tx_type == 0 else _TYPED_FIELDS[tx_type]
        decoded = dict(zip(names, fields))
        summary: Dict[str, Any] = {
            "type": tx_type,
            "chain_id": self._chain_id(tx_type, fields),
            "nonce": int.from_bytes(decoded["nonce"], "big"),
            "gas": int.from_bytes(decoded["gas"], "big"),
            "to": to_checksum_address(decoded["to"]) if decoded["to"] else None,
            "value": int.from_bytes(decoded["value"], "big"),
            "data_len": len(decoded["data"]),
        }
        ctx: Dict[str, Any] = {}
        if context.get("expected_sender"):
            ctx["expected_sender"] = to_checksum_address(str(context["expected_sender"]))
        return UnsignedTransaction(self.chain, raw, (SENDER,), _frozen(summary), _frozen(ctx))

    def derive_digest(self, unsigned: UnsignedTransaction) -> SigningDigest:
        tx_type, fields = self._decode(unsigned.raw)
        prefix = b"" if tx_type == 0 else bytes([tx_type])
        return SigningDigest(self.chain, keccak(prefix + rlp.encode(fields)))

    def resolve_role(self, unsigned: UnsignedTransaction, witness: Witness) -> str:
        expected = unsigned.context.get("expected_sender")
        if expected and address_of(witness.public_key) != expected:
            raise unknown_role(self.chain, witness, [expected])
        return SENDER

    def _assemble(self, unsigned: UnsignedTransaction, by_role: Dict[str, Witness]) -> SignedTransaction:
        tx_type, fields = self._decode(unsigned.raw)
        digest = self.derive_digest(unsigned)
        witness = by_role[SENDER]
        sig = normalize_low_s(witness.signature)
        recid = recover_secp256k1(digest.value, sig, witness.public_key)
        if recid is None:
            raise ValueError("signature does not recover to the witness public key")
        r, s = sig.r, sig.s
        if tx_type == 0:
            chain_id = self._chain_id(tx_type, fields)
            v = 27 + recid if chain_id is None else recid + 35 + 2 * chain_id
            raw = rlp.encode(list(fields[:6]) + [_rlp_int(v), _rlp_int(r), _rlp_int(s)])
        else:
            raw = bytes([tx_type]) + rlp.encode(list(fields) + [_rlp_int(recid), _rlp_int(r), _rlp_int(s)])
        canonical = Witness(SENDER, witness.public_key, Signature(Curve.SECP256K1, sig.value, recid))
        return SignedTransaction(
            chain=self.chain,
            unsigned=unsigned,
            witnesses=(canonical,),
            payload=raw,
            serialized_signatures=((sig.value + bytes([27 + recid])).hex(),),
            transaction_hash="0x" + keccak(raw).hex(),
        )

    def extract_witnesses(self, signed: SignedTransaction) -> Tuple[Witness, ...]:
        raw = signed.payload
        try:
            if raw[0] >= 0xC0:
                fields = rlp.decode(raw)
                v = int.from_bytes(fields[6], "big")
                recid = v - 27 if v in (27, 28) else (v - 35) % 2
            else:
                fields = rlp.decode(raw[1:])
                recid = int.from_bytes(fields[-3], "big")
        except (DecodingError, IndexError) as e:
            raise MalformedTransaction(f"invalid signed transaction: {e}", {"kind": "rlp"}) from e
        r = int.from_bytes(fields[-2], "big")
        s = int.from_bytes(fields[-1], "big")
        digest = self.derive_digest(signed.unsigned)
        pub = keys.Signature(vrs=(recid, r, s)).recover_public_key_from_msg_hash(digest.value)
        sig = Signature(Curve.SECP256K1, r.to_bytes(32, "big") + s.to_bytes(32, "big"), recid)
        return (Witness(SENDER, PublicKey(Curve.SECP256K1, pub.to_bytes()), sig),)

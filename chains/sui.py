from __future__ import annotations

import base64
import hashlib
from typing import Any, Dict, List, Optional, Tuple

import base58

from errors import MalformedTransaction
from signing.base import Curve, PublicKey, Signature, Witness

from .base import ChainAdapter, ChainKind, SignedTransaction, SigningDigest, UnsignedTransaction, _frozen, decode_blob, unknown_role
from .bcs import BcsError, BcsReader

SENDER = "sender"
SPONSOR = "sponsor"

# IntentScope::TransactionData, IntentVersion::V0, AppId::Sui
TRANSACTION_INTENT = bytes([0x00, 0x00, 0x00])
ED25519_FLAG = 0x00

_COMMANDS = ("MoveCall", "TransferObjects", "SplitCoins", "MergeCoins", "Publish", "MakeMoveVec", "Upgrade")


def blake2b256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


def sui_address(public_key: PublicKey) -> str:
    return "0x" + blake2b256(bytes([ED25519_FLAG]) + public_key.value).hex()


def serialize_signature(witness: Witness) -> str:
    return base64.b64encode(bytes([ED25519_FLAG]) + witness.signature.value + witness.public_key.value).decode("ascii")


def parse_serialized_signature(value: str) -> Tuple[PublicKey, Signature]:
    raw = base64.b64decode(value)
    if len(raw) != 97 or raw[0] != ED25519_FLAG:
        raise ValueError("only ed25519 serialized signatures (flag 0x00, 97 bytes) are supported")
    return PublicKey(Curve.ED25519, raw[65:]), Signature(Curve.ED25519, raw[1:65])


def _hex_addr(b: bytes) -> str:
    return "0x" + b.hex()


def _object_ref(r: BcsReader) -> Dict[str, Any]:
    object_id = r.address()
    version = r.u64()
    digest = r.bytes()
    if len(digest) != 32:
        raise BcsError(f"object digest must be 32 bytes, got {len(digest)}")
    return {"object_id": _hex_addr(object_id), "version": version, "digest": base58.b58encode(digest).decode()}


def _type_tag(r: BcsReader) -> str:
    tag = r.variant("TypeTag", 11)
    primitives = {0: "bool", 1: "u8", 2: "u64", 3: "u128", 4: "address", 5: "signer", 8: "u16", 9: "u32", 10: "u256"}
    if tag in primitives:
        return primitives[tag]
    if tag == 6:
        return f"vector<{_type_tag(r)}>"
    address = r.address()
    module = r.string()
    name = r.string()
    params = r.vector(lambda: _type_tag(r))
    suffix = f"<{', '.join(params)}>" if params else ""
    return f"{_hex_addr(address)}::{module}::{name}{suffix}"


def _argument(r: BcsReader) -> Tuple[Any, ...]:
    tag = r.variant("Argument", 4)
    if tag == 0:
        return ("GasCoin",)
    if tag == 1:
        return ("Input", r.u16())
    if tag == 2:
        return ("Result", r.u16())
    return ("NestedResult", r.u16(), r.u16())


def _call_arg(r: BcsReader) -> Dict[str, Any]:
    tag = r.variant("CallArg", 2)
    if tag == 0:
        return {"kind": "pure", "bytes": r.bytes().hex()}
    obj = r.variant("ObjectArg", 3)
    if obj == 1:
        out = {"kind": "shared", "object_id": _hex_addr(r.address()), "initial_shared_version": r.u64()}
        out["mutable"] = r.bool()
        return out
    ref = _object_ref(r)
    ref["kind"] = "owned" if obj == 0 else "receiving"
    return ref


def _command(r: BcsReader) -> Dict[str, Any]:
    tag = r.variant("Command", len(_COMMANDS))
    name = _COMMANDS[tag]
    if tag == 0:
        package = r.address()
        module = r.string()
        function = r.string()
        type_args = r.vector(lambda: _type_tag(r))
        args = r.vector(lambda: _argument(r))
        return {"command": name, "target": f"{_hex_addr(package)}::{module}::{function}", "type_arguments": type_args, "arguments": args}
    if tag == 1:
        objects = r.vector(lambda: _argument(r))
        return {"command": name, "objects": objects, "recipient": _argument(r)}
    if tag in (2, 3):
        first = _argument(r)
        return {"command": name, "coin": first, "arguments": r.vector(lambda: _argument(r))}
    if tag == 4:
        modules = r.vector(r.bytes)
        deps = r.vector(r.address)
        return {"command": name, "modules": len(modules), "dependencies": [_hex_addr(d) for d in deps]}
    if tag == 5:
        type_tag = _type_tag(r) if r.variant("Option", 2) else None
        return {"command": name, "type": type_tag, "arguments": r.vector(lambda: _argument(r))}
    modules = r.vector(r.bytes)
    deps = r.vector(r.address)
    package = r.address()
    ticket = _argument(r)
    return {"command": name, "modules": len(modules), "package": _hex_addr(package), "ticket": ticket, "dependencies": [_hex_addr(d) for d in deps]}


def parse_transaction_data(data: bytes) -> Dict[str, Any]:
    """
    Decode BCS `TransactionData::V1` carrying a programmable transaction.

    Raises BcsError on unknown variants, truncation or trailing bytes.
    """
    r = BcsReader(data)
    r.variant("TransactionData", 1)
    kind = r.uleb128()
    if kind != 0:
        raise BcsError(f"unsupported TransactionKind variant {kind} (only ProgrammableTransaction)")
    inputs = r.vector(lambda: _call_arg(r))
    commands = r.vector(lambda: _command(r))
    sender = r.address()
    payment = r.vector(lambda: _object_ref(r))
    owner = r.address()
    price = r.u64()
    budget = r.u64()
    expiration: Optional[int] = r.u64() if r.variant("TransactionExpiration", 2) else None
    r.finish()
    return {
        "inputs": inputs,
        "commands": commands,
        "sender": _hex_addr(sender),
        "gas": {"payment": payment, "owner": _hex_addr(owner), "price": price, "budget": budget},
        "expiration_epoch": expiration,
    }


def transaction_digest(data: bytes) -> str:
    return base58.b58encode(blake2b256(b"TransactionData::" + data)).decode()


class SuiAdapter(ChainAdapter):
    chain = ChainKind.SUI

    def _parse(self, raw: bytes) -> Dict[str, Any]:
        try:
            return parse_transaction_data(raw)
        except BcsError as e:
            raise MalformedTransaction(f"invalid Sui TransactionData: {e}", {"kind": "bcs"}) from e

    def parse_unsigned(self, data: bytes | str, **context: Any) -> UnsignedTransaction:
        raw = decode_blob(data)
        tx = self._parse(raw)
        roles: Tuple[str, ...] = (SENDER,)
        if tx["gas"]["owner"] != tx["sender"]:
            roles += (SPONSOR,)
        summary = {
            "sender": tx["sender"],
            "gas_owner": tx["gas"]["owner"],
            "gas_price": tx["gas"]["price"],
            "gas_budget": tx["gas"]["budget"],
            "inputs": len(tx["inputs"]),
            "commands": [c.get("target") or c["command"] for c in tx["commands"]],
            "expiration_epoch": tx["expiration_epoch"],
        }
        return UnsignedTransaction(self.chain, raw, roles, _frozen(summary), _frozen(None))

    def derive_digest(self, unsigned: UnsignedTransaction) -> SigningDigest:
        return SigningDigest(self.chain, blake2b256(TRANSACTION_INTENT + unsigned.raw))

    def matches_signing_payload(self, unsigned: UnsignedTransaction, payload: bytes | str) -> bool:
        # staking APIs hand out the transaction bytes themselves as the signing payload
        try:
            b = decode_blob(payload)
        except MalformedTransaction:
            return False
        return b == unsigned.raw or b == self.derive_digest(unsigned).value

    def resolve_role(self, unsigned: UnsignedTransaction, witness: Witness) -> str:
        address = sui_address(witness.public_key)
        if address == unsigned.summary["sender"]:
            return SENDER
        if SPONSOR in unsigned.required_roles and address == unsigned.summary["gas_owner"]:
            return SPONSOR
        raise unknown_role(self.chain, witness, [unsigned.summary["sender"], unsigned.summary["gas_owner"]])

    def _assemble(self, unsigned: UnsignedTransaction, by_role: Dict[str, Witness]) -> SignedTransaction:
        ordered = self._ordered(unsigned, by_role)
        return SignedTransaction(
            chain=self.chain,
            unsigned=unsigned,
            witnesses=ordered,
            payload=unsigned.raw,
            serialized_signatures=tuple(serialize_signature(w) for w in ordered),
            transaction_hash=transaction_digest(unsigned.raw),
        )

    def extract_witnesses(self, signed: SignedTransaction) -> Tuple[Witness, ...]:
        out: List[Witness] = []
        for value in signed.serialized_signatures:
            pub, sig = parse_serialized_signature(value)
            w = Witness(SENDER, pub, sig)
            out.append(Witness(self.resolve_role(signed.unsigned, w), pub, sig))
        return tuple(out)

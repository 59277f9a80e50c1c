from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from solders.message import MessageV0, from_bytes_versioned, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature as SolSignature
from solders.transaction import VersionedTransaction

from errors import MalformedTransaction
from signing.base import Curve, PublicKey, Signature, Witness

from .base import ChainAdapter, ChainKind, SignedTransaction, SigningDigest, UnsignedTransaction, _frozen, decode_blob, unknown_role

FEE_PAYER = "fee_payer"


def _from_wire(raw: bytes) -> VersionedTransaction:
    """
    Decode either a full wire transaction or a bare (legacy or v0) message.

    A bare message gets empty signature slots. The decoding that re-serializes to
    the exact input bytes wins.
    """
    tx: Optional[VersionedTransaction]
    try:
        tx = VersionedTransaction.from_bytes(raw)
    except Exception:  # noqa: BLE001 - solders raises its own error types; try the message form next
        tx = None
    if tx is not None and bytes(tx) == raw and len(tx.signatures) == tx.message.header.num_required_signatures:
        return tx
    try:
        msg = from_bytes_versioned(raw)
    except Exception as e:  # noqa: BLE001
        raise MalformedTransaction(f"invalid Solana transaction or message: {e}", {"kind": "wire"}) from e
    if to_bytes_versioned(msg) != raw:
        raise MalformedTransaction("Solana message has trailing or non-canonical bytes", {"kind": "wire"})
    slots = [SolSignature.default()] * msg.header.num_required_signatures
    return VersionedTransaction.populate(msg, slots)


class SolanaAdapter(ChainAdapter):
    """
    Roles are the base58 public keys of the message's required signers, in header order.
    """

    chain = ChainKind.SOLANA

    def parse_unsigned(self, data: bytes | str, **context: Any) -> UnsignedTransaction:
        raw = decode_blob(data)
        tx = _from_wire(raw)
        msg = tx.message
        n = msg.header.num_required_signatures
        keys = list(msg.account_keys)
        if n == 0 or len(keys) < n:
            raise MalformedTransaction("Solana message declares no usable signer accounts", {"kind": "wire"})
        roles = tuple(str(k) for k in keys[:n])
        summary = {
            "version": "v0" if isinstance(msg, MessageV0) else "legacy",
            "fee_payer": roles[0],
            "signers": list(roles),
            "recent_blockhash": str(msg.recent_blockhash),
            "instructions": len(msg.instructions),
        }
        return UnsignedTransaction(self.chain, raw, roles, _frozen(summary), _frozen(None))

    def _tx(self, unsigned: UnsignedTransaction) -> VersionedTransaction:
        return _from_wire(unsigned.raw)

    def derive_digest(self, unsigned: UnsignedTransaction) -> SigningDigest:
        return SigningDigest(self.chain, to_bytes_versioned(self._tx(unsigned).message))

    def _witnesses_from(self, tx: VersionedTransaction, roles: Tuple[str, ...]) -> Tuple[Witness, ...]:
        out: List[Witness] = []
        empty = SolSignature.default()
        keys = list(tx.message.account_keys)
        for i, sig in enumerate(list(tx.signatures)[: len(roles)]):
            if sig == empty:
                continue
            out.append(
                Witness(roles[i], PublicKey(Curve.ED25519, bytes(keys[i])), Signature(Curve.ED25519, bytes(sig)))
            )
        return tuple(out)

    def existing_witnesses(self, unsigned: UnsignedTransaction) -> Tuple[Witness, ...]:
        return self._witnesses_from(self._tx(unsigned), unsigned.required_roles)

    def canonical_role(self, unsigned: UnsignedTransaction, role: str) -> str:
        if role == FEE_PAYER:
            return unsigned.required_roles[0]
        return role

    def resolve_role(self, unsigned: UnsignedTransaction, witness: Witness) -> str:
        role = str(Pubkey.from_bytes(witness.public_key.value))
        if role not in unsigned.required_roles:
            raise unknown_role(self.chain, witness, list(unsigned.required_roles))
        return role

    def _populate(self, unsigned: UnsignedTransaction, by_role: Dict[str, Witness]) -> Tuple[VersionedTransaction, List[SolSignature]]:
        tx = self._tx(unsigned)
        sigs = list(tx.signatures)
        for role, witness in by_role.items():
            sigs[unsigned.required_roles.index(role)] = SolSignature.from_bytes(witness.signature.value)
        return VersionedTransaction.populate(tx.message, sigs), sigs

    def _partial_payload(self, unsigned: UnsignedTransaction, by_role: Dict[str, Witness]) -> Optional[bytes]:
        tx, _ = self._populate(unsigned, by_role)
        return bytes(tx)

    def _assemble(self, unsigned: UnsignedTransaction, by_role: Dict[str, Witness]) -> SignedTransaction:
        tx, sigs = self._populate(unsigned, by_role)
        return SignedTransaction(
            chain=self.chain,
            unsigned=unsigned,
            witnesses=self._ordered(unsigned, by_role),
            payload=bytes(tx),
            serialized_signatures=tuple(str(s) for s in sigs),
            transaction_hash=str(sigs[0]),
        )

    def extract_witnesses(self, signed: SignedTransaction) -> Tuple[Witness, ...]:
        try:
            tx = VersionedTransaction.from_bytes(signed.payload)
        except Exception as e:  # noqa: BLE001
            raise MalformedTransaction(f"invalid Solana wire transaction: {e}", {"kind": "wire"}) from e
        return self._witnesses_from(tx, signed.unsigned.required_roles)

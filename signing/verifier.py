from __future__ import annotations

from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from eth_keys import keys
from eth_keys.exceptions import BadSignature
from eth_keys.exceptions import ValidationError as EthKeysValidationError

from errors import SignatureMismatch
from observability import log_event

from .base import Curve, PublicKey, Signature, Witness

SECP256K1_N = int(
    "0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141",
    16,
)
SECP256K1_HALF_N = SECP256K1_N // 2


def normalize_low_s(signature: Signature) -> Signature:
    """
    Return the low-s form of a secp256k1 signature, flipping the recovery id with it.
    """
    if signature.curve is not Curve.SECP256K1:
        return signature
    r, s = signature.r, signature.s
    if s <= SECP256K1_HALF_N:
        return signature
    s = SECP256K1_N - s
    recid = None if signature.recovery_id is None else signature.recovery_id ^ 1
    return Signature(signature.curve, r.to_bytes(32, "big") + s.to_bytes(32, "big"), recid)


def recover_secp256k1(digest: bytes, signature: Signature, public_key: PublicKey) -> Optional[int]:
    """
    Find the recovery id under which `signature` over `digest` yields `public_key`.

    High-s signatures are normalized first, so the returned id belongs to the low-s form.
    """
    sig = normalize_low_s(signature)
    r, s = sig.r, sig.s
    if not (0 < r < SECP256K1_N and 0 < s < SECP256K1_N) or len(digest) != 32:
        return None
    candidates = (sig.recovery_id,) if sig.recovery_id is not None else (0, 1)
    for recid in candidates:
        try:
            recovered = keys.Signature(vrs=(recid, r, s)).recover_public_key_from_msg_hash(digest)
        except (BadSignature, EthKeysValidationError, ValueError):
            continue
        if recovered.to_bytes() == public_key.value:
            return recid
    return None


class SignatureVerifier:
    """
    Pure signature checks; no I/O and no key material.
    """

    def verify(self, digest: bytes, signature: Signature, public_key: PublicKey) -> bool:
        if signature.curve is not public_key.curve:
            return False
        if signature.curve is Curve.ED25519:
            try:
                Ed25519PublicKey.from_public_bytes(public_key.value).verify(signature.value, digest)
            except (InvalidSignature, ValueError):
                return False
            return True
        return recover_secp256k1(digest, signature, public_key) is not None

    def require_valid(self, digest: bytes, witness: Witness, *, stage: str = "VERIFIED") -> Witness:
        if self.verify(digest, witness.signature, witness.public_key):
            return witness
        log_event(
            "signature_mismatch",
            data={"role": witness.role, "public_key": witness.public_key.hex(), "digest": digest.hex()},
            level="error",
        )
        raise SignatureMismatch(
            f"signature for role '{witness.role}' does not verify against the signing digest",
            {"role": witness.role, "public_key": witness.public_key.hex(), "digest": digest.hex()},
            stage=stage,
        )

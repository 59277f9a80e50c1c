import hashlib

import cbor2
import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from chains import CardanoAdapter, PartiallySignedTransaction
from chains.cardano import blake2b224
from errors import IncompleteWitnessSet, MalformedTransaction, SignatureMismatch, UnknownSignerRole
from signing import KeyRef, Signature, Witness
from signing.base import Curve
from staking import broadcast_body

from conftest import ed25519_public, seed

PAYMENT_SEED = seed(0x21)
STAKE_SEED = seed(0x22)
POOL_ID = bytes.fromhex("8a219b698d3b6e034391ae84cee62f1d76b6fbc45ddfe4e31e0d4b60")

SECRETS = {"cardano.payment": PAYMENT_SEED, "cardano.stake": STAKE_SEED}
KEY_REFS = [
    KeyRef("payment", Curve.ED25519, name="cardano.payment"),
    KeyRef("stake", Curve.ED25519, name="cardano.stake", bip44_change=2),
]


def delegation_tx(*, certs=True, withdrawal=False) -> bytes:
    stake_hash = blake2b224(ed25519_public(STAKE_SEED).value)
    body = {
        0: [[bytes.fromhex("11" * 32), 0]],
        1: [[bytes([0x00]) + b"\x01" * 56, 9_000_000]],
        2: 180_000,
        3: 50_000_000,
    }
    if certs:
        body[4] = [[0, [0, stake_hash]], [2, [0, stake_hash], POOL_ID]]
    if withdrawal:
        body[5] = {bytes([0xE0]) + stake_hash: 1_000_000}
    return cbor2.dumps([body, {}, True, None])


def _witnesses(local_signer, adapter, unsigned):
    digest = adapter.derive_digest(unsigned).value
    signer = local_signer(SECRETS)
    return digest, [Witness.from_result(signer.sign(digest, ref)) for ref in KEY_REFS]


def test_delegation_requires_payment_and_stake():
    unsigned = CardanoAdapter().parse_unsigned(delegation_tx())
    assert unsigned.required_roles == ("payment", "stake")
    assert unsigned.summary["certificates"] == 2
    assert unsigned.summary["fee"] == 180_000
    assert unsigned.summary["stake_key_hashes"] == [blake2b224(ed25519_public(STAKE_SEED).value).hex()]


def test_reward_withdrawal_requires_stake_witness():
    unsigned = CardanoAdapter().parse_unsigned(delegation_tx(certs=False, withdrawal=True))
    assert unsigned.required_roles == ("payment", "stake")


def test_plain_payment_needs_only_payment_key():
    unsigned = CardanoAdapter().parse_unsigned(delegation_tx(certs=False))
    assert unsigned.required_roles == ("payment",)


def test_digest_is_blake2b256_of_body():
    adapter = CardanoAdapter()
    raw = delegation_tx()
    body = cbor2.dumps(cbor2.loads(raw)[0])
    assert raw[1 : 1 + len(body)] == body
    expected = hashlib.blake2b(body, digest_size=32).digest()
    assert adapter.derive_digest(adapter.parse_unsigned(raw)).value == expected
    assert adapter.derive_digest(adapter.parse_unsigned(raw.hex())).value == expected


def upstream_encoded_tx() -> tuple:
    """A body with tag-258 inputs and keys out of canonical order, plus auxiliary data."""
    stake_hash = blake2b224(ed25519_public(STAKE_SEED).value)
    body = {
        1: [[bytes([0x00]) + b"\x01" * 56, 9_000_000]],
        0: cbor2.CBORTag(258, [[b"\xff" * 32, 1], [b"\x01" * 32, 30]]),
        2: 180_000,
        4: cbor2.CBORTag(258, [[0, [0, stake_hash]], [2, [0, stake_hash], POOL_ID]]),
        3: 50_000_000,
    }
    body_bytes = cbor2.dumps(body)
    aux_bytes = cbor2.dumps({674: {"msg": ["delegate"]}, 1: "note"})
    raw = b"\x84" + body_bytes + cbor2.dumps({}) + cbor2.dumps(True) + aux_bytes
    return raw, body_bytes, aux_bytes


def test_digest_and_assembly_keep_upstream_body_bytes(local_signer):
    adapter = CardanoAdapter()
    raw, body_bytes, aux_bytes = upstream_encoded_tx()
    expected = hashlib.blake2b(body_bytes, digest_size=32).digest()
    assert cbor2.dumps(cbor2.loads(body_bytes), canonical=True) != body_bytes

    unsigned = adapter.parse_unsigned(raw)
    assert unsigned.required_roles == ("payment", "stake")
    assert unsigned.summary["inputs"] == 2
    assert adapter.derive_digest(unsigned).value == expected
    assert adapter.matches_signing_payload(unsigned, expected.hex())

    _, witnesses = _witnesses(local_signer, adapter, unsigned)
    signed = adapter.assemble_signed(unsigned, witnesses)
    assert signed.payload.startswith(b"\x84" + body_bytes)
    assert signed.payload.endswith(cbor2.dumps(True) + aux_bytes)
    assert len(cbor2.loads(signed.payload)[1][0]) == 2
    assert signed.transaction_hash == expected.hex()


def test_indefinite_length_transaction_keeps_body_bytes():
    adapter = CardanoAdapter()
    raw, body_bytes, _ = upstream_encoded_tx()
    indefinite = b"\x9f" + raw[1:] + b"\xff"
    unsigned = adapter.parse_unsigned(indefinite)
    assert adapter.body_bytes(unsigned) == body_bytes


def test_two_witnesses_verify_and_produce_exactly_two_vkey_entries(local_signer):
    adapter = CardanoAdapter()
    unsigned = adapter.parse_unsigned(delegation_tx())
    digest, witnesses = _witnesses(local_signer, adapter, unsigned)

    signed = adapter.assemble_signed(unsigned, witnesses)

    tx = cbor2.loads(signed.payload)
    vkeys = tx[1][0]
    assert len(vkeys) == 2
    for vk, sig in vkeys:
        Ed25519PublicKey.from_public_bytes(vk).verify(sig, digest)
    assert [vk for vk, _ in vkeys] == [ed25519_public(PAYMENT_SEED).value, ed25519_public(STAKE_SEED).value]
    # the hashed body bytes are what goes on the wire
    body = delegation_tx()[1 : 1 + len(cbor2.dumps(tx[0]))]
    assert signed.payload.startswith(b"\x84" + body)
    assert hashlib.blake2b(body, digest_size=32).digest() == digest
    assert signed.transaction_hash == digest.hex()
    assert [cbor2.loads(bytes.fromhex(s)) for s in signed.serialized_signatures] == [list(v) for v in vkeys]
    assert broadcast_body(signed, "preprod") == {"network": "preprod", "signed_transaction": signed.payload.hex()}


def test_extract_witnesses_round_trip(local_signer):
    adapter = CardanoAdapter()
    unsigned = adapter.parse_unsigned(delegation_tx())
    _, witnesses = _witnesses(local_signer, adapter, unsigned)
    signed = adapter.assemble_signed(unsigned, list(reversed(witnesses)))
    back = adapter.extract_witnesses(signed)
    assert [(w.role, w.public_key, w.signature) for w in back] == [
        (w.role, w.public_key, w.signature) for w in witnesses
    ]


def test_missing_stake_witness_is_incomplete(local_signer):
    adapter = CardanoAdapter()
    unsigned = adapter.parse_unsigned(delegation_tx())
    _, (payment, _) = _witnesses(local_signer, adapter, unsigned)
    with pytest.raises(IncompleteWitnessSet) as exc:
        adapter.assemble_signed(unsigned, [payment])
    assert exc.value.missing_roles == ("stake",)


def test_partial_hand_off_then_complete(local_signer):
    adapter = CardanoAdapter()
    unsigned = adapter.parse_unsigned(delegation_tx())
    _, (payment, stake) = _witnesses(local_signer, adapter, unsigned)

    partial = adapter.assemble_partial(unsigned, [payment])
    assert partial.missing_roles == ("stake",)
    assert len(cbor2.loads(partial.payload)[1][0]) == 1

    restored = PartiallySignedTransaction.from_dict(partial.to_dict())
    assert restored.missing_roles == ("stake",)
    signed = adapter.assemble_signed(restored.unsigned, list(restored.witnesses) + [stake])
    assert len(cbor2.loads(signed.payload)[1][0]) == 2


def test_witnesses_already_in_the_blob_are_kept(local_signer):
    adapter = CardanoAdapter()
    unsigned = adapter.parse_unsigned(delegation_tx())
    _, (payment, stake) = _witnesses(local_signer, adapter, unsigned)
    with_payment = adapter.assemble_partial(unsigned, [payment]).payload

    resumed = adapter.parse_unsigned(with_payment)
    assert [w.role for w in adapter.existing_witnesses(resumed)] == ["payment"]
    signed = adapter.assemble_signed(resumed, [stake])
    assert len(cbor2.loads(signed.payload)[1][0]) == 2


def test_stake_role_with_wrong_key_is_rejected(local_signer):
    adapter = CardanoAdapter()
    unsigned = adapter.parse_unsigned(delegation_tx())
    digest = adapter.derive_digest(unsigned).value
    wrong = local_signer({"x": seed(0x30)}).sign(digest, KeyRef("stake", Curve.ED25519, name="x"))
    with pytest.raises(UnknownSignerRole):
        adapter.assemble_signed(unsigned, [Witness.from_result(wrong)])


def test_bad_signature_is_fatal(local_signer):
    adapter = CardanoAdapter()
    unsigned = adapter.parse_unsigned(delegation_tx())
    _, (payment, stake) = _witnesses(local_signer, adapter, unsigned)
    forged = Witness("stake", stake.public_key, Signature(Curve.ED25519, bytes(64)))
    with pytest.raises(SignatureMismatch):
        adapter.assemble_signed(unsigned, [payment, forged])


@pytest.mark.parametrize(
    "blob",
    [
        "8301",  # truncated array
        cbor2.dumps({"not": "a tx"}).hex(),
        cbor2.dumps([{0: []}, {}, True, None]).hex(),
    ],
)
def test_malformed_input(blob):
    with pytest.raises(MalformedTransaction):
        CardanoAdapter().parse_unsigned(blob)

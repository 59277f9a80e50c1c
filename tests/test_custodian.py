import base64
import hashlib
import json
from unittest.mock import MagicMock

import pytest
import requests
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from errors import OperationCancelled, SignerTimeout, SignerUnavailable, SigningRejected
from polling import CancelToken, PollPolicy
from signing import CustodianClient, CustodianSigner, KeyRef, SigningRequest, build_signing_intent
from signing.base import Curve

from conftest import ed25519_public, seed

FAST = PollPolicy(interval=0.0, max_attempts=3, timeout=None)
DIGEST = bytes.fromhex("ab" * 32)
PAYMENT = KeyRef("payment", Curve.ED25519, name="cardano.payment")
STAKE = KeyRef("stake", Curve.ED25519, name="cardano.stake", bip44_change=2)


def _signed_message(digest: bytes, pub: bytes, sig: bytes, change: int = 0, index: int = 0, v=None):
    out = {
        "content": digest.hex(),
        "publicKey": pub.hex(),
        "derivationPath": [44, 1815, 0, change, index],
        "signature": {"fullSig": sig.hex()},
    }
    if v is not None:
        out["signature"]["v"] = v
    return out


def make_signer(client, **kw):
    return CustodianSigner(client, vault_account_id="7", asset_id="ADA", poll_policy=FAST, retry_policy=FAST, **kw)


def test_cardano_roles_are_matched_by_derivation_path():
    payment_pub = ed25519_public(seed(1)).value
    stake_pub = ed25519_public(seed(2)).value
    client = MagicMock(spec=CustodianClient)
    client.create_raw_signing.return_value = "tx-1"
    client.get_transaction.side_effect = [
        {"status": "PENDING_SIGNATURE"},
        {
            "status": "COMPLETED",
            # custodian order differs from submission order
            "signedMessages": [
                _signed_message(DIGEST, stake_pub, b"\x02" * 64, change=2),
                _signed_message(DIGEST, payment_pub, b"\x01" * 64),
            ],
        },
    ]
    requests_ = [SigningRequest("payment", DIGEST, PAYMENT), SigningRequest("stake", DIGEST, STAKE)]
    intent = build_signing_intent("cardano", DIGEST, ("payment", "stake"), operation="delegate")

    results = make_signer(client).sign_many(requests_, intent=intent)

    assert [r.role for r in results] == ["payment", "stake"]
    assert results[0].public_key.value == payment_pub
    assert results[1].public_key.value == stake_pub
    assert results[1].signature.value == b"\x02" * 64
    kwargs = client.create_raw_signing.call_args.kwargs
    assert kwargs["algorithm"] == "MPC_EDDSA_ED25519"
    assert kwargs["vault_account_id"] == "7"
    assert kwargs["messages"] == [{"content": DIGEST.hex()}, {"content": DIGEST.hex(), "bip44change": 2}]
    assert kwargs["note"] == intent.note()
    assert "delegate" in kwargs["note"]


def test_secp256k1_recovery_id_comes_from_v():
    client = MagicMock(spec=CustodianClient)
    client.create_raw_signing.return_value = "tx-2"
    pub = bytes([0x04]) + b"\x11" * 64
    client.get_transaction.return_value = {
        "status": "COMPLETED",
        "signedMessages": [_signed_message(DIGEST, pub, b"\x03" * 64, v=1)],
    }
    signer = CustodianSigner(client, vault_account_id="1", asset_id="ETH", poll_policy=FAST, retry_policy=FAST)
    result = signer.sign(DIGEST, KeyRef("sender", Curve.SECP256K1))
    assert result.signature.recovery_id == 1
    assert result.public_key.value == b"\x11" * 64
    assert client.create_raw_signing.call_args.kwargs["algorithm"] == "MPC_ECDSA_SECP256K1"


@pytest.mark.parametrize("status", ["REJECTED", "CANCELLED", "FAILED", "BLOCKED"])
def test_terminal_failure_is_signing_rejected(status):
    client = MagicMock(spec=CustodianClient)
    client.create_raw_signing.return_value = "tx-3"
    client.get_transaction.return_value = {"status": status, "subStatus": "REJECTED_BY_USER"}
    with pytest.raises(SigningRejected) as exc:
        make_signer(client).sign(DIGEST, PAYMENT)
    assert exc.value.data["status"] == status
    client.cancel_transaction.assert_not_called()


def test_timeout_cancels_remote_request_and_returns_nothing():
    client = MagicMock(spec=CustodianClient)
    client.create_raw_signing.return_value = "tx-4"
    client.get_transaction.return_value = {"status": "PENDING_AUTHORIZATION"}
    with pytest.raises(SignerTimeout) as exc:
        make_signer(client).sign(DIGEST, PAYMENT)
    assert exc.value.data["last_status"] == "PENDING_AUTHORIZATION"
    assert client.get_transaction.call_count == FAST.max_attempts
    client.cancel_transaction.assert_called_once_with("tx-4")


def test_cancel_during_poll_aborts_remote_request():
    token = CancelToken()
    client = MagicMock(spec=CustodianClient)
    client.create_raw_signing.return_value = "tx-5"

    def _pending(tx_id):
        token.cancel()
        return {"status": "PENDING_SIGNATURE"}

    client.get_transaction.side_effect = _pending
    with pytest.raises(OperationCancelled):
        make_signer(client).sign_many([SigningRequest("payment", DIGEST, PAYMENT)], cancel=token)
    client.cancel_transaction.assert_called_once_with("tx-5")


def test_cancelled_before_submission_never_calls_custodian():
    token = CancelToken()
    token.cancel()
    client = MagicMock(spec=CustodianClient)
    with pytest.raises(OperationCancelled):
        make_signer(client).sign_many([SigningRequest("payment", DIGEST, PAYMENT)], cancel=token)
    client.create_raw_signing.assert_not_called()


def test_transient_unavailability_is_retried():
    client = MagicMock(spec=CustodianClient)
    client.create_raw_signing.side_effect = [SignerUnavailable("502"), "tx-6"]
    client.get_transaction.return_value = {
        "status": "COMPLETED",
        "signedMessages": [_signed_message(DIGEST, ed25519_public(seed(1)).value, b"\x01" * 64)],
    }
    result = make_signer(client).sign(DIGEST, PAYMENT)
    assert result.role == "payment"
    assert client.create_raw_signing.call_count == 2


def test_persistent_unavailability_surfaces():
    client = MagicMock(spec=CustodianClient)
    client.create_raw_signing.side_effect = SignerUnavailable("down")
    with pytest.raises(SignerUnavailable):
        make_signer(client).sign(DIGEST, PAYMENT)
    assert client.create_raw_signing.call_count == FAST.max_attempts


def test_missing_signature_for_role_is_rejected():
    client = MagicMock(spec=CustodianClient)
    client.create_raw_signing.return_value = "tx-7"
    client.get_transaction.return_value = {"status": "COMPLETED", "signedMessages": []}
    with pytest.raises(SigningRejected):
        make_signer(client).sign(DIGEST, PAYMENT)


@pytest.mark.parametrize(
    "message",
    [
        _signed_message(DIGEST, b"\x01" * 32, b"\x01" * 10),
        _signed_message(DIGEST, b"\x01" * 31, b"\x01" * 64),
        {**_signed_message(DIGEST, b"\x01" * 32, b"\x01" * 64), "publicKey": "not-hex"},
    ],
)
def test_undecodable_custodian_signature_is_rejected(message):
    client = MagicMock(spec=CustodianClient)
    client.create_raw_signing.return_value = "tx-bad"
    client.get_transaction.return_value = {"status": "COMPLETED", "signedMessages": [message]}
    with pytest.raises(SigningRejected) as exc:
        make_signer(client).sign_many([SigningRequest("payment", DIGEST, PAYMENT)])
    assert exc.value.data == {"custodian_tx_id": "tx-bad", "kind": "malformed_signature"}


def test_mixed_curves_in_one_request_are_refused():
    client = MagicMock(spec=CustodianClient)
    with pytest.raises(ValueError):
        make_signer(client).sign_many(
            [SigningRequest("a", DIGEST, PAYMENT), SigningRequest("b", DIGEST, KeyRef("b", Curve.SECP256K1))]
        )


# --- REST client -----------------------------------------------------------


@pytest.fixture(scope="module")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _pem(key) -> bytes:
    return key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
    )


def _response(status: int, body=None):
    r = MagicMock()
    r.status_code = status
    r.content = json.dumps(body).encode() if body is not None else b""
    r.json.return_value = body
    r.text = json.dumps(body) if body is not None else ""
    return r


def _b64url_decode(s: str) -> bytes:
    return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))


def test_client_signs_request_with_body_bound_jwt(rsa_key):
    session = MagicMock()
    session.request.return_value = _response(200, {"id": "fb-1", "status": "SUBMITTED"})
    client = CustodianClient("https://custody.example/", "api-key", _pem(rsa_key), session=session)

    tx_id = client.create_raw_signing(
        asset_id="SOL", vault_account_id="3", messages=[{"content": "ab" * 32}], algorithm="MPC_EDDSA_ED25519"
    )

    assert tx_id == "fb-1"
    method, url = session.request.call_args.args
    kwargs = session.request.call_args.kwargs
    assert (method, url) == ("POST", "https://custody.example/v1/transactions")
    body = kwargs["data"]
    payload = json.loads(body)
    assert payload["operation"] == "RAW"
    assert payload["source"] == {"type": "VAULT_ACCOUNT", "id": "3"}
    assert payload["extraParameters"]["rawMessageData"]["algorithm"] == "MPC_EDDSA_ED25519"

    headers = kwargs["headers"]
    assert headers["X-API-Key"] == "api-key"
    token = headers["Authorization"].removeprefix("Bearer ")
    head, claims, sig = token.split(".")
    decoded = json.loads(_b64url_decode(claims))
    assert decoded["uri"] == "/v1/transactions"
    assert decoded["sub"] == "api-key"
    assert decoded["bodyHash"] == hashlib.sha256(body).hexdigest()
    rsa_key.public_key().verify(
        _b64url_decode(sig), f"{head}.{claims}".encode(), padding.PKCS1v15(), hashes.SHA256()
    )


def test_client_get_has_empty_body_hash(rsa_key):
    session = MagicMock()
    session.request.return_value = _response(200, {"id": "fb-1", "status": "COMPLETED"})
    client = CustodianClient("https://custody.example", "k", _pem(rsa_key), session=session)
    assert client.get_transaction("fb-1")["status"] == "COMPLETED"
    kwargs = session.request.call_args.kwargs
    assert kwargs["data"] is None
    claims = kwargs["headers"]["Authorization"].split(".")[1]
    assert json.loads(_b64url_decode(claims))["bodyHash"] == hashlib.sha256(b"").hexdigest()


@pytest.mark.parametrize(
    "outcome, expected",
    [
        (_response(503, {"message": "maintenance"}), SignerUnavailable),
        (_response(429, {"message": "slow down"}), SignerUnavailable),
        (_response(401, {"message": "bad token"}), SigningRejected),
        (requests.ConnectionError("refused"), SignerUnavailable),
    ],
)
def test_client_error_mapping(rsa_key, outcome, expected):
    session = MagicMock()
    if isinstance(outcome, Exception):
        session.request.side_effect = outcome
    else:
        session.request.return_value = outcome
    client = CustodianClient("https://custody.example", "k", _pem(rsa_key), session=session)
    with pytest.raises(expected):
        client.get_transaction("fb-1")


def test_client_requires_rsa_key():
    from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

    pem = Ed25519PrivateKey.generate().private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
    )
    with pytest.raises(ValueError):
        CustodianClient("https://custody.example", "k", pem)

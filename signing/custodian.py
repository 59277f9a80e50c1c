from __future__ import annotations

import base64
import hashlib
import json
import time
import uuid
from typing import Any, Dict, List, Optional, Sequence

import requests
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

from errors import OperationCancelled, SignerTimeout, SignerUnavailable, SigningRejected
from observability import build_log_context, log_event
from polling import CancelToken, PollCancelled, PollPolicy, PollTimeout, poll_until, retry_call

from .base import Curve, KeyRef, PublicKey, Signature, SignatureResult, Signer, SigningRequest, strip_hex
from .intents import SigningIntent

SUCCESS_STATUSES = frozenset({"COMPLETED", "CONFIRMED"})
FAILURE_STATUSES = frozenset({"CANCELLED", "REJECTED", "FAILED", "BLOCKED"})

ALGORITHMS = {
    Curve.ED25519: "MPC_EDDSA_ED25519",
    Curve.SECP256K1: "MPC_ECDSA_SECP256K1",
}


def _b64url(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


class CustodianClient:
    """
    Thin REST client for a Fireblocks-style custodian.

    Every request carries an RS256 JWT signed with the API user's private key; the
    token binds the request path and a SHA-256 of the exact body bytes.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        private_key_pem: bytes,
        *,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("custodian base URL is required")
        if not api_key:
            raise ValueError("custodian API key is required")
        key = serialization.load_pem_private_key(private_key_pem, password=None)
        if not isinstance(key, RSAPrivateKey):
            raise ValueError("custodian API secret must be an RSA private key")
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._key = key
        self._timeout = timeout
        self._session = session or requests.Session()

    def _token(self, path: str, body: bytes) -> str:
        now = int(time.time())
        header = {"alg": "RS256", "typ": "JWT"}
        claims = {
            "uri": path,
            "nonce": uuid.uuid4().hex,
            "iat": now,
            "exp": now + 55,
            "sub": self._api_key,
            "bodyHash": hashlib.sha256(body).hexdigest(),
        }
        signing_input = (
            _b64url(json.dumps(header, separators=(",", ":")).encode())
            + "."
            + _b64url(json.dumps(claims, separators=(",", ":")).encode())
        )
        sig = self._key.sign(signing_input.encode("ascii"), padding.PKCS1v15(), hashes.SHA256())
        return signing_input + "." + _b64url(sig)

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        headers = {
            "X-API-Key": self._api_key,
            "Authorization": f"Bearer {self._token(path, body)}",
            "Content-Type": "application/json",
        }
        ctx = build_log_context(method=method, path=path)
        try:
            r = self._session.request(method, self._base_url + path, data=body or None, headers=headers, timeout=self._timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            log_event("custodian_transport_error", ctx=ctx, data={"error": str(e)}, level="warning")
            raise SignerUnavailable(f"custodian unreachable: {e}", {"path": path}) from e
        if r.status_code == 429 or r.status_code >= 500:
            log_event("custodian_unavailable", ctx=ctx, data={"status": r.status_code}, level="warning")
            raise SignerUnavailable(f"custodian returned HTTP {r.status_code}", {"path": path, "status": r.status_code})
        if r.status_code >= 400:
            raise SigningRejected(
                f"custodian refused request: HTTP {r.status_code}",
                {"path": path, "status": r.status_code, "body": r.text[:500]},
            )
        return r.json() if r.content else {}

    def create_raw_signing(
        self,
        *,
        asset_id: str,
        vault_account_id: str,
        messages: List[Dict[str, Any]],
        algorithm: str,
        note: str = "",
        external_tx_id: str | None = None,
    ) -> str:
        payload: Dict[str, Any] = {
            "assetId": asset_id,
            "operation": "RAW",
            "source": {"type": "VAULT_ACCOUNT", "id": str(vault_account_id)},
            "extraParameters": {"rawMessageData": {"messages": messages, "algorithm": algorithm}},
            "note": note,
        }
        if external_tx_id:
            payload["externalTxId"] = external_tx_id
        data = self._request("POST", "/v1/transactions", payload)
        tx_id = str(data.get("id") or "").strip()
        if not tx_id:
            raise SignerUnavailable("custodian did not return a transaction id", {"response": data})
        return tx_id

    def get_transaction(self, tx_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/v1/transactions/{tx_id}")

    def cancel_transaction(self, tx_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/v1/transactions/{tx_id}/cancel")


def _match_signed_messages(
    requests_: Sequence[SigningRequest], signed: List[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """
    Pair each request with its signed message by digest content and derivation path.

    Several roles can sign the same content (payment and stake keys over one body
    hash); the bip44 change/index in the derivation path tells them apart, and
    submission order breaks any remaining tie.
    """
    used = set()
    out: List[Dict[str, Any]] = []
    for req in requests_:
        want = req.digest.hex()
        match_idx = None
        fallback_idx = None
        for i, msg in enumerate(signed):
            if i in used or strip_hex(str(msg.get("content") or "")).lower() != want:
                continue
            path = msg.get("derivationPath") or []
            if len(path) >= 5:
                if int(path[3]) == req.key_ref.bip44_change and int(path[4]) == req.key_ref.bip44_address_index:
                    match_idx = i
                    break
            elif fallback_idx is None:
                fallback_idx = i
        idx = match_idx if match_idx is not None else fallback_idx
        if idx is None:
            raise SigningRejected(
                f"custodian returned no signature for role '{req.role}'",
                {"role": req.role, "digest": want},
            )
        used.add(idx)
        out.append(signed[idx])
    return out


class CustodianSigner(Signer):
    """
    Signs digests through a remote custodian (RAW message signing).

    All roles of one transaction go out as a single custodian request. The wait is
    bounded by `poll_policy` and can be interrupted with a CancelToken; on timeout or
    cancellation the remote request is cancelled and no signature is returned.
    """

    def __init__(
        self,
        client: CustodianClient,
        *,
        vault_account_id: str,
        asset_id: str,
        poll_policy: Optional[PollPolicy] = None,
        retry_policy: Optional[PollPolicy] = None,
    ) -> None:
        self._client = client
        self._vault_account_id = str(vault_account_id)
        self._asset_id = asset_id
        self._poll = poll_policy or PollPolicy(interval=3.0, max_attempts=100, timeout=300.0)
        self._retry = retry_policy or PollPolicy(interval=1.0, max_attempts=3, timeout=None, backoff=2.0)

    def sign(self, digest: bytes, key_ref: KeyRef) -> SignatureResult:
        return self.sign_many([SigningRequest(key_ref.role, digest, key_ref)])[0]

    def _call(self, fn, cancel: Optional[CancelToken]):
        return retry_call(fn, retry_on=(SignerUnavailable,), policy=self._retry, cancel=cancel)

    def _abort(self, tx_id: str, ctx: Dict[str, Any]) -> None:
        try:
            self._client.cancel_transaction(tx_id)
        except (SignerUnavailable, SigningRejected) as e:
            log_event("custodian_cancel_failed", ctx=ctx, data={"error": str(e)}, level="warning")

    def sign_many(
        self,
        requests: Sequence[SigningRequest],
        *,
        intent: Optional[SigningIntent] = None,
        cancel: Optional[CancelToken] = None,
    ) -> List[SignatureResult]:
        if not requests:
            return []
        curves = {r.key_ref.curve for r in requests}
        if len(curves) != 1:
            raise ValueError("one custodian request cannot mix curves")
        curve = curves.pop()
        messages: List[Dict[str, Any]] = []
        for r in requests:
            m: Dict[str, Any] = {"content": r.digest.hex()}
            if r.key_ref.bip44_change:
                m["bip44change"] = r.key_ref.bip44_change
            if r.key_ref.bip44_address_index:
                m["bip44addressIndex"] = r.key_ref.bip44_address_index
            messages.append(m)
        note = intent.note() if intent is not None else f"Sign {len(messages)} raw message(s)"

        try:
            tx_id = self._call(
                lambda: self._client.create_raw_signing(
                    asset_id=self._asset_id,
                    vault_account_id=self._vault_account_id,
                    messages=messages,
                    algorithm=ALGORITHMS[curve],
                    note=note,
                ),
                cancel,
            )
        except PollCancelled as e:
            raise OperationCancelled("signing cancelled before submission", {"roles": [r.role for r in requests]}) from e

        ctx = build_log_context(custodian_tx_id=tx_id, asset_id=self._asset_id, roles=[r.role for r in requests])
        log_event("custodian_request_created", ctx=ctx, data={"intent": intent.to_dict() if intent else None})

        def _on_attempt(attempt: int, tx: Dict[str, Any]) -> None:
            log_event("custodian_poll", ctx=ctx, data={"attempt": attempt, "status": tx.get("status")}, level="debug")

        try:
            tx = poll_until(
                lambda: self._call(lambda: self._client.get_transaction(tx_id), cancel),
                lambda t: str(t.get("status") or "").upper() in SUCCESS_STATUSES | FAILURE_STATUSES,
                self._poll,
                cancel=cancel,
                on_attempt=_on_attempt,
            )
        except PollTimeout as e:
            self._abort(tx_id, ctx)
            last = e.last if isinstance(e.last, dict) else {}
            raise SignerTimeout(
                f"custodian request {tx_id} not signed after {e.attempts} polls ({e.elapsed:.0f}s)",
                {"custodian_tx_id": tx_id, "last_status": last.get("status")},
            ) from e
        except PollCancelled as e:
            self._abort(tx_id, ctx)
            raise OperationCancelled(f"custodian request {tx_id} cancelled", {"custodian_tx_id": tx_id}) from e

        status = str(tx.get("status") or "").upper()
        if status in FAILURE_STATUSES:
            log_event("custodian_request_failed", ctx=ctx, data={"status": status, "sub_status": tx.get("subStatus")}, level="error")
            raise SigningRejected(
                f"custodian request {tx_id} ended {status}",
                {"custodian_tx_id": tx_id, "status": status, "sub_status": tx.get("subStatus")},
            )
        if cancel is not None and cancel.cancelled:
            raise OperationCancelled(f"custodian request {tx_id} cancelled; signatures discarded", {"custodian_tx_id": tx_id})

        results: List[SignatureResult] = []
        try:
            for req, msg in zip(requests, _match_signed_messages(requests, list(tx.get("signedMessages") or []))):
                sig_obj = msg.get("signature") or {}
                recid = sig_obj.get("v") if curve is Curve.SECP256K1 else None
                signature = Signature.from_hex(curve, str(sig_obj.get("fullSig") or ""), int(recid) if recid is not None else None)
                public_key = PublicKey.normalize(curve, str(msg.get("publicKey") or ""))
                results.append(SignatureResult(req.role, signature, public_key))
        except (ValueError, TypeError) as e:
            log_event("custodian_output_unusable", ctx=ctx, data={"error": str(e)}, level="error")
            raise SigningRejected(
                f"custodian request {tx_id} returned an unusable signature: {e}",
                {"custodian_tx_id": tx_id, "kind": "malformed_signature"},
            ) from e
        log_event("custodian_request_completed", ctx=ctx, data={"public_keys": [r.public_key.hex() for r in results]})
        return results

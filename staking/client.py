from __future__ import annotations

from typing import Any, Dict, Optional, Type

import requests
from pydantic import BaseModel, ConfigDict, Field

from errors import BroadcastRejected, BroadcastUnavailable, PipelineError, StakingApiError, StakingApiUnavailable
from observability import build_log_context, log_event

SUCCESS_STATUSES = frozenset({"confirmed", "finalized", "success", "succeeded"})
FAILURE_STATUSES = frozenset({"failed", "error", "rejected"})


class StakingTransaction(BaseModel):
    """An unsigned staking transaction as produced by the staking API."""

    model_config = ConfigDict(extra="ignore")

    chain: str
    operation: str
    network: str
    unsigned_transaction_serialized: str
    signing_payload: Optional[str] = None
    id: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict, repr=False)


class BroadcastReceipt(BaseModel):
    model_config = ConfigDict(extra="ignore")

    transaction_hash: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict, repr=False)


class TransactionStatus(BaseModel):
    model_config = ConfigDict(extra="ignore")

    hash: str
    status: str = "unknown"
    raw: Dict[str, Any] = Field(default_factory=dict, repr=False)

    @property
    def is_success(self) -> bool:
        return self.status.lower() in SUCCESS_STATUSES

    @property
    def is_failure(self) -> bool:
        return self.status.lower() in FAILURE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.is_success or self.is_failure


def _first(*values: Any) -> Any:
    for v in values:
        if v not in (None, ""):
            return v
    return None


def _upstream_reason(r: requests.Response) -> Any:
    try:
        body = r.json()
    except ValueError:
        return r.text[:1000]
    if isinstance(body, dict):
        return _first(body.get("error"), body.get("message"), body.get("errors"), body)
    return body


class StakingApiClient:
    """
    Typed REST client for a staking-as-a-service API.

    Endpoints:
    - POST {base}/{chain}/{operation}  -> unsigned transaction (+ signing payload)
    - POST {base}/{chain}/broadcast    -> transaction hash
    - GET  {base}/{chain}/tx?hash=     -> status
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        *,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key or ""
        self._timeout = timeout
        self._session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "x-api-key": self._api_key,
        }

    def _call(
        self,
        method: str,
        path: str,
        *,
        json: Dict[str, Any] | None = None,
        params: Dict[str, Any] | None = None,
        rejected: Type[PipelineError] = StakingApiError,
        unavailable: Type[PipelineError] = StakingApiUnavailable,
    ) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        ctx = build_log_context(method=method, path=path)
        try:
            r = self._session.request(method, url, json=json, params=params, headers=self._headers(), timeout=self._timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            log_event("staking_api_transport_error", ctx=ctx, data={"error": str(e)}, level="warning")
            raise unavailable(f"staking API unreachable: {e}", {"path": path}) from e
        if r.status_code == 429 or r.status_code >= 500:
            raise unavailable(
                f"staking API returned HTTP {r.status_code}",
                {"path": path, "status": r.status_code, "reason": _upstream_reason(r)},
            )
        if r.status_code >= 400:
            reason = _upstream_reason(r)
            log_event("staking_api_rejected", ctx=ctx, data={"status": r.status_code, "reason": reason}, level="warning")
            raise rejected(
                f"staking API rejected request: HTTP {r.status_code}",
                {"path": path, "status": r.status_code, "reason": reason},
            )
        body = r.json() if r.content else {}
        if not isinstance(body, dict):
            raise PipelineError("unexpected staking API response shape", {"path": path, "body": body})
        return body

    def create_transaction(self, chain: str, operation: str, *, network: str, **params: Any) -> StakingTransaction:
        body = self._call("POST", f"/{chain}/{operation}", json={"network": network, **params})
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        staking_tx = (body.get("meta") or {}).get("staking_transaction") or {}
        unsigned = _first(
            data.get("unsigned_transaction_serialized"),
            staking_tx.get("unsigned_transaction_serialized"),
            body.get("unsigned_transaction_serialized"),
        )
        if not unsigned:
            raise PipelineError(
                "unsigned_transaction_serialized not found in the response",
                {"chain": chain, "operation": operation},
                stage="FETCHED",
            )
        signing_payload = _first(
            data.get("signing_payload"),
            data.get("unsigned_transaction_hashed"),
            staking_tx.get("signing_payload"),
            staking_tx.get("unsigned_transaction_hashed"),
            body.get("signing_payload"),
        )
        log_event("staking_transaction_created", ctx=build_log_context(chain=chain, operation=operation, network=network))
        return StakingTransaction(
            chain=chain,
            operation=operation,
            network=network,
            unsigned_transaction_serialized=str(unsigned),
            signing_payload=str(signing_payload) if signing_payload else None,
            id=_first(data.get("id"), body.get("id")),
            raw=body,
        )

    def broadcast(self, chain: str, body: Dict[str, Any]) -> BroadcastReceipt:
        resp = self._call(
            "POST", f"/{chain}/broadcast", json=body, rejected=BroadcastRejected, unavailable=BroadcastUnavailable
        )
        data = resp.get("data") if isinstance(resp.get("data"), dict) else {}
        tx_hash = _first(
            data.get("transaction_hash"),
            data.get("tx_hash"),
            resp.get("transaction_hash"),
            resp.get("tx_hash"),
        )
        return BroadcastReceipt(transaction_hash=str(tx_hash) if tx_hash else None, raw=resp)

    def transaction_status(self, chain: str, tx_hash: str, *, network: str) -> TransactionStatus:
        resp = self._call("GET", f"/{chain}/tx", params={"hash": tx_hash, "network": network})
        data = resp.get("data") if isinstance(resp.get("data"), dict) else resp
        status = _first(data.get("status"), resp.get("status"), "unknown")
        return TransactionStatus(hash=tx_hash, status=str(status), raw=resp)

    def stakes(self, chain: str, *, network: str, **params: Any) -> Dict[str, Any]:
        return self._call("GET", f"/{chain}/stakes", params={"network": network, **params})

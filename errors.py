from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional, Tuple

import requests


@dataclass(eq=False)
class PipelineError(Exception):
    """
    Base for every failure the signing pipeline reports.

    `code` is stable and machine-readable; `stage` names the pipeline state the
    error originated from (filled in by the pipeline when the raiser did not).
    """

    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    stage: Optional[str] = None

    code: ClassVar[str] = "pipeline_error"
    retryable: ClassVar[bool] = False

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.code}: {self.message}"
        return f"{self.code}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "stage": self.stage, "data": dict(self.data)}


class MalformedTransaction(PipelineError):
    """The unsigned blob does not decode per the chain's native serialization. Re-fetch, don't retry."""

    code: ClassVar[str] = "malformed_transaction"


class SignerUnavailable(PipelineError):
    code: ClassVar[str] = "signer_unavailable"
    retryable: ClassVar[bool] = True


class SignerMisconfigured(PipelineError):
    """Key material for a role is missing or unreadable. Fix the configuration; retrying will not help."""

    code: ClassVar[str] = "signer_misconfigured"


class SignerTimeout(PipelineError):
    code: ClassVar[str] = "signer_timeout"


class SigningRejected(PipelineError):
    """The custodian ended the request in a failure state or returned signatures that cannot be decoded."""

    code: ClassVar[str] = "signing_rejected"


class OperationCancelled(PipelineError):
    code: ClassVar[str] = "operation_cancelled"


class SignatureMismatch(PipelineError):
    code: ClassVar[str] = "signature_mismatch"


class UnknownSignerRole(PipelineError):
    code: ClassVar[str] = "unknown_signer_role"


@dataclass(eq=False)
class IncompleteWitnessSet(PipelineError):
    """
    Not every required role has a witness yet.

    This is a valid intermediate state: callers that can hand the transaction to
    another signer should ask for the partial representation instead.
    """

    missing_roles: Tuple[str, ...] = ()

    code: ClassVar[str] = "incomplete_witness_set"

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["missing_roles"] = list(self.missing_roles)
        return out


class BroadcastRejected(PipelineError):
    """The staking API or chain refused the signed payload. The upstream reason is kept verbatim."""

    code: ClassVar[str] = "broadcast_rejected"


class BroadcastUnavailable(PipelineError):
    code: ClassVar[str] = "broadcast_unavailable"
    retryable: ClassVar[bool] = True


class StakingApiError(PipelineError):
    """The staking API refused a create or status request."""

    code: ClassVar[str] = "staking_api_error"


class StakingApiUnavailable(PipelineError):
    code: ClassVar[str] = "staking_api_unavailable"
    retryable: ClassVar[bool] = True


def classify_exception(e: Exception) -> PipelineError:
    """
    Map pipeline and transport exceptions into stable error codes.
    """
    if isinstance(e, PipelineError):
        return e
    if isinstance(e, requests.Timeout):
        return PipelineError(str(e), {"kind": "http_timeout"})
    if isinstance(e, requests.ConnectionError):
        return PipelineError(str(e), {"kind": "http_connection_error"})
    if isinstance(e, requests.HTTPError):
        status = e.response.status_code if e.response is not None else None
        return PipelineError(str(e), {"kind": "http_error", "status": status})
    if isinstance(e, ValueError):
        return PipelineError(str(e), {"kind": "invalid_input"})

    return PipelineError(str(e), {"kind": "unknown_error"})

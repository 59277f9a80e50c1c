from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from chains import ChainKind, SignedTransaction
from observability import build_log_context, log_event
from errors import StakingApiUnavailable
from polling import CancelToken, PollPolicy, PollTimeout, poll_until, retry_call

from .client import StakingApiClient, TransactionStatus


@dataclass(frozen=True)
class BroadcastResult:
    transaction_hash: str
    accepted: bool = True
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Confirmation:
    """Outcome of waiting for finality: `confirmed`, `failed` or `timeout`."""

    outcome: str
    status: Optional[str] = None
    attempts: int = 0

    @property
    def success(self) -> bool:
        return self.outcome == "confirmed"

    def to_dict(self) -> Dict[str, Any]:
        return {"outcome": self.outcome, "status": self.status, "attempts": self.attempts}


class Broadcaster(ABC):
    @abstractmethod
    def send(self, signed: SignedTransaction) -> BroadcastResult:
        raise NotImplementedError

    @abstractmethod
    def wait_for_confirmation(
        self, chain: ChainKind, tx_hash: str, *, cancel: Optional[CancelToken] = None
    ) -> Confirmation:
        raise NotImplementedError


def broadcast_body(signed: SignedTransaction, network: str) -> Dict[str, Any]:
    """
    The one broadcast request shape used per chain.
    """
    chain = signed.chain
    if chain is ChainKind.ETHEREUM:
        return {
            "network": network,
            "unsigned_transaction_serialized": signed.unsigned.raw.hex(),
            "signature": "0x" + signed.serialized_signatures[0],
        }
    if chain is ChainKind.SOLANA:
        return {"network": network, "transaction_payload": signed.payload.hex()}
    if chain is ChainKind.CARDANO:
        return {"network": network, "signed_transaction": signed.payload.hex()}
    if chain is ChainKind.SUI:
        return {
            "network": network,
            "unsigned_transaction_serialized": signed.payload.hex(),
            "signature": signed.serialized_signatures[0] if len(signed.serialized_signatures) == 1 else list(signed.serialized_signatures),
        }
    raise ValueError(f"Unsupported chain: {chain}")


class ApiBroadcaster(Broadcaster):
    """
    Broadcasts through the staking API and polls its status endpoint.

    Rejections are surfaced with the upstream reason and never retried. Status
    lookups that fail transiently are retried under `retry_policy` before the
    error reaches the caller.
    """

    def __init__(
        self,
        client: StakingApiClient,
        *,
        network: str,
        poll_policy: Optional[PollPolicy] = None,
        retry_policy: Optional[PollPolicy] = None,
    ) -> None:
        self._client = client
        self._network = network
        self._poll = poll_policy or PollPolicy(interval=3.0, max_attempts=30, timeout=None)
        self._retry = retry_policy or PollPolicy(interval=1.0, max_attempts=4, timeout=None, backoff=2.0, max_interval=8.0)

    def send(self, signed: SignedTransaction) -> BroadcastResult:
        chain = signed.chain.value
        ctx = build_log_context(chain=chain, network=self._network, local_hash=signed.transaction_hash)
        receipt = self._client.broadcast(chain, broadcast_body(signed, self._network))
        tx_hash = receipt.transaction_hash or signed.transaction_hash
        if receipt.transaction_hash and receipt.transaction_hash != signed.transaction_hash:
            log_event("broadcast_hash_differs", ctx=ctx, data={"upstream_hash": receipt.transaction_hash}, level="warning")
        log_event("broadcast_accepted", ctx=ctx, data={"transaction_hash": tx_hash})
        return BroadcastResult(transaction_hash=tx_hash, raw=receipt.raw)

    def wait_for_confirmation(
        self, chain: ChainKind, tx_hash: str, *, cancel: Optional[CancelToken] = None
    ) -> Confirmation:
        attempts = 0

        def _fetch() -> TransactionStatus:
            nonlocal attempts
            attempts += 1
            return retry_call(
                lambda: self._client.transaction_status(chain.value, tx_hash, network=self._network),
                retry_on=(StakingApiUnavailable,),
                policy=self._retry,
                cancel=cancel,
            )

        try:
            status = poll_until(_fetch, lambda s: s.is_terminal, self._poll, cancel=cancel)
        except PollTimeout as e:
            last = e.last.status if isinstance(e.last, TransactionStatus) else None
            log_event("confirmation_timeout", ctx=build_log_context(chain=chain.value, tx_hash=tx_hash), data={"attempts": e.attempts}, level="warning")
            return Confirmation(outcome="timeout", status=last, attempts=e.attempts)
        outcome = "confirmed" if status.is_success else "failed"
        log_event("confirmation_result", ctx=build_log_context(chain=chain.value, tx_hash=tx_hash), data={"outcome": outcome, "status": status.status})
        return Confirmation(outcome=outcome, status=status.status, attempts=attempts)

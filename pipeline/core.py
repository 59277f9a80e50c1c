from __future__ import annotations

import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from chains import ChainAdapter, ChainKind, PartiallySignedTransaction, SignedTransaction, SigningDigest, UnsignedTransaction
from errors import BroadcastRejected, IncompleteWitnessSet, MalformedTransaction, OperationCancelled, PipelineError
from observability import AuditLog, build_log_context, log_event, now_ms
from polling import CancelToken, PollCancelled
from signing import KeyRef, SignatureVerifier, Signer, SigningRequest, Witness, build_signing_intent
from staking import Broadcaster, Confirmation, StakingTransaction

Source = Union[StakingTransaction, UnsignedTransaction, bytes, str]


class PipelineState(Enum):
    FETCHED = "FETCHED"
    DIGEST_DERIVED = "DIGEST_DERIVED"
    SIGNED_PARTIAL = "SIGNED_PARTIAL"
    SIGNED = "SIGNED"
    VERIFIED = "VERIFIED"
    ASSEMBLED = "ASSEMBLED"
    BROADCAST = "BROADCAST"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class PipelineResult:
    success: bool
    state: PipelineState
    chain: ChainKind
    run_id: str
    transaction_hash: Optional[str] = None
    digest: Optional[str] = None
    error: Optional[PipelineError] = None
    signed: Optional[SignedTransaction] = None
    partial: Optional[PartiallySignedTransaction] = None
    confirmation: Optional[Confirmation] = None
    history: Tuple[PipelineState, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "state": self.state.value,
            "chain": self.chain.value,
            "run_id": self.run_id,
            "transaction_hash": self.transaction_hash,
            "digest": self.digest,
            "error": self.error.to_dict() if self.error else None,
            "signed": self.signed.to_dict() if self.signed else None,
            "partial": self.partial.to_dict() if self.partial else None,
            "confirmation": self.confirmation.to_dict() if self.confirmation else None,
            "history": [s.value for s in self.history],
        }


@dataclass
class _Run:
    chain: ChainKind
    operation: Optional[str]
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    history: List[PipelineState] = field(default_factory=list)
    digest: Optional[SigningDigest] = None

    def ctx(self) -> Dict[str, Any]:
        return build_log_context(run_id=self.run_id, chain=self.chain.value, operation=self.operation)


class TransactionPipeline:
    """
    Drives one unsigned transaction through
    FETCHED -> DIGEST_DERIVED -> SIGNED(_PARTIAL) -> VERIFIED -> ASSEMBLED -> BROADCAST -> SUCCEEDED/FAILED.

    Typed pipeline errors end the run as a FAILED result carrying the error and
    its originating stage; anything else propagates. Once the staking API has
    accepted the broadcast, errors are attached to a BROADCAST result that still
    carries the transaction hash.

    Instances hold no per-run state, so one pipeline may serve concurrent runs.
    """

    def __init__(
        self,
        adapter: ChainAdapter,
        signer: Signer,
        *,
        verifier: Optional[SignatureVerifier] = None,
        broadcaster: Optional[Broadcaster] = None,
        wait_for_confirmation: bool = False,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self.adapter = adapter
        self.signer = signer
        self.verifier = verifier or SignatureVerifier()
        self.broadcaster = broadcaster
        self.wait_for_confirmation = wait_for_confirmation
        self.audit = audit

    @property
    def chain(self) -> ChainKind:
        return self.adapter.chain

    def _enter(self, run: _Run, state: PipelineState, **data: Any) -> None:
        run.history.append(state)
        log_event("pipeline_state", ctx=run.ctx(), data={"state": state.value, **data}, level="debug")

    def _finish(self, run: _Run, result: PipelineResult) -> PipelineResult:
        result = replace(result, history=tuple(run.history), digest=run.digest.hex() if run.digest else None)
        level = "info" if result.success else "warning"
        log_event(
            "pipeline_finished",
            ctx=run.ctx(),
            data={
                "state": result.state.value,
                "success": result.success,
                "transaction_hash": result.transaction_hash,
                "error": result.error.to_dict() if result.error else None,
            },
            level=level,
        )
        if self.audit is not None and self.audit.enabled():
            self.audit.append(
                ts_ms=now_ms(),
                run_id=run.run_id,
                chain=run.chain.value,
                operation=run.operation,
                state=result.state.value,
                ok=result.success,
                error_code=result.error.code if result.error else None,
                tx_hash=result.transaction_hash,
                summary={"digest": result.digest, "history": [s.value for s in run.history]},
            )
        return result

    def _fetch(self, source: Source, context: Mapping[str, Any]) -> Tuple[UnsignedTransaction, Optional[str]]:
        if isinstance(source, UnsignedTransaction):
            if source.chain is not self.chain:
                raise ValueError(f"{self.chain.value} pipeline cannot process a {source.chain.value} transaction")
            return source, None
        if isinstance(source, StakingTransaction):
            if ChainKind.parse(source.chain) is not self.chain:
                raise ValueError(f"{self.chain.value} pipeline cannot process a {source.chain} transaction")
            return self.adapter.parse_unsigned(source.unsigned_transaction_serialized, **context), source.signing_payload
        return self.adapter.parse_unsigned(source, **context), None

    def run(
        self,
        source: Source,
        key_refs: Sequence[KeyRef],
        *,
        allow_partial: bool = False,
        operation: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> PipelineResult:
        if operation is None and isinstance(source, StakingTransaction):
            operation = source.operation
        run = _Run(self.chain, operation)
        stage = PipelineState.FETCHED
        try:
            unsigned, signing_payload = self._fetch(source, context or {})
            self._enter(run, PipelineState.FETCHED, roles=list(unsigned.required_roles), summary=dict(unsigned.summary))

            stage = PipelineState.DIGEST_DERIVED
            run.digest = digest = self.adapter.derive_digest(unsigned)
            if signing_payload and not self.adapter.matches_signing_payload(unsigned, signing_payload):
                raise MalformedTransaction(
                    "upstream signing payload does not match the digest derived from the transaction",
                    {"kind": "signing_payload_mismatch", "derived": digest.hex()},
                )
            self._enter(run, PipelineState.DIGEST_DERIVED, digest=digest.hex())
        except PipelineError as e:
            return self._failed(run, stage, e)
        return self._sign_and_continue(run, unsigned, digest, [], key_refs, allow_partial=allow_partial, cancel=cancel)

    def resume(
        self,
        partial: PartiallySignedTransaction,
        key_refs: Sequence[KeyRef],
        *,
        allow_partial: bool = False,
        operation: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> PipelineResult:
        """
        Re-enter at SIGNED_PARTIAL with the witnesses another signer already produced.
        """
        if partial.chain is not self.chain:
            raise ValueError(f"{self.chain.value} pipeline cannot resume a {partial.chain.value} transaction")
        run = _Run(self.chain, operation)
        run.digest = digest = self.adapter.derive_digest(partial.unsigned)
        self._enter(run, PipelineState.SIGNED_PARTIAL, carried=[w.role for w in partial.witnesses])
        try:
            for w in partial.witnesses:
                self.verifier.require_valid(digest.value, w, stage=PipelineState.SIGNED_PARTIAL.value)
        except PipelineError as e:
            return self._failed(run, PipelineState.SIGNED_PARTIAL, e)
        return self._sign_and_continue(
            run, partial.unsigned, digest, list(partial.witnesses), key_refs, allow_partial=allow_partial, cancel=cancel
        )

    def _failed(self, run: _Run, stage: PipelineState, error: PipelineError) -> PipelineResult:
        self._enter(run, PipelineState.FAILED, error=error.code)
        return self._finish(
            run, PipelineResult(False, PipelineState.FAILED, run.chain, run.run_id, error=self._staged(error, stage))
        )

    def _sign_and_continue(
        self,
        run: _Run,
        unsigned: UnsignedTransaction,
        digest: SigningDigest,
        carried: List[Witness],
        key_refs: Sequence[KeyRef],
        *,
        allow_partial: bool,
        cancel: Optional[CancelToken],
    ) -> PipelineResult:
        stage = PipelineState.SIGNED
        try:
            present = list(self.adapter.existing_witnesses(unsigned)) + carried
            missing = self.adapter.missing_roles(unsigned, present)
            requests = [
                SigningRequest(role, digest.value, replace(k, role=role))
                for k in key_refs
                for role in [self.adapter.canonical_role(unsigned, k.role)]
                if role in missing
            ]
            if cancel is not None:
                cancel.raise_if_cancelled()
            results = []
            if requests:
                intent = build_signing_intent(
                    self.chain.value,
                    digest.value,
                    tuple(r.role for r in requests),
                    operation=run.operation,
                    summary=unsigned.summary,
                )
                results = self.signer.sign_many(requests, intent=intent, cancel=cancel)
            fresh = [Witness.from_result(r) for r in results]

            stage = PipelineState.VERIFIED
            for w in fresh:
                self.verifier.require_valid(digest.value, w, stage=stage.value)
            by_role = self.adapter.collect(unsigned, present + fresh)
            missing = self.adapter.missing_roles(unsigned, by_role.values())

            if missing:
                partial = self.adapter.assemble_partial(unsigned, list(by_role.values()))
                self._enter(run, PipelineState.SIGNED_PARTIAL, signed=sorted(by_role), missing=list(missing))
                error = None
                if not allow_partial:
                    error = IncompleteWitnessSet(
                        f"missing witnesses for roles: {', '.join(missing)}",
                        {"present": sorted(by_role)},
                        stage=PipelineState.SIGNED_PARTIAL.value,
                        missing_roles=missing,
                    )
                return self._finish(
                    run,
                    PipelineResult(allow_partial, PipelineState.SIGNED_PARTIAL, run.chain, run.run_id, error=error, partial=partial),
                )
            self._enter(run, PipelineState.SIGNED, roles=sorted(by_role))
            self._enter(run, PipelineState.VERIFIED)

            stage = PipelineState.ASSEMBLED
            signed = self.adapter.assemble_signed(unsigned, list(by_role.values()))
            self._enter(run, PipelineState.ASSEMBLED, transaction_hash=signed.transaction_hash)
            if self.broadcaster is None:
                return self._finish(
                    run,
                    PipelineResult(True, PipelineState.ASSEMBLED, run.chain, run.run_id, transaction_hash=signed.transaction_hash, signed=signed),
                )

            stage = PipelineState.BROADCAST
            if cancel is not None:
                cancel.raise_if_cancelled()
            sent = self.broadcaster.send(signed)
            self._enter(run, PipelineState.BROADCAST, transaction_hash=sent.transaction_hash)
        except PollCancelled as e:
            return self._failed(run, stage, OperationCancelled(str(e)))
        except PipelineError as e:
            return self._failed(run, stage, e)
        return self._after_broadcast(run, signed, sent.transaction_hash, cancel)

    def _after_broadcast(
        self, run: _Run, signed: SignedTransaction, tx_hash: str, cancel: Optional[CancelToken]
    ) -> PipelineResult:
        """
        The API accepted the transaction: every outcome from here keeps the hash and signed payload.
        """
        accepted = PipelineResult(False, PipelineState.BROADCAST, run.chain, run.run_id, transaction_hash=tx_hash, signed=signed)
        confirmation = None
        if self.wait_for_confirmation:
            try:
                confirmation = self.broadcaster.wait_for_confirmation(self.chain, tx_hash, cancel=cancel)
            except PollCancelled as e:
                error: PipelineError = OperationCancelled(str(e), {"transaction_hash": tx_hash})
                return self._finish(run, replace(accepted, error=self._staged(error, PipelineState.BROADCAST)))
            except PipelineError as e:
                # accepted upstream, finality unknown
                return self._finish(run, replace(accepted, error=self._staged(e, PipelineState.BROADCAST)))
            if confirmation.outcome == "failed":
                error = BroadcastRejected(
                    f"transaction {tx_hash} failed on chain",
                    {"reason": confirmation.status, "transaction_hash": tx_hash},
                    stage=PipelineState.BROADCAST.value,
                )
                self._enter(run, PipelineState.FAILED, error=error.code)
                return self._finish(
                    run, replace(accepted, state=PipelineState.FAILED, error=error, confirmation=confirmation)
                )
            if confirmation.outcome == "timeout":
                return self._finish(run, replace(accepted, confirmation=confirmation))
        self._enter(run, PipelineState.SUCCEEDED)
        return self._finish(run, replace(accepted, success=True, state=PipelineState.SUCCEEDED, confirmation=confirmation))

    @staticmethod
    def _staged(error: PipelineError, stage: PipelineState) -> PipelineError:
        if error.stage is None:
            error.stage = stage.value
        return error


@dataclass(frozen=True)
class BatchJob:
    pipeline: TransactionPipeline
    source: Source
    key_refs: Sequence[KeyRef]
    allow_partial: bool = False
    operation: Optional[str] = None
    context: Optional[Mapping[str, Any]] = None


def run_batch(jobs: Sequence[BatchJob], *, max_workers: int = 4, cancel: Optional[CancelToken] = None) -> List[PipelineResult]:
    """
    Run independent pipelines concurrently; results come back in job order.
    """
    if not jobs:
        return []

    def _one(job: BatchJob) -> PipelineResult:
        return job.pipeline.run(
            job.source,
            job.key_refs,
            allow_partial=job.allow_partial,
            operation=job.operation,
            context=job.context,
            cancel=cancel,
        )

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(jobs)))) as pool:
        return list(pool.map(_one, jobs))

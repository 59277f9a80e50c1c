import threading
from typing import Dict, Optional

from app.core.settings import Settings
from chains import ChainAdapter, ChainKind, get_adapter
from observability import AuditLog, configure_logging
from pipeline import TransactionPipeline
from polling import PollPolicy
from signing import SignatureVerifier, Signer, build_signer
from staking import ApiBroadcaster, StakingApiClient


class Container:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        configure_logging(self.settings.LOG_LEVEL)

        # Observability
        self.audit_log = AuditLog(self.settings.AUDIT_DB_PATH or "")

        # Shared collaborators
        self.verifier = SignatureVerifier()
        self.staking_client = StakingApiClient(
            self.settings.STAKING_API_URL,
            self.settings.STAKING_API_KEY,
            timeout=self.settings.HTTP_TIMEOUT_SEC,
        )

        # Signers are built lazily per chain: a custodian signer is bound to one asset
        self._signers: Dict[ChainKind, Signer] = {}
        self._lock = threading.Lock()

    def adapter_for(self, chain: ChainKind | str) -> ChainAdapter:
        return get_adapter(chain, self.verifier)

    def signer_for(self, chain: ChainKind | str) -> Signer:
        kind = ChainKind.parse(chain)
        with self._lock:
            if kind not in self._signers:
                self._signers[kind] = build_signer(self.settings, chain=kind.value)
            return self._signers[kind]

    def broadcaster_for(self, chain: ChainKind | str) -> ApiBroadcaster:
        return ApiBroadcaster(
            self.staking_client,
            network=self.settings.network_for(chain),
            poll_policy=PollPolicy(
                interval=self.settings.BROADCAST_POLL_INTERVAL_SEC,
                max_attempts=self.settings.BROADCAST_POLL_MAX_ATTEMPTS,
                timeout=None,
            ),
        )

    def pipeline_for(self, chain: ChainKind | str, *, broadcast: bool = True) -> TransactionPipeline:
        return TransactionPipeline(
            self.adapter_for(chain),
            self.signer_for(chain),
            verifier=self.verifier,
            broadcaster=self.broadcaster_for(chain) if broadcast else None,
            wait_for_confirmation=self.settings.WAIT_FOR_CONFIRMATION,
            audit=self.audit_log,
        )

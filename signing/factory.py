from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, List

from polling import PollPolicy

from .base import Curve, KeyRef, Signer
from .custodian import CustodianClient, CustodianSigner
from .encrypted_keystore import KeystoreKeySource
from .local_key import EnvKeySource, LocalKeySigner

if TYPE_CHECKING:
    from app.core.settings import Settings


def default_key_refs(chain: str) -> List[KeyRef]:
    """
    Key references for the roles each chain's staking transactions normally require.

    Names match `Settings.key_env_names()`; Cardano's stake key sits on bip44 change 2.
    """
    c = chain.strip().lower()
    if c == "ethereum":
        return [KeyRef("sender", Curve.SECP256K1, name="ethereum.sender")]
    if c == "solana":
        return [KeyRef("fee_payer", Curve.ED25519, name="solana.fee_payer")]
    if c == "cardano":
        return [
            KeyRef("payment", Curve.ED25519, name="cardano.payment"),
            KeyRef("stake", Curve.ED25519, name="cardano.stake", bip44_change=2),
        ]
    if c == "sui":
        return [KeyRef("sender", Curve.ED25519, name="sui.sender")]
    raise ValueError(f"Unsupported chain: {chain}")


def build_signer(settings: "Settings", *, chain: str = "ethereum") -> Signer:
    """
    Select signer based on SIGNER_TYPE.

    Supported:
    - local_key (default): secrets read from env vars named in settings, per call
    - keystore: Ethereum keystore JSON at KEYSTORE_PATH, passphrase from env per call
    - custodian: remote RAW message signing; `chain` picks the custodian asset
    """
    from app.core.settings import SignerType

    if settings.SIGNER_TYPE == SignerType.LOCAL_KEY:
        return LocalKeySigner(EnvKeySource(settings.key_env_names()))
    if settings.SIGNER_TYPE == SignerType.KEYSTORE:
        return LocalKeySigner(KeystoreKeySource({"": settings.KEYSTORE_PATH or ""}, settings.KEYSTORE_PASSWORD_ENV))
    if settings.SIGNER_TYPE == SignerType.CUSTODIAN:
        secret = Path(settings.CUSTODIAN_SECRET_PATH or "").expanduser().read_bytes()
        client = CustodianClient(
            settings.CUSTODIAN_URL,
            settings.CUSTODIAN_API_KEY or "",
            secret,
            timeout=settings.HTTP_TIMEOUT_SEC,
        )
        return CustodianSigner(
            client,
            vault_account_id=settings.CUSTODIAN_VAULT_ACCOUNT_ID or "",
            asset_id=settings.custodian_asset_for(chain),
            poll_policy=PollPolicy(
                interval=settings.CUSTODIAN_POLL_INTERVAL_SEC,
                max_attempts=settings.CUSTODIAN_POLL_MAX_ATTEMPTS,
                timeout=settings.CUSTODIAN_TIMEOUT_SEC,
            ),
            retry_policy=PollPolicy(interval=1.0, max_attempts=settings.SIGNER_RETRY_COUNT, timeout=None, backoff=2.0),
        )
    raise ValueError(f"Unsupported SIGNER_TYPE: {settings.SIGNER_TYPE}")

from .base import Curve, KeyRef, PublicKey, Signature, SignatureResult, Signer, SigningRequest, Witness
from .custodian import CustodianClient, CustodianSigner
from .encrypted_keystore import KeystoreKeySource
from .factory import build_signer, default_key_refs
from .intents import SigningIntent, build_signing_intent
from .local_key import EnvKeySource, KeySource, LocalKeySigner, decode_secret
from .verifier import SignatureVerifier

__all__ = [
    "Curve",
    "CustodianClient",
    "CustodianSigner",
    "EnvKeySource",
    "KeyRef",
    "KeySource",
    "KeystoreKeySource",
    "LocalKeySigner",
    "PublicKey",
    "Signature",
    "SignatureResult",
    "SignatureVerifier",
    "Signer",
    "SigningIntent",
    "SigningRequest",
    "Witness",
    "build_signer",
    "build_signing_intent",
    "decode_secret",
    "default_key_refs",
]

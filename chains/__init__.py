from __future__ import annotations

from typing import Dict, Optional, Type

from signing.verifier import SignatureVerifier

from .base import (
    ChainAdapter,
    ChainKind,
    PartiallySignedTransaction,
    SignedTransaction,
    SigningDigest,
    UnsignedTransaction,
    decode_blob,
)
from .cardano import CardanoAdapter
from .ethereum import EthereumAdapter
from .solana import SolanaAdapter
from .sui import SuiAdapter

_ADAPTERS: Dict[ChainKind, Type[ChainAdapter]] = {
    ChainKind.ETHEREUM: EthereumAdapter,
    ChainKind.SOLANA: SolanaAdapter,
    ChainKind.CARDANO: CardanoAdapter,
    ChainKind.SUI: SuiAdapter,
}


def get_adapter(chain: ChainKind | str, verifier: Optional[SignatureVerifier] = None) -> ChainAdapter:
    return _ADAPTERS[ChainKind.parse(chain)](verifier)


__all__ = [
    "CardanoAdapter",
    "ChainAdapter",
    "ChainKind",
    "EthereumAdapter",
    "PartiallySignedTransaction",
    "SignedTransaction",
    "SigningDigest",
    "SolanaAdapter",
    "SuiAdapter",
    "UnsignedTransaction",
    "decode_blob",
    "get_adapter",
]

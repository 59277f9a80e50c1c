"""
Staking pipeline settings.

A validated, typed settings layer over environment variables (and `.env`).
There is no module-level instance: construct `Settings()` once at
the edge of the program and pass it down.

Usage:
    from app.core.settings import Settings

    settings = Settings()
    network = settings.network_for("solana")
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv

from chains import ChainKind

# Load environment variables from .env file
load_dotenv()


class SignerType(Enum):
    """Signer backend types."""

    LOCAL_KEY = "local_key"
    KEYSTORE = "keystore"
    CUSTODIAN = "custodian"


class SettingsValidationError(Exception):
    """Raised when settings validation fails."""

    def __init__(self, field: str, value: Any, message: str):
        self.field = field
        self.value = value
        super().__init__(f"Invalid configuration for {field}={value!r}: {message}")


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean from environment variable."""
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("true", "1", "yes", "on")


def _parse_int(value: str | None, default: int | None = None) -> int | None:
    """Parse an integer from environment variable."""
    if value is None or value.strip() == "":
        return default
    try:
        return int(value.strip(), 0)
    except ValueError:
        return default


def _parse_float(value: str | None, default: float | None = None) -> float | None:
    """Parse a float from environment variable."""
    if value is None or value.strip() == "":
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str | None = None) -> str | None:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return v.strip()


def _get_version_from_pyproject() -> str:
    """Extract version from pyproject.toml."""
    try:
        pyproject_path = Path(__file__).parent.parent.parent / "pyproject.toml"
        with open(pyproject_path, "rb") as f:
            data = tomllib.load(f)
        version: str = str(data.get("project", {}).get("version", "0.0.0"))
        return version
    except (OSError, tomllib.TOMLDecodeError):
        return "0.0.0"


def _signer_type() -> SignerType:
    raw = (os.getenv("SIGNER_TYPE") or "local_key").strip().lower()
    if raw in [e.value for e in SignerType]:
        return SignerType(raw)
    return SignerType.LOCAL_KEY


DEFAULT_NETWORKS: Dict[ChainKind, str] = {
    ChainKind.ETHEREUM: "hoodi",
    ChainKind.SOLANA: "devnet",
    ChainKind.CARDANO: "preprod",
    ChainKind.SUI: "testnet",
}

# custodian asset ids: (mainnet, testnet)
_CUSTODIAN_ASSETS: Dict[ChainKind, tuple] = {
    ChainKind.ETHEREUM: ("ETH", "ETH_TEST_HOODI"),
    ChainKind.SOLANA: ("SOL", "SOL_TEST"),
    ChainKind.CARDANO: ("ADA", "ADA_TEST"),
    ChainKind.SUI: ("SUI", "SUI_TEST"),
}

_LOG_LEVELS = ("debug", "info", "warning", "error")


@dataclass
class Settings:
    """
    Unified settings class with validation.

    All configuration is loaded and validated at instantiation time.
    Secrets themselves (private keys, keystore passwords) are never stored here;
    only the names of the env vars that hold them.
    """

    PROJECT_NAME: str = "staking-signing-pipeline"
    VERSION: str = field(default_factory=_get_version_from_pyproject)

    # Staking API
    STAKING_API_URL: str = field(default_factory=lambda: (_env_str("STAKING_API_URL", "https://api.figment.io") or "").rstrip("/"))
    STAKING_API_KEY: str | None = field(default_factory=lambda: _env_str("STAKING_API_KEY") or _env_str("API_KEY"))
    NETWORK: str | None = field(default_factory=lambda: _env_str("NETWORK"))
    ETHEREUM_NETWORK: str | None = field(default_factory=lambda: _env_str("ETHEREUM_NETWORK"))
    SOLANA_NETWORK: str | None = field(default_factory=lambda: _env_str("SOLANA_NETWORK"))
    CARDANO_NETWORK: str | None = field(default_factory=lambda: _env_str("CARDANO_NETWORK"))
    SUI_NETWORK: str | None = field(default_factory=lambda: _env_str("SUI_NETWORK"))

    # Signer settings
    SIGNER_TYPE: SignerType = field(default_factory=_signer_type)
    ETHEREUM_KEY_ENV: str = field(default_factory=lambda: _env_str("ETHEREUM_KEY_ENV", "ETHEREUM_PRIVATE_KEY") or "")
    SOLANA_KEY_ENV: str = field(default_factory=lambda: _env_str("SOLANA_KEY_ENV", "SOLANA_SECRET_KEY") or "")
    CARDANO_PAYMENT_KEY_ENV: str = field(default_factory=lambda: _env_str("CARDANO_PAYMENT_KEY_ENV", "CARDANO_PAYMENT_KEY") or "")
    CARDANO_STAKE_KEY_ENV: str = field(default_factory=lambda: _env_str("CARDANO_STAKE_KEY_ENV", "CARDANO_STAKE_KEY") or "")
    SUI_KEY_ENV: str = field(default_factory=lambda: _env_str("SUI_KEY_ENV", "SUI_SECRET_KEY") or "")
    KEYSTORE_PATH: str | None = field(default_factory=lambda: _env_str("KEYSTORE_PATH"))
    KEYSTORE_PASSWORD_ENV: str = field(default_factory=lambda: _env_str("KEYSTORE_PASSWORD_ENV", "KEYSTORE_PASSWORD") or "")
    SIGNER_RETRY_COUNT: int = field(default_factory=lambda: _parse_int(os.getenv("SIGNER_RETRY_COUNT"), 3) or 3)

    # Custodian
    CUSTODIAN_URL: str = field(default_factory=lambda: (_env_str("CUSTODIAN_URL", "https://api.fireblocks.io") or "").rstrip("/"))
    CUSTODIAN_API_KEY: str | None = field(default_factory=lambda: _env_str("CUSTODIAN_API_KEY"))
    CUSTODIAN_SECRET_PATH: str | None = field(default_factory=lambda: _env_str("CUSTODIAN_SECRET_PATH"))
    CUSTODIAN_VAULT_ACCOUNT_ID: str | None = field(default_factory=lambda: _env_str("CUSTODIAN_VAULT_ACCOUNT_ID"))
    CUSTODIAN_POLL_INTERVAL_SEC: float = field(default_factory=lambda: _parse_float(os.getenv("CUSTODIAN_POLL_INTERVAL_SEC"), 3.0) or 3.0)
    CUSTODIAN_POLL_MAX_ATTEMPTS: int = field(default_factory=lambda: _parse_int(os.getenv("CUSTODIAN_POLL_MAX_ATTEMPTS"), 100) or 100)
    CUSTODIAN_TIMEOUT_SEC: float = field(default_factory=lambda: _parse_float(os.getenv("CUSTODIAN_TIMEOUT_SEC"), 300.0) or 300.0)

    # Broadcast
    WAIT_FOR_CONFIRMATION: bool = field(default_factory=lambda: _parse_bool(os.getenv("WAIT_FOR_CONFIRMATION"), False))
    BROADCAST_POLL_INTERVAL_SEC: float = field(default_factory=lambda: _parse_float(os.getenv("BROADCAST_POLL_INTERVAL_SEC"), 3.0) or 3.0)
    BROADCAST_POLL_MAX_ATTEMPTS: int = field(default_factory=lambda: _parse_int(os.getenv("BROADCAST_POLL_MAX_ATTEMPTS"), 30) or 30)

    # Transport / RPC
    HTTP_TIMEOUT_SEC: float = field(default_factory=lambda: _parse_float(os.getenv("HTTP_TIMEOUT_SEC"), 10.0) or 10.0)
    EVM_RPC_URL: str | None = field(default_factory=lambda: _env_str("EVM_RPC_URL"))
    SOLANA_RPC_URL: str | None = field(default_factory=lambda: _env_str("SOLANA_RPC_URL"))

    # Concurrency
    BATCH_MAX_WORKERS: int = field(default_factory=lambda: _parse_int(os.getenv("BATCH_MAX_WORKERS"), 4) or 4)

    # Observability
    LOG_LEVEL: str = field(default_factory=lambda: (_env_str("LOG_LEVEL", "info") or "info").lower())
    AUDIT_DB_PATH: str | None = field(default_factory=lambda: _env_str("AUDIT_DB_PATH"))

    def __post_init__(self) -> None:
        """Validate settings after initialization."""
        self._validate()

    def _validate(self) -> None:
        """Validate all settings and emit configuration warnings."""
        import warnings

        errors: list[str] = []

        if self.SIGNER_TYPE == SignerType.KEYSTORE and not self.KEYSTORE_PATH:
            errors.append("KEYSTORE_PATH required when SIGNER_TYPE=keystore")
        elif self.SIGNER_TYPE == SignerType.CUSTODIAN:
            missing = [
                name
                for name in ("CUSTODIAN_API_KEY", "CUSTODIAN_SECRET_PATH", "CUSTODIAN_VAULT_ACCOUNT_ID")
                if not getattr(self, name)
            ]
            if missing:
                errors.append(f"{', '.join(missing)} required when SIGNER_TYPE=custodian")

        if self.CUSTODIAN_POLL_INTERVAL_SEC <= 0:
            errors.append(f"CUSTODIAN_POLL_INTERVAL_SEC must be positive, got {self.CUSTODIAN_POLL_INTERVAL_SEC}")
        if self.CUSTODIAN_POLL_MAX_ATTEMPTS < 1:
            errors.append(f"CUSTODIAN_POLL_MAX_ATTEMPTS must be >= 1, got {self.CUSTODIAN_POLL_MAX_ATTEMPTS}")
        if self.BROADCAST_POLL_MAX_ATTEMPTS < 1:
            errors.append(f"BROADCAST_POLL_MAX_ATTEMPTS must be >= 1, got {self.BROADCAST_POLL_MAX_ATTEMPTS}")
        if self.SIGNER_RETRY_COUNT < 1:
            errors.append(f"SIGNER_RETRY_COUNT must be >= 1, got {self.SIGNER_RETRY_COUNT}")
        if self.HTTP_TIMEOUT_SEC <= 0:
            errors.append(f"HTTP_TIMEOUT_SEC must be positive, got {self.HTTP_TIMEOUT_SEC}")
        if self.BATCH_MAX_WORKERS < 1:
            errors.append(f"BATCH_MAX_WORKERS must be >= 1, got {self.BATCH_MAX_WORKERS}")
        if self.LOG_LEVEL not in _LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}, got {self.LOG_LEVEL}")

        if not self.STAKING_API_KEY:
            warnings.warn(
                "STAKING_API_KEY not set: staking API calls (create/broadcast/status) will be rejected.",
                UserWarning,
                stacklevel=3,
            )

        if errors:
            raise SettingsValidationError("MULTIPLE", None, "; ".join(errors))

    def network_for(self, chain: ChainKind | str) -> str:
        kind = ChainKind.parse(chain)
        specific = getattr(self, f"{kind.name}_NETWORK")
        return specific or self.NETWORK or DEFAULT_NETWORKS[kind]

    def custodian_asset_for(self, chain: ChainKind | str) -> str:
        kind = ChainKind.parse(chain)
        override = _env_str(f"CUSTODIAN_ASSET_{kind.name}")
        if override:
            return override
        mainnet, testnet = _CUSTODIAN_ASSETS[kind]
        return mainnet if self.network_for(kind) == "mainnet" else testnet

    def key_env_names(self) -> Dict[str, str]:
        return {
            "ethereum.sender": self.ETHEREUM_KEY_ENV,
            "solana.fee_payer": self.SOLANA_KEY_ENV,
            "cardano.payment": self.CARDANO_PAYMENT_KEY_ENV,
            "cardano.stake": self.CARDANO_STAKE_KEY_ENV,
            "sui.sender": self.SUI_KEY_ENV,
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert settings to dictionary (redacting secrets)."""
        result: dict[str, Any] = {}
        for key in dir(self):
            if key.startswith("_") or key.isupper() is False:
                continue
            value = getattr(self, key)
            if key.endswith("_ENV"):
                result[key] = value
            elif any(s in key.upper() for s in ["SECRET", "PASSWORD", "KEY", "TOKEN"]):
                result[key] = "***REDACTED***" if value else None
            elif isinstance(value, Enum):
                result[key] = value.value
            else:
                result[key] = value
        return result

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple


@dataclass(frozen=True)
class SigningIntent:
    """
    Explicit description of what a digest authorizes.

    Custodians only ever see opaque digests; the intent travels alongside as the
    request note so approvers and audit logs can tell what they are signing.
    This is a *description*; it is never itself signed.
    """

    chain: str
    digest_hex: str
    roles: Tuple[str, ...]
    operation: Optional[str] = None
    summary: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": self.chain,
            "digest": self.digest_hex,
            "roles": list(self.roles),
            "operation": self.operation,
            "summary": dict(self.summary),
        }

    def note(self) -> str:
        op = self.operation or "transaction"
        return f"Sign {self.chain} {op} ({', '.join(self.roles)}) digest {self.digest_hex[:16]}"


def build_signing_intent(
    chain: str,
    digest: bytes,
    roles: Tuple[str, ...],
    *,
    operation: str | None = None,
    summary: Mapping[str, Any] | None = None,
) -> SigningIntent:
    # keep only scalar summary fields; nested structures stay out of custodian notes
    flat = {k: v for k, v in (summary or {}).items() if isinstance(v, (str, int, float, bool)) or v is None}
    return SigningIntent(chain=chain, digest_hex=digest.hex(), roles=tuple(roles), operation=operation, summary=flat)

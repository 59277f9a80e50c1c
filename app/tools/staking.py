import json
from typing import Any, Callable, Dict

from fastmcp import FastMCP

from app.core.container import Container
from chains import ChainKind, PartiallySignedTransaction
from errors import classify_exception
from rpc import (
    SolanaRpc,
    build_consolidation_request_tx,
    build_delegate_tx,
    build_deposit_topup_tx,
    build_stake_account_tx,
    build_withdrawal_request_tx,
    get_web3,
)
from signing import PublicKey, Signature, default_key_refs
from staking import StakingTransaction


def _json_ok(data: Dict[str, Any] | None = None) -> str:
    payload = {"ok": True, "data": data or {}}
    return json.dumps(payload, indent=2, sort_keys=True)

def _json_err(code: str, message: str, data: Dict[str, Any] | None = None) -> str:
    payload = {"ok": False, "error": {"code": code, "message": message, "data": data or {}}}
    return json.dumps(payload, indent=2, sort_keys=True)

def _from_exception(e: Exception) -> str:
    err = classify_exception(e)
    return _json_err(err.code, err.message, err.to_dict())

def _params(params_json: str) -> Dict[str, Any]:
    if not params_json.strip():
        return {}
    parsed = json.loads(params_json)
    if not isinstance(parsed, dict):
        raise ValueError("params_json must be a JSON object")
    return parsed


def register_staking_tools(mcp: FastMCP, container: Container) -> Dict[str, Callable[..., str]]:
    """Register the staking tools on `mcp`; returns the plain callables by name."""

    def create_staking_transaction(chain: str, operation: str, params_json: str = "{}", network: str = "") -> str:
        """
        Ask the staking API for an unsigned transaction (stake, unstake, withdraw, exit, ...).

        Returns the unsigned blob, the locally derived signing digest and the signer roles it needs.
        """
        try:
            kind = ChainKind.parse(chain)
            net = network or container.settings.network_for(kind)
            tx = container.staking_client.create_transaction(kind.value, operation, network=net, **_params(params_json))
            adapter = container.adapter_for(kind)
            unsigned = adapter.parse_unsigned(tx.unsigned_transaction_serialized)
            digest = adapter.derive_digest(unsigned)
            return _json_ok(
                {
                    "chain": kind.value,
                    "operation": operation,
                    "network": net,
                    "unsigned_transaction_serialized": tx.unsigned_transaction_serialized,
                    "signing_payload": tx.signing_payload,
                    "signing_payload_matches": (
                        adapter.matches_signing_payload(unsigned, tx.signing_payload) if tx.signing_payload else None
                    ),
                    "digest": digest.hex(),
                    "required_roles": list(unsigned.required_roles),
                    "summary": dict(unsigned.summary),
                }
            )
        except Exception as e:
            return _from_exception(e)

    def signing_digest(chain: str, unsigned_transaction: str) -> str:
        """Derive the exact bytes a signer must sign for an unsigned transaction (hex or base64)."""
        try:
            adapter = container.adapter_for(chain)
            unsigned = adapter.parse_unsigned(unsigned_transaction)
            return _json_ok(
                {
                    "chain": adapter.chain.value,
                    "digest": adapter.derive_digest(unsigned).hex(),
                    "required_roles": list(unsigned.required_roles),
                    "existing_witnesses": [w.role for w in adapter.existing_witnesses(unsigned)],
                    "summary": dict(unsigned.summary),
                }
            )
        except Exception as e:
            return _from_exception(e)

    def sign_and_broadcast(
        chain: str,
        unsigned_transaction: str = "",
        signing_payload: str = "",
        operation: str = "",
        partial_json: str = "",
        broadcast: bool = True,
        allow_partial: bool = False,
    ) -> str:
        """
        Sign an unsigned staking transaction with the configured signer, verify, assemble and broadcast.

        Pass `partial_json` (a previous partial result) instead of `unsigned_transaction`
        to add the remaining signatures. With `allow_partial`, a transaction still missing
        roles is returned for hand-off rather than treated as an error.
        """
        try:
            kind = ChainKind.parse(chain)
            pipeline = container.pipeline_for(kind, broadcast=broadcast)
            key_refs = default_key_refs(kind.value)
            if partial_json.strip():
                partial = PartiallySignedTransaction.from_dict(json.loads(partial_json))
                result = pipeline.resume(partial, key_refs, allow_partial=allow_partial, operation=operation or None)
            else:
                if not unsigned_transaction:
                    return _json_err("invalid_input", "unsigned_transaction or partial_json is required")
                source = StakingTransaction(
                    chain=kind.value,
                    operation=operation or "transaction",
                    network=container.settings.network_for(kind),
                    unsigned_transaction_serialized=unsigned_transaction,
                    signing_payload=signing_payload or None,
                )
                result = pipeline.run(source, key_refs, allow_partial=allow_partial)
        except Exception as e:
            return _from_exception(e)
        if result.error is not None and not result.success:
            return _json_err(result.error.code, result.error.message, result.to_dict())
        return _json_ok(result.to_dict())

    def verify_signature(chain: str, digest_hex: str, signature_hex: str, public_key_hex: str) -> str:
        """Check a signature over a digest with the chain's curve."""
        try:
            curve = ChainKind.parse(chain).curve
            sig = Signature.from_hex(curve, signature_hex)
            pub = PublicKey.normalize(curve, public_key_hex)
            digest = bytes.fromhex(digest_hex[2:] if digest_hex.startswith("0x") else digest_hex)
            return _json_ok({"valid": container.verifier.verify(digest, sig, pub), "curve": curve.value})
        except Exception as e:
            return _from_exception(e)

    def transaction_status(chain: str, tx_hash: str, network: str = "") -> str:
        """Look up a broadcast transaction's status through the staking API."""
        try:
            kind = ChainKind.parse(chain)
            net = network or container.settings.network_for(kind)
            status = container.staking_client.transaction_status(kind.value, tx_hash, network=net)
            return _json_ok(
                {
                    "hash": status.hash,
                    "status": status.status,
                    "terminal": status.is_terminal,
                    "success": status.is_success,
                }
            )
        except Exception as e:
            return _from_exception(e)

    def build_validator_request(
        request_type: str,
        sender: str,
        validator_pubkey: str,
        amount_gwei: int = 0,
        target_pubkey: str = "",
        fee_limit_wei: int = -1,
    ) -> str:
        """
        Build an unsigned Ethereum execution-layer validator request against EVM_RPC_URL.

        request_type: `withdrawal` (amount_gwei=0 is a full exit), `consolidation` (needs target_pubkey)
        or `deposit` (a top-up of at least 1 ETH, amount_gwei required; fee_limit_wei is ignored).
        The result can be passed to `sign_and_broadcast` as `unsigned_transaction`.
        """
        try:
            w3 = get_web3(container.settings.EVM_RPC_URL or "", timeout=container.settings.HTTP_TIMEOUT_SEC)
            limit = fee_limit_wei if fee_limit_wei >= 0 else None
            kind = request_type.strip().lower()
            if kind == "withdrawal":
                raw = build_withdrawal_request_tx(w3, sender, validator_pubkey, amount_gwei, limit)
            elif kind == "consolidation":
                if not target_pubkey:
                    return _json_err("invalid_input", "target_pubkey is required for a consolidation request")
                raw = build_consolidation_request_tx(w3, sender, validator_pubkey, target_pubkey, limit)
            elif kind == "deposit":
                raw = build_deposit_topup_tx(w3, sender, validator_pubkey, amount_gwei)
            else:
                return _json_err("invalid_input", f"unsupported request_type: {request_type}")
            adapter = container.adapter_for(ChainKind.ETHEREUM)
            unsigned = adapter.parse_unsigned(raw)
            return _json_ok(
                {
                    "unsigned_transaction_serialized": raw.hex(),
                    "digest": adapter.derive_digest(unsigned).hex(),
                    "summary": dict(unsigned.summary),
                }
            )
        except Exception as e:
            return _from_exception(e)

    def build_solana_stake(operation: str, owner: str, stake_account: str, vote_account: str = "", amount_sol: str = "") -> str:
        """
        Build an unsigned Solana stake transaction locally against SOLANA_RPC_URL.

        operation: `create_stake_account` (owner funds a new stake account; both sign) or
        `delegate` (owner, as stake authority, delegates stake_account to vote_account).
        """
        try:
            rpc = SolanaRpc(container.settings.SOLANA_RPC_URL or "", timeout=container.settings.HTTP_TIMEOUT_SEC)
            kind = operation.strip().lower()
            if kind == "create_stake_account":
                if not amount_sol:
                    return _json_err("invalid_input", "amount_sol is required to create a stake account")
                raw = build_stake_account_tx(rpc, owner, stake_account, amount_sol)
            elif kind == "delegate":
                if not vote_account:
                    return _json_err("invalid_input", "vote_account is required to delegate")
                raw = build_delegate_tx(rpc, owner, stake_account, vote_account)
            else:
                return _json_err("invalid_input", f"unsupported operation: {operation}")
            adapter = container.adapter_for(ChainKind.SOLANA)
            unsigned = adapter.parse_unsigned(raw)
            return _json_ok(
                {
                    "unsigned_transaction_serialized": raw.hex(),
                    "digest": adapter.derive_digest(unsigned).hex(),
                    "required_roles": list(unsigned.required_roles),
                    "summary": dict(unsigned.summary),
                }
            )
        except Exception as e:
            return _from_exception(e)

    def list_stakes(chain: str, network: str = "", params_json: str = "{}") -> str:
        """List stakes the staking API knows for a chain; `params_json` carries its filters (e.g. an address)."""
        try:
            kind = ChainKind.parse(chain)
            net = network or container.settings.network_for(kind)
            return _json_ok(container.staking_client.stakes(kind.value, network=net, **_params(params_json)))
        except Exception as e:
            return _from_exception(e)

    tools = {
        fn.__name__: fn
        for fn in (
            create_staking_transaction,
            signing_digest,
            sign_and_broadcast,
            verify_signature,
            transaction_status,
            build_validator_request,
            build_solana_stake,
            list_stakes,
        )
    }
    for fn in tools.values():
        mcp.tool()(fn)
    return tools

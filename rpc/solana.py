from __future__ import annotations

import struct
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional, Tuple

import requests
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature as SolSignature
from solders.system_program import CreateAccountParams, create_account
from solders.transaction import VersionedTransaction

from observability import build_log_context, log_event

STAKE_PROGRAM_ID = Pubkey.from_string("Stake11111111111111111111111111111111111111")
STAKE_CONFIG_ID = Pubkey.from_string("StakeConfig11111111111111111111111111111111")
SYSVAR_RENT = Pubkey.from_string("SysvarRent111111111111111111111111111111111")
SYSVAR_CLOCK = Pubkey.from_string("SysvarC1ock11111111111111111111111111111111")
SYSVAR_STAKE_HISTORY = Pubkey.from_string("SysvarStakeHistory1111111111111111111111111")

STAKE_ACCOUNT_SPACE = 200
LAMPORTS_PER_SOL = 1_000_000_000

# stake program instruction indices
_INITIALIZE = 0
_DELEGATE_STAKE = 2


def sol_to_lamports(amount: str) -> int:
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation as e:
        raise ValueError(f"invalid SOL amount: {amount!r}") from e
    lamports = value * LAMPORTS_PER_SOL
    if value <= 0 or lamports != lamports.to_integral_value():
        raise ValueError(f"SOL amount must be positive with at most 9 decimals: {amount!r}")
    return int(lamports)


def _pubkey(value: str | Pubkey) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    try:
        return Pubkey.from_string(value.strip())
    except ValueError as e:
        raise ValueError(f"invalid Solana public key: {value!r}") from e


class SolanaRpc:
    """
    Minimal JSON-RPC reader for the inputs a locally built stake transaction needs.
    """

    def __init__(self, url: str, *, timeout: float = 10.0, session: Optional[requests.Session] = None) -> None:
        if not (url or "").strip():
            raise ValueError("Missing RPC URL. Set SOLANA_RPC_URL.")
        self._url = url.strip()
        self._timeout = float(timeout)
        self._session = session or requests.Session()

    def _call(self, method: str, params: List[Any]) -> Any:
        r = self._session.post(
            self._url,
            json={"jsonrpc": "2.0", "id": 1, "method": method, "params": params},
            timeout=self._timeout,
        )
        r.raise_for_status()
        body = r.json()
        if "error" in body:
            err = body["error"]
            message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            log_event("solana_rpc_error", ctx=build_log_context(method=method), data={"error": message}, level="warning")
            raise ValueError(f"solana rpc {method} failed: {message}")
        return body.get("result")

    def latest_blockhash(self, commitment: str = "confirmed") -> Tuple[Hash, int]:
        result = self._call("getLatestBlockhash", [{"commitment": commitment}])
        value = result["value"]
        return Hash.from_string(value["blockhash"]), int(value["lastValidBlockHeight"])

    def minimum_balance_for_rent_exemption(self, space: int) -> int:
        return int(self._call("getMinimumBalanceForRentExemption", [space]))


def initialize_stake_instruction(stake_account: Pubkey, staker: Pubkey, withdrawer: Pubkey) -> Instruction:
    # Authorized{staker, withdrawer} then a zero Lockup{unix_timestamp, epoch, custodian}
    data = struct.pack("<I", _INITIALIZE) + bytes(staker) + bytes(withdrawer) + struct.pack("<qQ", 0, 0) + bytes(32)
    return Instruction(
        STAKE_PROGRAM_ID,
        data,
        [AccountMeta(stake_account, is_signer=False, is_writable=True), AccountMeta(SYSVAR_RENT, is_signer=False, is_writable=False)],
    )


def delegate_stake_instruction(stake_account: Pubkey, authority: Pubkey, vote_account: Pubkey) -> Instruction:
    return Instruction(
        STAKE_PROGRAM_ID,
        struct.pack("<I", _DELEGATE_STAKE),
        [
            AccountMeta(stake_account, is_signer=False, is_writable=True),
            AccountMeta(vote_account, is_signer=False, is_writable=False),
            AccountMeta(SYSVAR_CLOCK, is_signer=False, is_writable=False),
            AccountMeta(SYSVAR_STAKE_HISTORY, is_signer=False, is_writable=False),
            AccountMeta(STAKE_CONFIG_ID, is_signer=False, is_writable=False),
            AccountMeta(authority, is_signer=True, is_writable=False),
        ],
    )


def create_stake_account_message(
    owner: Pubkey, stake_account: Pubkey, lamports: int, blockhash: Hash
) -> Message:
    """
    Create and initialize a stake account funded by `owner`, who is also staker and withdrawer.

    Both `owner` (fee payer) and the new `stake_account` must sign.
    """
    create = create_account(
        CreateAccountParams(
            from_pubkey=owner,
            to_pubkey=stake_account,
            lamports=lamports,
            space=STAKE_ACCOUNT_SPACE,
            owner=STAKE_PROGRAM_ID,
        )
    )
    init = initialize_stake_instruction(stake_account, owner, owner)
    return Message.new_with_blockhash([create, init], owner, blockhash)


def delegate_message(authority: Pubkey, stake_account: Pubkey, vote_account: Pubkey, blockhash: Hash) -> Message:
    return Message.new_with_blockhash([delegate_stake_instruction(stake_account, authority, vote_account)], authority, blockhash)


def unsigned_wire(message: Message) -> bytes:
    """Wire transaction with empty signature slots, the form SolanaAdapter parses."""
    slots = [SolSignature.default()] * message.header.num_required_signatures
    return bytes(VersionedTransaction.populate(message, slots))


def build_stake_account_tx(rpc: SolanaRpc, owner: str, stake_account: str, amount_sol: str) -> bytes:
    """
    Unsigned create-stake-account transaction holding `amount_sol` on top of the rent-exempt minimum.
    """
    owner_key, stake_key = _pubkey(owner), _pubkey(stake_account)
    if owner_key == stake_key:
        raise ValueError("stake account must differ from the owner")
    lamports = rpc.minimum_balance_for_rent_exemption(STAKE_ACCOUNT_SPACE) + sol_to_lamports(amount_sol)
    blockhash, _ = rpc.latest_blockhash()
    return unsigned_wire(create_stake_account_message(owner_key, stake_key, lamports, blockhash))


def build_delegate_tx(rpc: SolanaRpc, authority: str, stake_account: str, vote_account: str) -> bytes:
    keys = _pubkey(authority), _pubkey(stake_account), _pubkey(vote_account)
    blockhash, _ = rpc.latest_blockhash()
    return unsigned_wire(delegate_message(*keys, blockhash))

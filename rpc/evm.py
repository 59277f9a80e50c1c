from __future__ import annotations

import hashlib
from functools import lru_cache
from typing import Any, Dict, Optional

from eth_abi import encode as abi_encode
from eth_utils import function_signature_to_4byte_selector
from web3 import Web3
from web3.providers.rpc import HTTPProvider

from chains.ethereum import encode_unsigned

# execution-layer request predeploys
WITHDRAWAL_REQUEST_PREDEPLOY = "0x00000961Ef480Eb55e80D19ad83579A64c007002"
CONSOLIDATION_REQUEST_PREDEPLOY = "0x0000BBdDc7CE488642fb579F8B00f3a590007251"

# same address on mainnet and hoodi
DEPOSIT_CONTRACT = "0x00000000219ab540356cBB839Cbe05303d7705Fa"
DEPOSIT_SELECTOR = function_signature_to_4byte_selector("deposit(bytes,bytes,bytes,bytes32)")
MIN_DEPOSIT_GWEI = 1_000_000_000
GWEI = 10**9

VALIDATOR_PUBKEY_LEN = 48
DEFAULT_REQUEST_GAS = 200_000


@lru_cache(maxsize=16)
def get_web3(rpc_url: str, timeout: float = 10.0) -> Web3:
    url = (rpc_url or "").strip()
    if not url:
        raise ValueError("Missing RPC URL. Set EVM_RPC_URL.")
    w3 = Web3(HTTPProvider(url, request_kwargs={"timeout": float(timeout)}))
    if not w3.is_connected():
        raise ValueError(f"RPC not reachable ({url})")
    return w3


def validator_pubkey_bytes(pubkey: str | bytes) -> bytes:
    if isinstance(pubkey, bytes):
        b = pubkey
    else:
        s = pubkey.strip()
        if s.startswith("0x"):
            s = s[2:]
        try:
            b = bytes.fromhex(s)
        except ValueError as e:
            raise ValueError("validator pubkey must be hex") from e
    if len(b) != VALIDATOR_PUBKEY_LEN:
        raise ValueError(f"validator pubkey must be {VALIDATOR_PUBKEY_LEN} bytes, got {len(b)}")
    return b


def request_fee(w3: Web3, predeploy: str) -> int:
    """
    Current request fee in wei; the predeploy returns it for a call with empty calldata.
    """
    out = w3.eth.call({"to": w3.to_checksum_address(predeploy), "data": "0x"})
    return int.from_bytes(bytes(out), "big")


def _eip1559_tx(w3: Web3, sender: str, to_address: str, value: int, calldata: bytes, gas: Optional[int]) -> bytes:
    frm = w3.to_checksum_address(sender)
    to = w3.to_checksum_address(to_address)
    base_fee = int(w3.eth.get_block("latest").get("baseFeePerGas") or 0)
    priority = int(w3.eth.max_priority_fee)
    tx: Dict[str, Any] = {
        "type": 2,
        "chainId": int(w3.eth.chain_id),
        "nonce": int(w3.eth.get_transaction_count(frm, "pending")),
        "maxPriorityFeePerGas": priority,
        "maxFeePerGas": 2 * base_fee + priority,
        "to": to,
        "value": value,
        "data": calldata,
        "accessList": [],
    }
    if gas is None:
        gas = int(w3.eth.estimate_gas({"from": frm, "to": to, "value": value, "data": "0x" + calldata.hex()}))
    tx["gas"] = gas
    return encode_unsigned(tx)


def _request_tx(
    w3: Web3,
    sender: str,
    predeploy: str,
    calldata: bytes,
    fee_limit_wei: Optional[int],
    gas: Optional[int],
) -> bytes:
    fee = request_fee(w3, predeploy)
    if fee_limit_wei is not None and fee > fee_limit_wei:
        raise ValueError(f"request fee {fee} wei exceeds limit {fee_limit_wei} wei")
    return _eip1559_tx(w3, sender, predeploy, fee, calldata, gas)


def build_withdrawal_request_tx(
    w3: Web3,
    sender: str,
    validator_pubkey: str | bytes,
    amount_gwei: int = 0,
    fee_limit_wei: Optional[int] = None,
    *,
    gas: Optional[int] = DEFAULT_REQUEST_GAS,
) -> bytes:
    """
    Unsigned EIP-1559 withdrawal request for a validator with execution-layer credentials.

    `amount_gwei=0` requests a full exit.
    """
    if amount_gwei < 0 or amount_gwei >= 2**64:
        raise ValueError("amount_gwei out of range")
    calldata = validator_pubkey_bytes(validator_pubkey) + int(amount_gwei).to_bytes(8, "big")
    return _request_tx(w3, sender, WITHDRAWAL_REQUEST_PREDEPLOY, calldata, fee_limit_wei, gas)


def build_consolidation_request_tx(
    w3: Web3,
    sender: str,
    source_pubkey: str | bytes,
    target_pubkey: str | bytes,
    fee_limit_wei: Optional[int] = None,
    *,
    gas: Optional[int] = DEFAULT_REQUEST_GAS,
) -> bytes:
    calldata = validator_pubkey_bytes(source_pubkey) + validator_pubkey_bytes(target_pubkey)
    return _request_tx(w3, sender, CONSOLIDATION_REQUEST_PREDEPLOY, calldata, fee_limit_wei, gas)


def deposit_data_root(pubkey: bytes, withdrawal_credentials: bytes, amount_gwei: int, signature: bytes) -> bytes:
    """
    SSZ hash_tree_root of DepositData, computed the way the deposit contract checks it.
    """
    if len(pubkey) != VALIDATOR_PUBKEY_LEN or len(withdrawal_credentials) != 32 or len(signature) != 96:
        raise ValueError("deposit data needs a 48-byte pubkey, 32-byte credentials and a 96-byte signature")

    def sha(b: bytes) -> bytes:
        return hashlib.sha256(b).digest()

    pubkey_root = sha(pubkey + bytes(16))
    signature_root = sha(sha(signature[:64]) + sha(signature[64:] + bytes(32)))
    return sha(
        sha(pubkey_root + withdrawal_credentials)
        + sha(int(amount_gwei).to_bytes(8, "little") + bytes(24) + signature_root)
    )


def deposit_calldata(pubkey: bytes, withdrawal_credentials: bytes, signature: bytes, root: bytes) -> bytes:
    return DEPOSIT_SELECTOR + abi_encode(
        ["bytes", "bytes", "bytes", "bytes32"], [pubkey, withdrawal_credentials, signature, root]
    )


def build_deposit_topup_tx(
    w3: Web3,
    sender: str,
    validator_pubkey: str | bytes,
    amount_gwei: int,
    *,
    deposit_contract: str = DEPOSIT_CONTRACT,
    gas: Optional[int] = None,
) -> bytes:
    """
    Unsigned deposit-contract call that tops up an existing validator.

    A top-up carries zeroed withdrawal credentials and signature; the consensus
    layer credits the amount to the validator already registered under the pubkey.
    """
    if amount_gwei < MIN_DEPOSIT_GWEI:
        raise ValueError(f"deposit amount must be at least {MIN_DEPOSIT_GWEI} gwei (1 ETH)")
    if amount_gwei >= 2**64:
        raise ValueError("amount_gwei out of range")
    pubkey = validator_pubkey_bytes(validator_pubkey)
    credentials, signature = bytes(32), bytes(96)
    root = deposit_data_root(pubkey, credentials, amount_gwei, signature)
    calldata = deposit_calldata(pubkey, credentials, signature, root)
    return _eip1559_tx(w3, sender, deposit_contract, int(amount_gwei) * GWEI, calldata, gas)

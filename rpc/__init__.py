from .evm import (
    CONSOLIDATION_REQUEST_PREDEPLOY,
    DEPOSIT_CONTRACT,
    WITHDRAWAL_REQUEST_PREDEPLOY,
    build_consolidation_request_tx,
    build_deposit_topup_tx,
    build_withdrawal_request_tx,
    deposit_data_root,
    get_web3,
    request_fee,
)
from .solana import SolanaRpc, build_delegate_tx, build_stake_account_tx, sol_to_lamports

__all__ = [
    "CONSOLIDATION_REQUEST_PREDEPLOY",
    "DEPOSIT_CONTRACT",
    "WITHDRAWAL_REQUEST_PREDEPLOY",
    "SolanaRpc",
    "build_consolidation_request_tx",
    "build_delegate_tx",
    "build_deposit_topup_tx",
    "build_stake_account_tx",
    "build_withdrawal_request_tx",
    "deposit_data_root",
    "get_web3",
    "request_fee",
    "sol_to_lamports",
]

import json
from unittest.mock import MagicMock, patch

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from fastmcp import FastMCP

from app.core.container import Container
from app.core.settings import Settings
from app.tools.staking import register_staking_tools
from solders.hash import Hash
from solders.keypair import Keypair

from chains import SuiAdapter
from errors import BroadcastRejected
from staking import BroadcastReceipt, StakingTransaction, TransactionStatus

from conftest import ed25519_public, seed
from test_rpc_evm import PUBKEY, SENDER, fake_w3
from test_sui import STAKE_TX_HEX, stake_tx_for


@pytest.fixture
def container(monkeypatch):
    monkeypatch.setenv("SUI_SECRET_KEY", seed(1).hex())
    monkeypatch.setenv("EVM_RPC_URL", "http://127.0.0.1:8545")
    return Container(Settings())


@pytest.fixture
def tools(container):
    return register_staking_tools(FastMCP("test"), container)


def test_all_tools_are_registered(tools):
    assert set(tools) == {
        "create_staking_transaction",
        "signing_digest",
        "sign_and_broadcast",
        "verify_signature",
        "transaction_status",
        "build_validator_request",
        "build_solana_stake",
        "list_stakes",
    }


def test_signing_digest(tools):
    res = json.loads(tools["signing_digest"]("sui", STAKE_TX_HEX))
    assert res["ok"] is True
    adapter = SuiAdapter()
    assert res["data"]["digest"] == adapter.derive_digest(adapter.parse_unsigned(STAKE_TX_HEX)).hex()
    assert res["data"]["required_roles"] == ["sender"]


def test_signing_digest_malformed(tools):
    res = json.loads(tools["signing_digest"]("sui", STAKE_TX_HEX[:-4]))
    assert res["ok"] is False
    assert res["error"]["code"] == "malformed_transaction"


def test_unsupported_chain(tools):
    res = json.loads(tools["signing_digest"]("bitcoin", "00"))
    assert res["ok"] is False
    assert "Unsupported chain" in res["error"]["message"]


def test_create_staking_transaction(tools, container):
    raw = stake_tx_for(seed(1))
    with patch.object(container, "staking_client") as client:
        client.create_transaction.return_value = StakingTransaction(
            chain="sui",
            operation="stake",
            network="testnet",
            unsigned_transaction_serialized=raw.hex(),
            signing_payload=raw.hex(),
        )
        res = json.loads(tools["create_staking_transaction"]("sui", "stake", '{"amount": "1000000000"}'))

    assert res["ok"] is True
    assert res["data"]["network"] == "testnet"
    assert res["data"]["signing_payload_matches"] is True
    assert res["data"]["required_roles"] == ["sender"]
    client.create_transaction.assert_called_once_with("sui", "stake", network="testnet", amount="1000000000")


def test_create_staking_transaction_rejects_non_object_params(tools):
    res = json.loads(tools["create_staking_transaction"]("sui", "stake", "[1, 2]"))
    assert res["ok"] is False


def test_sign_without_broadcast(tools):
    raw = stake_tx_for(seed(1))
    res = json.loads(tools["sign_and_broadcast"]("sui", raw.hex(), operation="stake", broadcast=False))
    assert res["ok"] is True
    assert res["data"]["state"] == "ASSEMBLED"
    assert res["data"]["signed"]["payload"] == raw.hex()


def test_sign_and_broadcast(tools, container):
    raw = stake_tx_for(seed(1))
    with patch.object(container, "staking_client") as client:
        client.broadcast.return_value = BroadcastReceipt(transaction_hash="HASH123")
        res = json.loads(tools["sign_and_broadcast"]("sui", raw.hex(), operation="stake"))
    assert res["ok"] is True
    assert res["data"]["state"] == "SUCCEEDED"
    assert res["data"]["transaction_hash"] == "HASH123"
    chain, body = client.broadcast.call_args.args
    assert chain == "sui" and body["network"] == "testnet"


def test_broadcast_rejection_envelope(tools, container):
    with patch.object(container, "staking_client") as client:
        client.broadcast.side_effect = BroadcastRejected("rejected", {"reason": "GasBalanceTooLow"})
        res = json.loads(tools["sign_and_broadcast"]("sui", stake_tx_for(seed(1)).hex()))
    assert res["ok"] is False
    assert res["error"]["code"] == "broadcast_rejected"
    assert res["error"]["data"]["error"]["data"]["reason"] == "GasBalanceTooLow"
    assert res["error"]["data"]["state"] == "FAILED"


def test_sign_requires_input(tools):
    res = json.loads(tools["sign_and_broadcast"]("sui"))
    assert res["ok"] is False
    assert res["error"]["code"] == "invalid_input"


def test_sign_partial_then_resume(tools, monkeypatch):
    raw = stake_tx_for(seed(1), sponsor_seed=seed(4))
    first = json.loads(tools["sign_and_broadcast"]("sui", raw.hex(), broadcast=False, allow_partial=True))
    assert first["ok"] is True
    assert first["data"]["state"] == "SIGNED_PARTIAL"
    partial = first["data"]["partial"]
    assert partial["missing_roles"] == ["sponsor"]

    # without the sponsor's key the hand-off cannot complete
    again = json.loads(tools["sign_and_broadcast"]("sui", partial_json=json.dumps(partial), broadcast=False))
    assert again["ok"] is False
    assert again["error"]["code"] == "incomplete_witness_set"


def test_verify_signature(tools):
    digest = bytes(range(32))
    sig = Ed25519PrivateKey.from_private_bytes(seed(5)).sign(digest)
    pub = ed25519_public(seed(5)).hex()
    ok = json.loads(tools["verify_signature"]("solana", digest.hex(), sig.hex(), pub))
    assert ok["data"] == {"valid": True, "curve": "ed25519"}
    bad = json.loads(tools["verify_signature"]("solana", "00" * 32, sig.hex(), pub))
    assert bad["data"]["valid"] is False


def test_transaction_status(tools, container):
    with patch.object(container, "staking_client") as client:
        client.transaction_status.return_value = TransactionStatus(hash="0xabc", status="confirmed")
        res = json.loads(tools["transaction_status"]("ethereum", "0xabc"))
    assert res["data"] == {"hash": "0xabc", "status": "confirmed", "terminal": True, "success": True}
    client.transaction_status.assert_called_once_with("ethereum", "0xabc", network="hoodi")


def test_build_validator_request(tools):
    with patch("app.tools.staking.get_web3", return_value=fake_w3()) as get_web3:
        res = json.loads(tools["build_validator_request"]("withdrawal", SENDER, PUBKEY))
    assert res["ok"] is True
    assert res["data"]["summary"]["chain_id"] == 560048
    assert res["data"]["summary"]["data_len"] == 56
    get_web3.assert_called_once_with("http://127.0.0.1:8545", timeout=10.0)


def test_build_validator_request_needs_target_for_consolidation(tools):
    with patch("app.tools.staking.get_web3", return_value=MagicMock()):
        res = json.loads(tools["build_validator_request"]("consolidation", SENDER, PUBKEY))
    assert res["ok"] is False
    assert res["error"]["code"] == "invalid_input"


def test_build_validator_request_deposit_topup(tools):
    with patch("app.tools.staking.get_web3", return_value=fake_w3()):
        res = json.loads(tools["build_validator_request"]("deposit", SENDER, PUBKEY, amount_gwei=10**9))
    assert res["ok"] is True
    assert res["data"]["summary"]["to"] == "0x00000000219ab540356cBB839Cbe05303d7705Fa"

    with patch("app.tools.staking.get_web3", return_value=fake_w3()):
        low = json.loads(tools["build_validator_request"]("deposit", SENDER, PUBKEY, amount_gwei=10))
    assert low["ok"] is False
    assert low["error"]["data"]["data"]["kind"] == "invalid_input"


def test_build_solana_stake_tools(tools):
    rpc = MagicMock()
    rpc.latest_blockhash.return_value = (Hash(b"\x09" * 32), 10)
    rpc.minimum_balance_for_rent_exemption.return_value = 2_282_880
    owner, stake, vote = (str(Keypair.from_seed(seed(n)).pubkey()) for n in (0x61, 0x62, 0x63))

    with patch("app.tools.staking.SolanaRpc", return_value=rpc) as rpc_cls:
        created = json.loads(tools["build_solana_stake"]("create_stake_account", owner, stake, amount_sol="1.5"))
        delegated = json.loads(tools["build_solana_stake"]("delegate", owner, stake, vote_account=vote))
        missing = json.loads(tools["build_solana_stake"]("delegate", owner, stake))

    assert created["ok"] is True
    assert created["data"]["required_roles"] == [owner, stake]
    assert delegated["data"]["required_roles"] == [owner]
    assert missing["ok"] is False and missing["error"]["code"] == "invalid_input"
    assert rpc_cls.call_args.kwargs == {"timeout": 10.0}


def test_build_solana_stake_without_rpc_url(tools):
    res = json.loads(tools["build_solana_stake"]("delegate", "x", "y", vote_account="z"))
    assert res["ok"] is False
    assert "SOLANA_RPC_URL" in res["error"]["message"]


def test_list_stakes(tools, container):
    with patch.object(container, "staking_client") as client:
        client.stakes.return_value = {"data": [{"validator": "v1"}]}
        res = json.loads(tools["list_stakes"]("ethereum", params_json='{"withdrawal_address": "0xabc"}'))
    assert res["data"] == {"data": [{"validator": "v1"}]}
    client.stakes.assert_called_once_with("ethereum", network="hoodi", withdrawal_address="0xabc")

from unittest.mock import MagicMock

import pytest
import requests

from chains import ChainKind, SuiAdapter
from errors import BroadcastRejected, BroadcastUnavailable, PipelineError, StakingApiError, StakingApiUnavailable
from polling import PollPolicy
from signing import KeyRef, Witness
from signing.base import Curve
from staking import ApiBroadcaster, StakingApiClient, TransactionStatus

from conftest import seed
from test_sui import stake_tx_for

FAST = PollPolicy(interval=0.0, max_attempts=3, timeout=None)


def _response(status: int, body=None, text: str | None = None):
    r = MagicMock()
    r.status_code = status
    if body is None and text is not None:
        r.content = text.encode()
        r.json.side_effect = ValueError("not json")
        r.text = text
    else:
        r.content = b"{}" if body is not None else b""
        r.json.return_value = body
        r.text = str(body)
    return r


def make_client(*responses):
    session = MagicMock()
    session.request.side_effect = list(responses)
    return StakingApiClient("https://staking.example/api/v1/", "secret-key", session=session), session


def signed_sui(local_signer):
    adapter = SuiAdapter()
    unsigned = adapter.parse_unsigned(stake_tx_for(seed(1)))
    result = local_signer({"s": seed(1)}).sign(adapter.derive_digest(unsigned).value, KeyRef("sender", Curve.ED25519, name="s"))
    return adapter.assemble_signed(unsigned, [Witness.from_result(result)])


def test_create_transaction_reads_data_envelope():
    client, session = make_client(
        _response(200, {"data": {"id": "abc", "unsigned_transaction_serialized": "0011", "signing_payload": "22"}})
    )
    tx = client.create_transaction("sui", "stake", network="testnet", validator_address="0x1", amount="1000")
    assert tx.unsigned_transaction_serialized == "0011"
    assert tx.signing_payload == "22"
    assert tx.id == "abc"
    assert (tx.chain, tx.operation, tx.network) == ("sui", "stake", "testnet")

    method, url = session.request.call_args.args
    kwargs = session.request.call_args.kwargs
    assert (method, url) == ("POST", "https://staking.example/api/v1/sui/stake")
    assert kwargs["json"] == {"network": "testnet", "validator_address": "0x1", "amount": "1000"}
    assert kwargs["headers"]["x-api-key"] == "secret-key"


def test_create_transaction_reads_meta_staking_transaction():
    client, _ = make_client(
        _response(
            200,
            {"meta": {"staking_transaction": {"unsigned_transaction_serialized": "beef", "unsigned_transaction_hashed": "cafe"}}},
        )
    )
    tx = client.create_transaction("ethereum", "exit", network="hoodi")
    assert tx.unsigned_transaction_serialized == "beef"
    assert tx.signing_payload == "cafe"


def test_create_without_unsigned_tx_is_an_error():
    client, _ = make_client(_response(200, {"data": {"id": "x"}}))
    with pytest.raises(PipelineError) as exc:
        client.create_transaction("solana", "stake", network="devnet")
    assert exc.value.stage == "FETCHED"


def test_create_rejection_and_unavailability():
    client, _ = make_client(
        _response(400, {"message": "amount below minimum"}),
        _response(502, {"message": "bad gateway"}),
    )
    with pytest.raises(StakingApiError) as exc:
        client.create_transaction("cardano", "stake", network="preprod")
    assert exc.value.data["reason"] == "amount below minimum"
    with pytest.raises(StakingApiUnavailable):
        client.create_transaction("cardano", "stake", network="preprod")


def test_broadcast_rejection_keeps_upstream_reason(local_signer):
    client, _ = make_client(_response(400, {"error": "InsufficientGas"}))
    with pytest.raises(BroadcastRejected) as exc:
        ApiBroadcaster(client, network="testnet").send(signed_sui(local_signer))
    assert exc.value.data["reason"] == "InsufficientGas"
    assert exc.value.data["status"] == 400


def test_broadcast_non_json_rejection_keeps_text(local_signer):
    client, _ = make_client(_response(422, text="transaction expired"))
    with pytest.raises(BroadcastRejected) as exc:
        ApiBroadcaster(client, network="testnet").send(signed_sui(local_signer))
    assert exc.value.data["reason"] == "transaction expired"


@pytest.mark.parametrize("outcome", [_response(503, {"message": "down"}), requests.ConnectionError("refused"), requests.Timeout("slow")])
def test_broadcast_transport_failures_are_unavailable(local_signer, outcome):
    session = MagicMock()
    if isinstance(outcome, Exception):
        session.request.side_effect = outcome
    else:
        session.request.return_value = outcome
    client = StakingApiClient("https://staking.example", "k", session=session)
    with pytest.raises(BroadcastUnavailable) as exc:
        ApiBroadcaster(client, network="testnet").send(signed_sui(local_signer))
    assert exc.value.retryable


def test_send_posts_chain_body_and_returns_hash(local_signer):
    signed = signed_sui(local_signer)
    client, session = make_client(_response(200, {"data": {"transaction_hash": signed.transaction_hash}}))
    result = ApiBroadcaster(client, network="testnet").send(signed)
    assert result.transaction_hash == signed.transaction_hash
    method, url = session.request.call_args.args
    assert (method, url) == ("POST", "https://staking.example/api/v1/sui/broadcast")
    body = session.request.call_args.kwargs["json"]
    assert body["network"] == "testnet"
    assert body["signature"] == signed.serialized_signatures[0]


def test_send_falls_back_to_local_hash(local_signer):
    signed = signed_sui(local_signer)
    client, _ = make_client(_response(200, {}))
    assert ApiBroadcaster(client, network="testnet").send(signed).transaction_hash == signed.transaction_hash


def test_transaction_status_parsing():
    client, session = make_client(_response(200, {"data": {"status": "Finalized"}}))
    status = client.transaction_status("ethereum", "0xabc", network="hoodi")
    assert status.is_success and status.is_terminal
    assert session.request.call_args.kwargs["params"] == {"hash": "0xabc", "network": "hoodi"}
    assert TransactionStatus(hash="h", status="pending").is_terminal is False
    assert TransactionStatus(hash="h", status="failed").is_failure


@pytest.mark.parametrize(
    "statuses, outcome",
    [
        (["pending", "confirmed"], "confirmed"),
        (["pending", "failed"], "failed"),
        (["pending", "pending", "pending"], "timeout"),
    ],
)
def test_wait_for_confirmation(statuses, outcome):
    client, session = make_client(*[_response(200, {"data": {"status": s}}) for s in statuses])
    confirmation = ApiBroadcaster(client, network="hoodi", poll_policy=FAST).wait_for_confirmation(ChainKind.ETHEREUM, "0xabc")
    assert confirmation.outcome == outcome
    assert confirmation.attempts == len(statuses)
    assert confirmation.status == statuses[-1]
    assert session.request.call_count == len(statuses)


def test_stakes_passes_network_and_filters():
    client, session = make_client(_response(200, {"data": [{"validator": "v1", "amount": "32"}]}))
    out = client.stakes("ethereum", network="hoodi", withdrawal_address="0xabc")
    assert out["data"][0]["validator"] == "v1"
    method, url = session.request.call_args.args
    assert (method, url) == ("GET", "https://staking.example/api/v1/ethereum/stakes")
    assert session.request.call_args.kwargs["params"] == {"network": "hoodi", "withdrawal_address": "0xabc"}


def test_status_lookup_retries_transient_failures():
    client, session = make_client(
        _response(503, {"message": "busy"}),
        _response(429, {"message": "slow down"}),
        _response(200, {"data": {"status": "success"}}),
    )
    broadcaster = ApiBroadcaster(client, network="testnet", poll_policy=FAST, retry_policy=FAST)
    confirmation = broadcaster.wait_for_confirmation(ChainKind.SUI, "digest")
    assert confirmation.outcome == "confirmed"
    assert confirmation.attempts == 1
    assert session.request.call_count == 3


def test_status_lookup_gives_up_after_retry_budget():
    client, session = make_client(*[_response(502, {"message": "bad gateway"}) for _ in range(3)])
    broadcaster = ApiBroadcaster(client, network="testnet", poll_policy=FAST, retry_policy=FAST)
    with pytest.raises(StakingApiUnavailable):
        broadcaster.wait_for_confirmation(ChainKind.SUI, "digest")
    assert session.request.call_count == 3

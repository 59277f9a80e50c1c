import json
import logging

from observability import AuditLog, build_log_context, log_event
from observability.logging import LOGGER_NAME


def test_log_event_is_one_json_line_with_secrets_redacted(caplog):
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    log_event(
        "custodian_request_created",
        ctx=build_log_context(chain="sui", run_id=None, api_key="abc"),
        data={"digest": b"\x01\x02", "nested": {"private_key": "deadbeef"}, "password": ""},
        level="debug",
    )
    (record,) = [r for r in caplog.records if r.name == LOGGER_NAME]
    payload = json.loads(record.getMessage())
    assert payload["event"] == "custodian_request_created"
    assert payload["chain"] == "sui"
    assert "run_id" not in payload
    assert payload["api_key"] == "***REDACTED***"
    assert payload["data"]["digest"] == "0102"
    assert payload["data"]["nested"]["private_key"] == "***REDACTED***"
    assert payload["data"]["password"] == ""
    assert "deadbeef" not in record.getMessage()


def test_log_event_respects_level(caplog):
    caplog.set_level(logging.WARNING, logger=LOGGER_NAME)
    log_event("pipeline_state", data={"state": "FETCHED"}, level="debug")
    assert not [r for r in caplog.records if r.name == LOGGER_NAME]


def test_audit_log_is_off_without_path():
    audit = AuditLog("")
    assert not audit.enabled()
    audit.append(ts_ms=1, run_id="r", chain="sui", state="SUCCEEDED", ok=True)
    assert audit.recent() == []

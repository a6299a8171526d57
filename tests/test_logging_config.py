"""Tests for JSON log formatting."""

import json
import logging

from rxguard.audit.logger import AuditLogger
from rxguard.logging_config import JsonFormatter


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("rxguard.test", logging.INFO, __file__, 1, "hello", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    def test_base_fields(self):
        payload = json.loads(JsonFormatter().format(make_record()))
        assert payload["msg"] == "hello"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "rxguard.test"

    def test_audit_extras_are_emitted(self):
        record = make_record(
            type="audit",
            principal="did:example:auditor-1",
            details={"fraud_score": 70},
            entry_hash="ab" * 32,
        )
        payload = json.loads(JsonFormatter().format(record))

        assert payload["type"] == "audit"
        assert payload["details"] == {"fraud_score": 70}
        assert payload["entry_hash"] == "ab" * 32

    def test_unknown_extras_are_dropped(self):
        payload = json.loads(JsonFormatter().format(make_record(password="x")))
        assert "password" not in payload

    def test_audit_event_details_reach_output(self, caplog):
        with caplog.at_level(logging.INFO, logger="audit"):
            AuditLogger().log(
                action="claim.verify",
                principal="did:example:insurer-1",
                resource="urn:uuid:disp",
                details={"fraud_score": 30},
            )

        payload = json.loads(JsonFormatter().format(caplog.records[-1]))
        assert payload["action"] == "claim.verify"
        assert payload["details"] == {"fraud_score": 30}

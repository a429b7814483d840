"""Tests for structured logging and PII redaction."""

import json
import logging
import sys

from worker_service.lib.json_logger import JSONFormatter, get_structured_logger, job_logger
from worker_service.lib.pii_redactor import PIIRedactor
from worker_service.queue.models import Job, JobKind, from_timestamp


def make_record(msg: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("worker.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_emits_one_json_object_with_context():
    line = JSONFormatter().format(make_record(
        "Job done", event="job.completed", job_id="j-1", queue="notifications", duration_ms=12,
    ))
    data = json.loads(line)

    assert data["message"] == "Job done"
    assert data["level"] == "INFO"
    assert data["event"] == "job.completed"
    assert data["job_id"] == "j-1"
    assert data["duration_ms"] == 12
    assert data["timestamp"].endswith("Z")


def test_formatter_redacts_recipients():
    line = JSONFormatter().format(make_record(
        "Sending to oma@example.com", recipients=["+49 170 1234567", "opa@example.de"],
    ))
    data = json.loads(line)

    assert "oma@example.com" not in line
    assert data["message"] == "Sending to [EMAIL_REDACTED]"
    assert data["recipients"] == ["[PHONE_REDACTED]", "[EMAIL_REDACTED]"]


def test_redaction_can_be_disabled():
    data = json.loads(JSONFormatter(redact_pii=False).format(make_record("oma@example.com")))
    assert data["message"] == "oma@example.com"


def test_exception_is_serialized():
    try:
        raise RuntimeError("layout service exploded")
    except RuntimeError:
        record = logging.LogRecord("worker.test", logging.ERROR, __file__, 1, "failed", None, None)
        record.exc_info = sys.exc_info()

    data = json.loads(JSONFormatter().format(record))
    assert data["exception"]["type"] == "RuntimeError"
    assert "layout service exploded" in data["exception"]["traceback"]


def test_job_logger_binds_job_context(caplog):
    now = from_timestamp(1_700_000_000)
    job = Job(
        id="j-7", queue_name="gazette-generation", kind=JobKind.DOCUMENT, payload={},
        correlation_id="corr-7", created_at=now, available_at=now,
    )
    log = job_logger(job)

    with caplog.at_level(logging.INFO, logger="worker.gazette-generation"):
        log.info("rendering", extra={"error_code": None})

    record = caplog.records[-1]
    assert record.job_id == "j-7"
    assert record.queue == "gazette-generation"
    assert record.correlation_id == "corr-7"


def test_structured_logger_context_is_additive():
    base = get_structured_logger("worker.test", queue="notifications")
    child = base.with_context(job_id="j-1")
    assert child.extra == {"queue": "notifications", "job_id": "j-1"}
    assert base.extra == {"queue": "notifications"}


class TestPIIRedactor:

    def test_iban_and_card_numbers(self):
        text = "IBAN DE89 3704 0044 0532 0130 00, card 4111 1111 1111 1111"
        redacted = PIIRedactor.redact(text)
        assert "[IBAN_REDACTED]" in redacted
        assert "[CREDIT_CARD_REDACTED]" in redacted

    def test_contains_pii(self):
        assert PIIRedactor.contains_pii("mail me at a.b@example.org")
        assert not PIIRedactor.contains_pii("gazette gz-2024-05 ready")
        assert PIIRedactor.redact(None) == ""


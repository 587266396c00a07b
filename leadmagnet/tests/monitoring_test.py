import json
import logging

from leadmagnet import monitoring

TOKEN = "0123abcd" + "f" * 24


def test_redact_masks_emails_and_tokens():
    value = {
        "message": f"capture failed for jane.doe+lead@example.co.uk on /reports/{TOKEN}",
        "items": [TOKEN, 42],
    }
    redacted = monitoring.redact(value)
    assert redacted["message"] == "capture failed for [email] on /reports/0123abcd***"
    assert redacted["items"] == ["0123abcd***", 42]


def test_scrub_event_cleans_request_and_exception_values():
    event = {
        "request": {"url": f"https://api.example.com/reports/{TOKEN}/email", "data": {"email": "a@b.com"}},
        "exception": {"values": [{"type": "RuntimeError", "value": "duplicate contact a@b.com"}]},
        "level": "error",
    }
    scrubbed = monitoring.scrub_event(event)
    assert scrubbed["request"]["url"].endswith("/reports/0123abcd***/email")
    assert scrubbed["request"]["data"] == {"email": "[email]"}
    assert scrubbed["exception"]["values"][0]["value"] == "duplicate contact [email]"
    assert scrubbed["level"] == "error"


def test_context_formatter_appends_structured_payload():
    formatter = monitoring.ContextFormatter("%(name)s | %(message)s")
    record = logging.LogRecord("submission", logging.INFO, __file__, 1, "submission", None, None)
    record.submission = {"step": "persist", "status": "success", "token": "0123abcd"}

    line = formatter.format(record)
    prefix, payload = line.split(" ", 3)[:3], line.split(" ", 3)[3]
    assert prefix == ["submission", "|", "submission"]
    assert json.loads(payload) == {"submission": {"status": "success", "step": "persist", "token": "0123abcd"}}


def test_context_formatter_leaves_plain_records_alone():
    formatter = monitoring.ContextFormatter("%(message)s")
    record = logging.LogRecord("leadmagnet", logging.INFO, __file__, 1, "hello %s", ("world",), None)
    assert formatter.format(record) == "hello world"


def test_capture_exception_logs_tags_without_sentry(caplog):
    caplog.set_level(logging.ERROR, logger="leadmagnet")
    try:
        raise RuntimeError("boom")
    except RuntimeError as exc:
        monitoring.capture_exception(exc, step="crm", variant="agent")

    record = caplog.records[-1]
    assert record.name == "leadmagnet"
    assert "'step': 'crm'" in record.getMessage()
    assert record.exc_info[0] is RuntimeError

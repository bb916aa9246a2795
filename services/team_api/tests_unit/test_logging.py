import logging

from team_api.logging_config import RedactionFilter, RequestIdFilter, redact_text
from team_api.request_id import set_request_id


def test_redact_emails_and_invitation_tokens():
    text = "invited bob@example.com via http://app/invitations/AbC_12-x ok"
    redacted = redact_text(text)
    assert "bob@example.com" not in redacted
    assert "AbC_12-x" not in redacted
    assert "/invitations/[redacted]" in redacted


def test_redact_secrets():
    redacted = redact_text("password=hunter2 Authorization: Bearer abc.def signature=ff00")
    assert "hunter2" not in redacted
    assert "abc.def" not in redacted
    assert "ff00" not in redacted


def test_redaction_filter_flattens_args():
    record = logging.LogRecord(
        "team_api", logging.INFO, __file__, 1, "user %s joined", ("bob@example.com",), None
    )
    assert RedactionFilter().filter(record)
    assert record.getMessage() == "user [redacted_email] joined"


def test_request_id_filter():
    set_request_id("req-42")
    record = logging.LogRecord("team_api", logging.INFO, __file__, 1, "hello", (), None)
    RequestIdFilter().filter(record)
    assert record.request_id == "req-42"

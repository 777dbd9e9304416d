from __future__ import annotations

import logging

from turnflow.core.logging import RedactionFilter
from turnflow.core.security import redact_secrets, truncate_text


def _record(msg: str, args) -> logging.LogRecord:
    return logging.LogRecord("turnflow.test", logging.INFO, __file__, 1, msg, args, None)


def test_redact_secrets_masks_known_key_shapes():
    text = (
        "openai sk-abcdef123456 tavily tvly-abcdef123456 "
        "google AIzaSyA1234567890abcdefgh header Bearer abcdefgh12345678"
    )

    redacted = redact_secrets(text)

    assert "abcdef123456" not in redacted
    assert "AIzaSyA1234567890abcdefgh" not in redacted
    assert "Bearer ***" in redacted
    assert redacted.startswith("openai sk-*** tavily tvly-***")


def test_redaction_filter_masks_message_and_args():
    record = _record("calling with %s", ("sk-secretsecret",))

    assert RedactionFilter().filter(record)

    assert record.getMessage() == "calling with sk-***"


def test_redaction_filter_keeps_numeric_args():
    record = _record("%d tokens in %.1f s", (42, 1.5))

    RedactionFilter().filter(record)

    assert record.getMessage() == "42 tokens in 1.5 s"


def test_truncate_text():
    assert truncate_text("short", 10) == "short"
    assert truncate_text("abcdefghij", 4) == "abcd..."

"""Tests for log redaction and plan-scoped context."""

import structlog

from conductor.utils.logging import REDACTED, _redact_secrets, bind_plan, redact


class TestRedact:
    def test_masks_key_value_pairs(self):
        assert redact("token: abc.def") == f"token: {REDACTED}"
        assert redact('password="hunter2"') == f'password="{REDACTED}"'

    def test_masks_bearer_headers(self):
        assert redact("Authorization: Bearer s3cr3t") == f"Authorization: Bearer {REDACTED}"

    def test_leaves_plain_text(self):
        assert redact("Email sent to alice@example.com") == "Email sent to alice@example.com"


class TestProcessor:
    def test_secret_fields_are_dropped(self):
        event = _redact_secrets(None, "info", {"event": "x", "api_key": "sk-1", "secret": ""})
        assert event["api_key"] == REDACTED
        assert event["secret"] == ""

    def test_string_values_are_scanned(self):
        event = _redact_secrets(None, "info", {"event": "x", "error": "bad token=abc"})
        assert event["error"] == f"bad token={REDACTED}"

    def test_non_strings_pass_through(self):
        event = _redact_secrets(None, "info", {"event": "x", "attempt": 3})
        assert event["attempt"] == 3


class TestBindPlan:
    def test_binds_and_unbinds(self):
        with bind_plan("p1"):
            assert structlog.contextvars.get_contextvars()["plan_id"] == "p1"
        assert "plan_id" not in structlog.contextvars.get_contextvars()

"""Tests for log processors: PII redaction and correlation ids."""

import pytest
import structlog

from clinicauth.logging import (
    _add_correlation_id,
    _redact_pii,
    correlation_id_var,
    get_correlation_id,
    log_context,
    set_correlation_id,
)


@pytest.fixture(autouse=True)
def clear_correlation_id():
    token = correlation_id_var.set(None)
    yield
    correlation_id_var.reset(token)


class TestRedaction:
    def test_sensitive_keys_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "login_failed",
                "email": "doctor@clinic.test",
                "access_token": "abcdefghijklmnop",
                "password": "hunter2hunter2",
                "attempts": 3,
            },
        )

        assert event["email"] == "do***st"
        assert event["access_token"] == "ab***op"
        assert event["password"] == "hu***r2"
        assert event["attempts"] == 3
        assert event["event"] == "login_failed"

    def test_short_and_non_string_values_untouched(self):
        event = _redact_pii(None, "info", {"token": "abc", "token_count": 4})

        assert event == {"token": "abc", "token_count": 4}


class TestCorrelationId:
    def test_generated_when_missing(self):
        cid = set_correlation_id()

        assert cid
        assert get_correlation_id() == cid

    def test_explicit_id_is_kept(self):
        assert set_correlation_id("req-42") == "req-42"

    def test_processor_adds_id(self):
        set_correlation_id("req-42")

        assert _add_correlation_id(None, "info", {"event": "x"}) == {
            "event": "x",
            "correlation_id": "req-42",
        }

    def test_processor_without_id(self):
        assert _add_correlation_id(None, "info", {"event": "x"}) == {"event": "x"}


class TestLogContext:
    """Per-call binding of fields and correlation id."""

    def test_binds_fields_and_generates_id(self):
        with log_context(account_id="acc-1") as cid:
            bound = structlog.contextvars.get_contextvars()
            assert bound["account_id"] == "acc-1"
            assert get_correlation_id() == cid

        assert "account_id" not in structlog.contextvars.get_contextvars()
        assert get_correlation_id() is None

    def test_keeps_callers_id(self):
        set_correlation_id("req-7")

        with log_context(email="a@x.com") as cid:
            assert cid == "req-7"

        assert get_correlation_id() == "req-7"

    def test_nested_blocks_share_one_id(self):
        with log_context(email="a@x.com") as outer:
            with log_context(account_id="acc-1") as inner:
                assert inner == outer
                assert structlog.contextvars.get_contextvars() == {
                    "email": "a@x.com",
                    "account_id": "acc-1",
                }
            assert structlog.contextvars.get_contextvars() == {"email": "a@x.com"}

    def test_bound_email_is_masked(self):
        with log_context(email="doctor@clinic.test"):
            event = structlog.contextvars.merge_contextvars(None, "info", {"event": "x"})
            event = _redact_pii(None, "info", _add_correlation_id(None, "info", event))

        assert event["email"] == "do***st"
        assert event["correlation_id"]

from flamingo.logging import _redact_pii, get_correlation_id, set_correlation_id


class TestRedaction:
    def test_email_keeps_domain(self):
        event = _redact_pii(None, "info", {"event": "email_sent", "to_email": "artist@example.com"})
        assert event["to_email"] == "a***@example.com"

    def test_secrets_masked(self):
        event = _redact_pii(
            None,
            "info",
            {"event": "x", "refresh_token": "abcdef123456", "password": "pw", "user_id": 7},
        )
        assert event["refresh_token"] == "ab***56"
        assert event["password"] == "***"
        assert event["user_id"] == 7

    def test_event_name_untouched(self):
        event = _redact_pii(None, "info", {"event": "token_refreshed"})
        assert event["event"] == "token_refreshed"


class TestCorrelationId:
    def test_generated_when_missing(self):
        cid = set_correlation_id()
        assert cid
        assert get_correlation_id() == cid

    def test_explicit_value_kept(self):
        assert set_correlation_id("req-42") == "req-42"
        assert get_correlation_id() == "req-42"

from authcore.logging import get_correlation_id, redact_pii, set_correlation_id


def test_credentials_and_addresses_masked():
    event = redact_pii(
        None,
        "info",
        {
            "event": "refresh_token_rejected",
            "refresh_token": "abcdefghijklmnop",
            "password": "hunter2hunter2",
            "email": "someone@example.com",
            "Authorization": "Bearer xyz123",
            "user_id": "u1",
        },
    )

    assert event["event"] == "refresh_token_rejected"
    assert event["refresh_token"] == "ab***op"
    assert event["password"] == "hu***r2"
    assert event["email"] == "so***om"
    assert event["Authorization"] == "Be***23"
    assert event["user_id"] == "u1"


def test_short_values_fully_masked():
    event = redact_pii(None, "info", {"event": "x", "secret": "abc"})
    assert event["secret"] == "***"


def test_non_string_values_untouched():
    event = redact_pii(None, "info", {"event": "x", "token_count": 3})
    assert event["token_count"] == 3


def test_correlation_id_roundtrip():
    cid = set_correlation_id("req-123")
    assert cid == "req-123"
    assert get_correlation_id() == "req-123"

    generated = set_correlation_id()
    assert generated and generated != "req-123"

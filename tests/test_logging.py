from realtyauth.logging import _redact_pii, get_correlation_id, set_correlation_id


def _redact(**event):
    return _redact_pii(None, "info", dict(event))


def test_credentials_are_replaced():
    event = _redact(
        password="Passw0rd!",
        refresh_token="abc123==",
        jwt_secret="super-secret-value",
        authorization="Bearer xyz",
    )

    assert set(event.values()) == {"[redacted]"}


def test_email_keeps_domain_only():
    event = _redact(email="Bob.Lee@example.com")

    assert event["email"] == "B***@example.com"


def test_credential_metadata_is_not_redacted():
    event = _redact(
        refresh_token_expiry="2026-01-01T00:00:00+00:00",
        token_type="bearer",
        lockout_end="2026-01-01T00:15:00+00:00",
        event="refresh_token_rotated",
        user_id="u-1",
    )

    assert event["refresh_token_expiry"] == "2026-01-01T00:00:00+00:00"
    assert event["token_type"] == "bearer"
    assert event["lockout_end"] == "2026-01-01T00:15:00+00:00"
    assert event["event"] == "refresh_token_rotated"
    assert event["user_id"] == "u-1"


def test_non_string_values_pass_through():
    event = _redact(token_count=3, password=None)

    assert event == {"token_count": 3, "password": None}


def test_correlation_id_generated_when_missing():
    cid = set_correlation_id()

    assert cid
    assert get_correlation_id() == cid
    assert set_correlation_id("req-1") == "req-1"

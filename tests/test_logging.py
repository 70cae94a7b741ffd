from authkernel.logging import (
    _redact_pii,
    get_correlation_id,
    mask_email,
    set_correlation_id,
)


def _redact(**fields):
    return _redact_pii(None, "info", {"event": "login_failed", **fields})


def test_secrets_are_fully_masked():
    out = _redact(password="hunter2hunter2", otp="123456", mfa_secret="JBSWY3DPEHPK3PXP")
    assert out["password"] == "***"
    assert out["otp"] == "***"
    assert out["mfa_secret"] == "***"
    assert out["event"] == "login_failed"


def test_tokens_keep_a_short_prefix_and_suffix():
    token = "eyJhbGciOiJIUzI1NiJ9.payload.signature"
    out = _redact(refresh_token=token, token_hash="short")
    assert out["refresh_token"] == "eyJh***ture"
    assert out["token_hash"] == "***"


def test_email_keeps_domain():
    assert _redact(email="alice@example.com")["email"] == "a***@example.com"
    assert mask_email("not-an-address") == "***"


def test_nested_metadata_is_redacted():
    out = _redact(metadata={"email": "bob@example.com", "session_ids": ["s1"], "count": 2})
    assert out["metadata"] == {
        "email": "b***@example.com",
        "session_ids": ["s1"],
        "count": 2,
    }


def test_non_string_values_pass_through():
    out = _redact(token_count=3, user_id="u1", password=None)
    assert out["token_count"] == 3
    assert out["user_id"] == "u1"
    assert out["password"] is None


def test_correlation_id_is_generated_and_trimmed():
    generated = set_correlation_id(None)
    assert generated and get_correlation_id() == generated
    assert set_correlation_id("  trace-1  ") == "trace-1"
    assert len(set_correlation_id("x" * 500)) == 128

import hashlib
import io
import json

from tokenvault.logging import (
    configure_logging,
    get_logger,
    _add_correlation_id,
    _redact_pii,
    correlation_id_var,
    hash_identity,
    set_correlation_id,
)


def test_redact_pii_masks_credentials_but_not_hashes_or_event():
    event = {
        "event": "token_issued",
        "token": "abcdef123456",
        "user_email": "someone@example.com",
        "email_hash": "f" * 64,
        "kind": "user",
    }

    redacted = _redact_pii(None, "info", dict(event))

    assert redacted["event"] == "token_issued"
    assert redacted["token"] == "ab***56"
    assert redacted["user_email"] == "so***om"
    assert redacted["email_hash"] == "f" * 64
    assert redacted["kind"] == "user"


def test_correlation_id_added_when_set():
    token = correlation_id_var.set(None)
    try:
        assert "correlation_id" not in _add_correlation_id(None, "info", {})
        cid = set_correlation_id("req-1")
        assert _add_correlation_id(None, "info", {}) == {"correlation_id": cid}
    finally:
        correlation_id_var.reset(token)


def test_hash_identity():
    assert hash_identity("") is None
    assert hash_identity(None) is None
    assert hash_identity("a@example.com") == hashlib.sha256(b"a@example.com").hexdigest()


def test_configured_logger_filters_level_and_redacts():
    buf = io.StringIO()
    configure_logging("WARNING", json_output=True, dev_mode=False, stream=buf)
    try:
        log = get_logger("test_logging")
        log.info("token_issued", kind="user")
        log.warning("fingerprint_collision", token="abcdef123456", attempt=1)
    finally:
        configure_logging()

    lines = buf.getvalue().splitlines()
    assert len(lines) == 1
    entry = json.loads(lines[0])
    assert entry["event"] == "fingerprint_collision"
    assert entry["level"] == "warning"
    assert entry["token"] == "ab***56"

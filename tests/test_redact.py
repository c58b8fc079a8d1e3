from __future__ import annotations

import logging

from nea_smart_mqtt.app.redact import debug_dump, mask, redact_sensitive, redact_text


def test_mask() -> None:
    assert mask("abcd") == "***"
    assert mask("secret-token") == "se...en"


def test_redact_nested() -> None:
    data = {
        "access_token": "abcdefghijkl",
        "data": {"user": {"email": "someone@example.com", "installs": [{"password": "", "name": "Home"}]}},
    }
    out = redact_sensitive(data)
    assert out["access_token"] == "ab...kl"
    assert out["data"]["user"]["email"] == "so...om"
    assert out["data"]["user"]["installs"][0] == {"password": "[REDACTED]", "name": "Home"}
    # input untouched
    assert data["access_token"] == "abcdefghijkl"


def test_redact_text() -> None:
    text = "GET /x?access_token=abc123&y=1 Authorization: Bearer eyJhbGciOi.xyz for a.b@example.org"
    out = redact_text(text)
    assert "abc123" not in out
    assert "eyJhbGciOi" not in out
    assert "a.b@example.org" not in out
    assert redact_text(None) == ""


def test_debug_dump_only_at_debug(caplog) -> None:
    logger = logging.getLogger("nea_test_dump")
    with caplog.at_level(logging.INFO, logger="nea_test_dump"):
        debug_dump(logger, "payload", {"password": "hunter22"})
    assert not caplog.records

    with caplog.at_level(logging.DEBUG, logger="nea_test_dump"):
        debug_dump(logger, "payload", {"password": "hunter22"})
    assert "hunter22" not in caplog.text
    assert "hu...22" in caplog.text

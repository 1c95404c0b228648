import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from capability_adapters.redaction import redact_headers, redact_text, redact_url  # noqa: E402


def test_redact_url_keeps_only_origin():
    assert redact_url("https://engine.example.com/switch?token=abc") == "https://engine.example.com/..."
    assert redact_url("not a url") == "<redacted-url>"
    assert redact_url("") == ""


def test_redact_text_masks_credentials():
    text = (
        "Authorization: Bearer abc.def.ghi X-Webhook-Signature=sha256=0123456789abcdef0123 "
        "x-blueswitch-engine-token: s3cr3t"
    )
    redacted = redact_text(text)
    assert "abc.def.ghi" not in redacted
    assert "0123456789abcdef0123" not in redacted
    assert "s3cr3t" not in redacted
    assert "[REDACTED]" in redacted


def test_redact_text_masks_query_secrets():
    redacted = redact_text("callback secret=hunter2&id_token=xyz")
    assert "hunter2" not in redacted
    assert "xyz" not in redacted


def test_redact_headers():
    headers = {
        "Authorization": "Bearer abc",
        "X-Webhook-Signature": "sha256=00",
        "Content-Type": "application/json",
    }
    assert redact_headers(headers) == {
        "Authorization": "[REDACTED]",
        "X-Webhook-Signature": "[REDACTED]",
        "Content-Type": "application/json",
    }

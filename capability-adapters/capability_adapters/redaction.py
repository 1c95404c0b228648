import re
from typing import Mapping
from urllib.parse import urlsplit


_TOKEN_PATTERNS = [
    re.compile(r"(Authorization\s*:\s*)([^\n\r]+)", re.IGNORECASE),
    re.compile(r"(Bearer\s+)\S+", re.IGNORECASE),
    re.compile(r"(X-Webhook-Signature\s*[:=]\s*)\S+", re.IGNORECASE),
    re.compile(r"(x-blueswitch-engine-token\s*[:=]\s*)\S+", re.IGNORECASE),
    re.compile(r"(sha256=)[A-Fa-f0-9]{16,}", re.IGNORECASE),
    re.compile(r"((?:access|id|refresh)_token=)[^&\s]+", re.IGNORECASE),
    re.compile(r"(token=)[^&\s]+", re.IGNORECASE),
    re.compile(r"(secret=)[^&\s]+", re.IGNORECASE),
]

SENSITIVE_HEADERS = {
    "authorization",
    "cookie",
    "set-cookie",
    "x-webhook-signature",
    "x-blueswitch-engine-token",
}


def redact_url(value: str) -> str:
    if not value:
        return ""
    try:
        parsed = urlsplit(value)
    except ValueError:
        return "<redacted-url>"
    if not parsed.scheme or not parsed.netloc:
        return "<redacted-url>"
    return f"{parsed.scheme}://{parsed.netloc}/..."


def redact_text(value: str) -> str:
    if not value:
        return value
    redacted = value
    for pattern in _TOKEN_PATTERNS:
        redacted = pattern.sub(r"\1[REDACTED]", redacted)
    redacted = re.sub(r"https?://[^\s]+", lambda match: redact_url(match.group(0)), redacted)
    return redacted


def redact_headers(headers: Mapping[str, str]) -> dict:
    return {
        key: "[REDACTED]" if key.lower() in SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }

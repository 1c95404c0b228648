import contextvars
import logging
from enum import Enum
from typing import Any

from capability_adapters.redaction import redact_text


request_id_ctx = contextvars.ContextVar("request_id", default="")
_logger = logging.getLogger("blueswitch.obs")

_LEVELS = {
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def get_request_id() -> str:
    return request_id_ctx.get() or ""


def log_event(event: str, severity: str = "INFO", **fields: Any) -> None:
    payload = {"event": event, "request_id": get_request_id()}
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, Enum):
            value = value.value
        if isinstance(value, str):
            payload[key] = redact_text(value)
        else:
            payload[key] = value
    parts = [f"{key}={payload[key]}" for key in sorted(payload.keys())]
    _logger.log(_LEVELS.get(severity, logging.INFO), " ".join(parts))

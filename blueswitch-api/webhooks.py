"""Inbound content-change webhooks.

Deliveries are authenticated with an HMAC-SHA256 of the raw request body,
hex encoded in ``X-Webhook-Signature`` (``sha256=`` prefix optional), then
mapped from the provider's payload to a canonical ``ChangeEvent``.

Providers:

- ``wordpress``: ``{event, timestamp, post_id, site_url, environment?}`` as
  sent by the headless theme on ``save_post``/``delete_post``/menu/term
  hooks and by the manual trigger endpoint.
- ``generic``: ``{sourceSystem, contentId, receivedAt, environment?}``.
"""
import hashlib
import hmac
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Tuple
from urllib.parse import urlsplit

from errors import InvalidSignature, MalformedPayload
from models import ChangeEvent
from storage import Storage, utc_now


SIGNATURE_HEADER = "X-Webhook-Signature"
PROVIDER_HEADER = "X-Webhook-Provider"
PROVIDERS = {"wordpress", "generic"}


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    if not secret:
        raise InvalidSignature("Webhook secret is not configured")
    if not signature:
        raise InvalidSignature("Webhook signature is missing")
    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = sign_payload(body, secret)
    if not hmac.compare_digest(expected, provided.lower()):
        raise InvalidSignature("Webhook signature does not match")


def _text(value: object) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(int(value)) if float(value).is_integer() else str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _timestamp(value: object) -> str:
    if isinstance(value, bool):
        raise MalformedPayload("timestamp must be a unix time or ISO-8601 string")
    if isinstance(value, (int, float)):
        try:
            moment = datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise MalformedPayload("timestamp is out of range") from exc
        return moment.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.isdigit():
            return _timestamp(int(text))
        try:
            moment = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as exc:
            raise MalformedPayload("timestamp must be a unix time or ISO-8601 string") from exc
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    raise MalformedPayload("timestamp is required")


def detect_provider(payload: dict, hint: Optional[str]) -> str:
    if hint:
        provider = hint.strip().lower()
        if provider not in PROVIDERS:
            raise MalformedPayload(f"Unsupported webhook provider: {hint}")
        return provider
    if "site_url" in payload or "post_id" in payload:
        return "wordpress"
    return "generic"


def map_wordpress(payload: dict) -> Tuple[str, str, str, Optional[str]]:
    site_url = _text(payload.get("site_url"))
    if not site_url:
        raise MalformedPayload("site_url is required")
    host = urlsplit(site_url).netloc or site_url
    event_type = _text(payload.get("event"))
    if not event_type:
        raise MalformedPayload("event is required")
    # Menu, term and theme hooks carry no post id; the hook name identifies the content.
    content_id = _text(payload.get("post_id")) or event_type
    received_at = _timestamp(payload.get("timestamp"))
    return f"wordpress:{host}", content_id, received_at, event_type


def map_generic(payload: dict) -> Tuple[str, str, str, Optional[str]]:
    source_system = _text(payload.get("sourceSystem"))
    if not source_system:
        raise MalformedPayload("sourceSystem is required")
    content_id = _text(payload.get("contentId"))
    if not content_id:
        raise MalformedPayload("contentId is required")
    received_at = _timestamp(payload.get("receivedAt", payload.get("timestamp")))
    return source_system, content_id, received_at, _text(payload.get("event"))


class WebhookReceiver:
    def __init__(
        self,
        storage: Storage,
        secret: Optional[str],
        environments: Iterable[str],
        default_environment: str,
        dedup_window_seconds: float = 600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.secret = secret
        self.environments = list(environments)
        self.default_environment = default_environment
        self.dedup_window_seconds = dedup_window_seconds
        self.clock = clock
        self._logger = logging.getLogger("blueswitch.webhooks")

    def receive(
        self,
        body: bytes,
        signature: Optional[str],
        provider_hint: Optional[str] = None,
    ) -> Tuple[ChangeEvent, bool]:
        """Validate and record one delivery.

        Returns the recorded event and whether it is new. A redelivery
        inside the dedup window returns the original event and ``False``.
        """
        verify_signature(body, signature, self.secret)
        payload = self._parse(body)
        provider = detect_provider(payload, provider_hint)
        if provider == "wordpress":
            source_system, content_id, received_at, event_type = map_wordpress(payload)
        else:
            source_system, content_id, received_at, event_type = map_generic(payload)
        environment = _text(payload.get("environment")) or self.default_environment
        if environment not in self.environments:
            raise MalformedPayload(f"Unknown environment: {environment}")

        now = self.clock()
        existing = self.storage.find_recent_change_event(
            source_system,
            content_id,
            received_at,
            now - self.dedup_window_seconds,
        )
        if existing is not None:
            self._logger.info(
                "webhook.duplicate change_event_id=%s source_system=%s content_id=%s",
                existing.id,
                source_system,
                content_id,
            )
            return existing, False

        event = ChangeEvent(
            id=str(uuid.uuid4()),
            sourceSystem=source_system,
            contentId=content_id,
            receivedAt=received_at,
            environment=environment,
            recordedAt=utc_now(),
            eventType=event_type,
        )
        self.storage.insert_change_event(event, recorded_epoch=now)
        self._logger.info(
            "webhook.accepted change_event_id=%s provider=%s source_system=%s content_id=%s environment=%s",
            event.id,
            provider,
            source_system,
            content_id,
            environment,
        )
        return event, True

    def _parse(self, body: bytes) -> dict:
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedPayload("Body must be a JSON object") from exc
        if not isinstance(payload, dict):
            raise MalformedPayload("Body must be a JSON object")
        return payload

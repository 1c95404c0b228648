import hashlib
import json
import time
from typing import Callable, Optional

from config import SETTINGS
from storage import Storage


def request_fingerprint(environment: str, action: str, body: Optional[dict]) -> str:
    raw = json.dumps({"environment": environment, "action": action, "body": body or {}}, sort_keys=True)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class IdempotencyStore:
    """Replay cache for operator mutations keyed by ``Idempotency-Key``.

    Entries are kept in the controller database so a replay still answers
    after a restart.
    """

    def __init__(
        self,
        storage: Storage,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else SETTINGS.idempotency_ttl_seconds
        self.clock = clock

    def get(self, key: str) -> Optional[dict]:
        return self.storage.get_idempotency_key(key, self.clock())

    def set(self, key: str, response: dict, status_code: int, fingerprint: Optional[str] = None) -> None:
        expires_at = self.clock() + self.ttl_seconds
        self.storage.put_idempotency_key(key, response, status_code, fingerprint, expires_at)

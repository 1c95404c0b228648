from idempotency import IdempotencyStore, request_fingerprint
from storage import Storage


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_replay_survives_a_new_store(tmp_path):
    storage = Storage(str(tmp_path / "blueswitch.db"))
    fingerprint = request_fingerprint("staging", "rollback", {"reason": "typo"})
    IdempotencyStore(storage, ttl_seconds=60).set("k-1:POST:/x", {"kind": "ROLLBACK"}, 200, fingerprint)

    cached = IdempotencyStore(Storage(storage.db_path), ttl_seconds=60).get("k-1:POST:/x")

    assert cached == {"response": {"kind": "ROLLBACK"}, "status_code": 200, "request_fingerprint": fingerprint}


def test_expired_keys_are_dropped(tmp_path):
    clock = FakeClock()
    store = IdempotencyStore(Storage(str(tmp_path / "blueswitch.db")), ttl_seconds=60, clock=clock)
    store.set("k-1", {"status": "COMMITTED"}, 200)

    clock.now += 59
    assert store.get("k-1")["response"] == {"status": "COMMITTED"}
    clock.now += 2
    assert store.get("k-1") is None


def test_fingerprint_depends_on_body():
    assert request_fingerprint("staging", "rollback", None) == request_fingerprint("staging", "rollback", {})
    assert request_fingerprint("staging", "rollback", {"reason": "a"}) != request_fingerprint(
        "staging", "rollback", {"reason": "b"}
    )

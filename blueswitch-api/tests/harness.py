import asyncio
import time
import uuid
from pathlib import Path

from config import Settings
from fake_engine import FakeBuilder, FakeInvalidator, FakeProbe, FakeSignals, FakeSwitcher
from models import ChangeEvent, SlotState
from orchestrator import Orchestrator
from storage import Storage, utc_now

WEBHOOK_SECRET = "test-webhook-secret"


def make_settings(tmp_path: Path, **overrides) -> Settings:
    settings = Settings()
    values = {
        "db_path": str(tmp_path / "blueswitch-test.db"),
        "controller_id": "controller-test",
        "environments": ["staging", "production"],
        "default_environment": "staging",
        "mutations_disabled": False,
        "webhook_secret": WEBHOOK_SECRET,
        "webhook_dedup_window_seconds": 600,
        "build_timeout_seconds": 5.0,
        "switch_timeout_seconds": 5.0,
        "purge_timeout_seconds": 5.0,
        "purge_paths": ["/*"],
        "health_max_attempts": 5,
        "health_required_passes": 3,
        "health_interval_seconds": 10.0,
        "health_backoff_base_seconds": 2.0,
        "health_backoff_max_seconds": 60.0,
        "health_probe_timeout_seconds": 5.0,
        "health_max_latency_ms": 2000.0,
        "slot_url_template": "http://{slot}.{environment}.test/healthz",
        "auto_promote": True,
        "cooldown_seconds": 300.0,
        "monitor_interval_seconds": 30.0,
        "error_rate_threshold": 0.05,
        "monitor_failure_threshold": 3,
        "lease_ttl_seconds": 300.0,
        "lock_wait_seconds": 0.2,
        "artifact_ref_schemes": ["s3", "https"],
    }
    values.update(overrides)
    for key, value in values.items():
        setattr(settings, key, value)
    return settings


class RecordingSleep:
    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def parked_sleep(delay: float) -> None:
    await asyncio.Event().wait()


class Harness:
    def __init__(self, tmp_path: Path, monitor: str = "parked", storage: Storage = None, **overrides) -> None:
        self.settings = make_settings(tmp_path, **overrides)
        self.storage = storage or Storage(self.settings.db_path)
        self.builder = FakeBuilder()
        self.switcher = FakeSwitcher()
        self.invalidator = FakeInvalidator()
        self.probe = FakeProbe()
        self.signals = FakeSignals()
        self.sleep = RecordingSleep()
        self.monitor_sleep = parked_sleep if monitor == "parked" else RecordingSleep()
        self.orchestrator = Orchestrator(
            self.storage,
            self.settings,
            self.builder,
            self.switcher,
            self.invalidator,
            self.probe,
            signals=self.signals,
            sleep=self.sleep,
            monitor_sleep=self.monitor_sleep,
        )

    def change_event(self, environment: str = "staging", content_id: str = "post-1") -> ChangeEvent:
        event = ChangeEvent(
            id=str(uuid.uuid4()),
            sourceSystem="wordpress:cms.example.com",
            contentId=content_id,
            receivedAt=utc_now(),
            environment=environment,
            recordedAt=utc_now(),
            eventType="save_post",
        )
        self.storage.insert_change_event(event, recorded_epoch=time.time())
        return event

    async def deploy(self, environment: str = "staging", content_id: str = "post-1"):
        self.orchestrator.ingest(self.change_event(environment, content_id))
        await self.orchestrator.wait_settled(environment)
        return self.storage.latest_committed_deployment(environment)

    def slot_states(self, environment: str = "staging") -> dict:
        return {slot.name.value: slot.state for slot in self.storage.get_slots(environment)}

    def active_count(self, environment: str = "staging") -> int:
        return sum(1 for state in self.slot_states(environment).values() if state == SlotState.ACTIVE)

    def events(self, environment: str = "staging") -> list:
        return [(event.severity.value, event.event) for event in self.storage.list_events(environment, limit=500)]


async def eventually(predicate, attempts: int = 2000) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    assert predicate(), "condition not reached"

from pathlib import Path

import pytest

from capability_adapters.base import CapabilityError, CapabilityTimeout, PurgeResult
from errors import InvalidStateTransition, SwitchFailed, SwitchTimeout
from fake_engine import FakeInvalidator, FakeSwitcher
from models import DeploymentStatus, Severity, SlotName, SlotState
from slots import SlotManager
from storage import Storage
from switching import SwitchCoordinator

pytestmark = pytest.mark.anyio


class Recorder:
    def __init__(self) -> None:
        self.events = []

    def __call__(self, environment, severity, event, detail=""):
        self.events.append((environment, severity, event, detail))

    def names(self):
        return [(severity, event) for _, severity, event, _ in self.events]


def _setup(tmp_path: Path, **options):
    storage = Storage(str(tmp_path / "switch.db"))
    slots = SlotManager(storage)
    switcher = FakeSwitcher()
    invalidator = FakeInvalidator()
    notify = Recorder()
    coordinator = SwitchCoordinator(storage, switcher, invalidator, notify, **options)
    staged = slots.stage("staging", "s3://sites/1.tar.gz", "job-1")
    slots.begin_warming("staging", staged.name)
    return coordinator, slots, switcher, invalidator, notify


async def test_switch_commits_deployment_and_slots_together(tmp_path: Path):
    coordinator, slots, switcher, _, notify = _setup(tmp_path)
    deployment = coordinator.open_deployment("staging", None, SlotName.BLUE, "s3://sites/1.tar.gz")
    assert coordinator.storage.get_deployment(deployment.id).status == DeploymentStatus.IN_PROGRESS

    committed = await coordinator.switch(deployment, lambda: slots.plan_promotion("staging", SlotName.BLUE))

    assert committed.status == DeploymentStatus.COMMITTED
    assert committed.switchedAt is not None
    stored = coordinator.storage.get_deployment(deployment.id)
    assert stored.status == DeploymentStatus.COMMITTED
    assert slots.active("staging").name == SlotName.BLUE
    assert switcher.calls == [("staging", None, "blue")]
    assert notify.names() == [(Severity.INFO, "SWITCH_COMMITTED")]


@pytest.mark.parametrize(
    "failure, expected",
    [
        (CapabilityError("load balancer rejected the change"), SwitchFailed),
        (CapabilityTimeout("no confirmation", operation="switch"), SwitchTimeout),
    ],
)
async def test_failed_switch_leaves_deployment_in_progress(tmp_path: Path, failure, expected):
    coordinator, slots, switcher, _, notify = _setup(tmp_path)
    switcher.failures.append(failure)
    deployment = coordinator.open_deployment("staging", None, SlotName.BLUE, "s3://sites/1.tar.gz")

    with pytest.raises(expected):
        await coordinator.switch(deployment, lambda: slots.plan_promotion("staging", SlotName.BLUE))

    assert coordinator.storage.get_deployment(deployment.id).status == DeploymentStatus.IN_PROGRESS
    assert slots.get("staging", SlotName.BLUE).state == SlotState.WARMING
    assert slots.active("staging") is None
    assert notify.names() == [(Severity.ERROR, "SWITCH_FAILED")]

    with pytest.raises(InvalidStateTransition) as excinfo:
        coordinator.open_deployment("staging", None, SlotName.BLUE, "s3://sites/1.tar.gz")
    assert excinfo.value.code == "SWITCH_IN_PROGRESS"

    committed = await coordinator.switch(deployment, lambda: slots.plan_promotion("staging", SlotName.BLUE))
    assert committed.status == DeploymentStatus.COMMITTED


async def test_hanging_switch_times_out(tmp_path: Path):
    coordinator, slots, switcher, _, notify = _setup(tmp_path, switch_timeout_seconds=0.01)
    switcher.hang = True
    deployment = coordinator.open_deployment("staging", None, SlotName.BLUE, "s3://sites/1.tar.gz")
    with pytest.raises(SwitchTimeout):
        await coordinator.switch(deployment, lambda: slots.plan_promotion("staging", SlotName.BLUE))
    assert notify.names() == [(Severity.ERROR, "SWITCH_FAILED")]


async def test_committed_deployment_cannot_switch_again(tmp_path: Path):
    coordinator, slots, _, _, _ = _setup(tmp_path)
    deployment = coordinator.open_deployment("staging", None, SlotName.BLUE, "s3://sites/1.tar.gz")
    committed = await coordinator.switch(deployment, lambda: slots.plan_promotion("staging", SlotName.BLUE))
    with pytest.raises(InvalidStateTransition):
        await coordinator.switch(committed, lambda: [])
    with pytest.raises(InvalidStateTransition):
        await coordinator.switch(deployment, lambda: [])


async def test_purge_sends_configured_paths(tmp_path: Path):
    coordinator, _, _, invalidator, notify = _setup(tmp_path, purge_paths=["/*", "/feed.xml"])
    result = await coordinator.purge("staging")
    assert result.accepted is True
    assert invalidator.calls == [("staging", ["/*", "/feed.xml"])]
    assert notify.events == []


@pytest.mark.parametrize(
    "outcome",
    [
        PurgeResult(accepted=True, rejected_patterns=["/feed.xml"]),
        PurgeResult(accepted=False),
        CapabilityError("edge API unavailable"),
    ],
)
async def test_purge_problems_are_warnings_only(tmp_path: Path, outcome):
    coordinator, _, _, invalidator, notify = _setup(tmp_path)
    invalidator.outcome = outcome
    await coordinator.purge("staging")
    assert notify.names() == [(Severity.WARNING, "PURGE_FAILED")]

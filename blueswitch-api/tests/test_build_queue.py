import random
import time
import uuid
from pathlib import Path

import pytest

from build_queue import BuildQueue
from errors import InvalidStateTransition, NotFound
from models import BuildState, ChangeEvent
from storage import Storage, utc_now


def _event(environment: str = "staging", content_id: str = "42") -> ChangeEvent:
    return ChangeEvent(
        id=str(uuid.uuid4()),
        sourceSystem="wordpress:cms.example.com",
        contentId=content_id,
        receivedAt=utc_now(),
        environment=environment,
        recordedAt=utc_now(),
    )


def _queue(tmp_path: Path) -> BuildQueue:
    return BuildQueue(Storage(str(tmp_path / "queue.db")))


def test_first_event_starts_a_job(tmp_path: Path):
    queue = _queue(tmp_path)
    event = _event()
    job, started = queue.enqueue("staging", event)
    assert started is True
    assert job.state == BuildState.RUNNING
    assert job.changeEventIds == [event.id]
    assert queue.running("staging").id == job.id


def test_events_during_a_build_coalesce_into_one_follow_up(tmp_path: Path):
    queue = _queue(tmp_path)
    running, _ = queue.enqueue("staging", _event())
    followers = [_event(content_id=str(n)) for n in range(3)]
    results = [queue.enqueue("staging", event) for event in followers]

    assert all(started is False for _, started in results)
    assert len({job.id for job, _ in results}) == 1
    pending = queue.pending("staging")
    assert pending.changeEventIds == [event.id for event in followers]
    assert len(queue.storage.list_build_jobs("staging")) == 2

    next_job = queue.finish(running.id, BuildState.SUCCEEDED, artifactRef="s3://sites/1.tar.gz")
    assert next_job.id == pending.id
    assert next_job.state == BuildState.RUNNING
    assert queue.pending("staging") is None


def test_same_event_is_not_buffered_twice(tmp_path: Path):
    queue = _queue(tmp_path)
    queue.enqueue("staging", _event())
    event = _event()
    queue.enqueue("staging", event)
    queue.enqueue("staging", event)
    assert queue.pending("staging").changeEventIds == [event.id]


def test_environments_are_independent(tmp_path: Path):
    queue = _queue(tmp_path)
    staging, staging_started = queue.enqueue("staging", _event("staging"))
    production, production_started = queue.enqueue("production", _event("production"))
    assert staging_started and production_started
    assert staging.id != production.id
    assert queue.running("staging").id == staging.id
    assert queue.running("production").id == production.id


def test_interleaved_enqueue_and_finish_never_runs_two_jobs(tmp_path: Path):
    queue = _queue(tmp_path)
    rng = random.Random(7)
    seen = set()
    for _ in range(120):
        environment = rng.choice(["staging", "production"])
        running = queue.running(environment)
        if running is not None and rng.random() < 0.4:
            state = rng.choice([BuildState.SUCCEEDED, BuildState.FAILED])
            queue.finish(running.id, state)
        else:
            event = _event(environment, content_id=str(rng.randint(1, 5)))
            job, _ = queue.enqueue(environment, event)
            seen.add(event.id)
        for env in ("staging", "production"):
            assert len(queue.storage.list_build_jobs(env, BuildState.RUNNING.value)) <= 1
            assert len(queue.storage.list_build_jobs(env, BuildState.QUEUED.value)) <= 1

    covered = set()
    for job in queue.storage.list_build_jobs():
        covered.update(job.changeEventIds)
    assert seen <= covered


def test_finish_rejects_jobs_that_are_not_running(tmp_path: Path):
    queue = _queue(tmp_path)
    running, _ = queue.enqueue("staging", _event())
    pending, _ = queue.enqueue("staging", _event())
    with pytest.raises(InvalidStateTransition):
        queue.finish(pending.id, BuildState.SUCCEEDED)
    with pytest.raises(InvalidStateTransition):
        queue.finish(running.id, BuildState.SUPERSEDED)
    queue.finish(running.id, BuildState.FAILED, failureCode="BUILD_FAILED")
    with pytest.raises(InvalidStateTransition):
        queue.finish(running.id, BuildState.SUCCEEDED)


def test_status_of_unknown_job_is_not_found(tmp_path: Path):
    with pytest.raises(NotFound):
        _queue(tmp_path).status("missing")


def test_supersede_only_applies_to_idle_jobs(tmp_path: Path):
    queue = _queue(tmp_path)
    running, _ = queue.enqueue("staging", _event())
    with pytest.raises(InvalidStateTransition):
        queue.supersede(running.id)
    queue.finish(running.id, BuildState.SUCCEEDED)
    superseded = queue.supersede(running.id)
    assert superseded.state == BuildState.SUPERSEDED
    assert superseded.finishedAt is not None


def test_recover_fails_orphans_and_merges_queued_jobs(tmp_path: Path):
    storage = Storage(str(tmp_path / "queue.db"))
    queue = BuildQueue(storage)
    running, _ = queue.enqueue("staging", _event())
    pending, _ = queue.enqueue("staging", _event())
    # A second QUEUED row can only exist after a crash mid-write.
    time.sleep(0.001)
    extra = pending.model_copy(update={"id": str(uuid.uuid4()), "changeEventIds": ["evt-late"], "createdAt": utc_now()})
    storage.insert_build_job(extra)

    environments = BuildQueue(storage).recover()

    assert environments == ["staging"]
    orphan = storage.get_build_job(running.id)
    assert orphan.state == BuildState.FAILED
    assert orphan.failureCode == "CONTROLLER_RESTARTED"
    assert storage.get_build_job(pending.id).state == BuildState.SUPERSEDED
    survivor = storage.get_build_job(extra.id)
    assert survivor.state == BuildState.QUEUED
    assert survivor.changeEventIds == pending.changeEventIds + ["evt-late"]

    started = queue.start_pending("staging")
    assert started.id == extra.id
    assert started.state == BuildState.RUNNING

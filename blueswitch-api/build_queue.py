import logging
import uuid
from typing import List, Optional, Tuple

from errors import InvalidStateTransition, NotFound
from models import BuildJob, BuildState, ChangeEvent
from storage import Storage, utc_now


TERMINAL_STATES = {BuildState.SUCCEEDED, BuildState.FAILED, BuildState.SUPERSEDED}


class BuildQueue:
    """Per-environment build serialization with coalescing.

    At most one job per environment is RUNNING. Events that arrive while a
    job runs are folded into a single QUEUED follow-up job, which starts when
    the running job finishes. Every method runs to completion without
    awaiting, so calls made from the event loop never interleave.
    """

    def __init__(self, storage: Storage) -> None:
        self.storage = storage
        self._logger = logging.getLogger("blueswitch.queue")

    def running(self, environment: str) -> Optional[BuildJob]:
        jobs = self.storage.list_build_jobs(environment, BuildState.RUNNING.value)
        return jobs[0] if jobs else None

    def pending(self, environment: str) -> Optional[BuildJob]:
        jobs = self.storage.list_build_jobs(environment, BuildState.QUEUED.value)
        return jobs[-1] if jobs else None

    def enqueue(self, environment: str, event: ChangeEvent) -> Tuple[BuildJob, bool]:
        """Fold ``event`` into the environment's queue.

        Returns the job now covering the event and whether that job was
        started by this call.
        """
        running = self.running(environment)
        pending = self.pending(environment)
        if pending is not None:
            if event.id not in pending.changeEventIds:
                pending = pending.model_copy(update={"changeEventIds": pending.changeEventIds + [event.id]})
                self.storage.update_build_job(pending)
            self._logger.info(
                "build.coalesced job_id=%s environment=%s change_event_id=%s buffered=%s",
                pending.id,
                environment,
                event.id,
                len(pending.changeEventIds),
            )
            if running is None:
                return self._start(pending), True
            return pending, False
        now = utc_now()
        if running is None:
            job = BuildJob(
                id=str(uuid.uuid4()),
                environment=environment,
                changeEventIds=[event.id],
                state=BuildState.RUNNING,
                createdAt=now,
                startedAt=now,
            )
            self.storage.insert_build_job(job)
            self._logger.info(
                "build.started job_id=%s environment=%s change_event_ids=%s",
                job.id,
                environment,
                ",".join(job.changeEventIds),
            )
            return job, True
        job = BuildJob(
            id=str(uuid.uuid4()),
            environment=environment,
            changeEventIds=[event.id],
            state=BuildState.QUEUED,
            createdAt=now,
        )
        self.storage.insert_build_job(job)
        self._logger.info(
            "build.queued job_id=%s environment=%s behind=%s",
            job.id,
            environment,
            running.id,
        )
        return job, False

    def status(self, job_id: str) -> BuildJob:
        job = self.storage.get_build_job(job_id)
        if job is None:
            raise NotFound(f"Build job {job_id} not found")
        return job

    def finish(self, job_id: str, state: BuildState, **fields) -> Optional[BuildJob]:
        """Close a RUNNING job and start the follow-up job, if any."""
        job = self.status(job_id)
        if job.state != BuildState.RUNNING:
            raise InvalidStateTransition(f"Build job {job_id} is {job.state.value}, not RUNNING")
        if state not in (BuildState.SUCCEEDED, BuildState.FAILED):
            raise InvalidStateTransition(f"Build job {job_id} cannot finish as {state.value}")
        update = dict(fields)
        update["state"] = state
        update["finishedAt"] = utc_now()
        finished = job.model_copy(update=update)
        self.storage.update_build_job(finished)
        self._logger.info(
            "build.finished job_id=%s environment=%s state=%s failure_code=%s",
            job.id,
            job.environment,
            state.value,
            fields.get("failureCode"),
        )
        return self.start_pending(job.environment)

    def start_pending(self, environment: str) -> Optional[BuildJob]:
        if self.running(environment) is not None:
            return None
        pending = self.pending(environment)
        if pending is None:
            return None
        return self._start(pending)

    def supersede(self, job_id: str) -> BuildJob:
        job = self.status(job_id)
        if job.state not in (BuildState.QUEUED, BuildState.SUCCEEDED):
            raise InvalidStateTransition(f"Build job {job_id} is {job.state.value} and cannot be superseded")
        superseded = job.model_copy(update={"state": BuildState.SUPERSEDED, "finishedAt": job.finishedAt or utc_now()})
        self.storage.update_build_job(superseded)
        self._logger.info("build.superseded job_id=%s environment=%s", job.id, job.environment)
        return superseded

    def recover(self, environment: Optional[str] = None) -> List[str]:
        """Reconcile jobs left behind by a previous controller process.

        Only ``environment`` is touched when given. Returns the environments
        that still have a pending job to start.
        """
        environments = set()
        for job in self.storage.list_build_jobs(environment, BuildState.RUNNING.value):
            failed = job.model_copy(
                update={
                    "state": BuildState.FAILED,
                    "finishedAt": utc_now(),
                    "failureCode": "CONTROLLER_RESTARTED",
                    "failureDetail": "Controller stopped while the build was running",
                }
            )
            self.storage.update_build_job(failed)
            self._logger.warning("build.orphaned job_id=%s environment=%s", job.id, job.environment)
        queued = self.storage.list_build_jobs(environment, BuildState.QUEUED.value)
        by_environment = {}
        for job in queued:
            by_environment.setdefault(job.environment, []).append(job)
        for environment, jobs in by_environment.items():
            survivor = jobs[-1]
            merged = []
            for job in jobs:
                for event_id in job.changeEventIds:
                    if event_id not in merged:
                        merged.append(event_id)
            for job in jobs[:-1]:
                self.supersede(job.id)
            if merged != survivor.changeEventIds:
                self.storage.update_build_job(survivor.model_copy(update={"changeEventIds": merged}))
            environments.add(environment)
        return sorted(environments)

    def _start(self, job: BuildJob) -> BuildJob:
        started = job.model_copy(update={"state": BuildState.RUNNING, "startedAt": utc_now()})
        self.storage.update_build_job(started)
        self._logger.info(
            "build.started job_id=%s environment=%s change_event_ids=%s",
            started.id,
            started.environment,
            ",".join(started.changeEventIds),
        )
        return started

"""Per-environment control loop.

Ties the components together: a change event enters the build queue, a
successful build is staged into the idle slot, health checked, switched live,
the edge cache purged and the rollback window armed. Each environment runs at
most one build task and one rollout task; environments proceed independently.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from artifact_ref import InvalidArtifactRef, validate_artifact_ref_scheme
from build_queue import BuildQueue
from capability_adapters.base import (
    Builder,
    CacheInvalidator,
    CapabilityError,
    CapabilityTimeout,
    HealthProbe,
    SignalSource,
    TrafficSwitcher,
)
from errors import (
    BuildFailed,
    BuildTimeout,
    HealthCheckFailed,
    InvalidStateTransition,
    LockTimeout,
    OrchestratorError,
    SwitchFailed,
)
from health import HealthChecker, HealthPolicy
from lease import Lease, LeaseManager
from models import (
    BuildJob,
    BuildState,
    ChangeEvent,
    Deployment,
    DeploymentKind,
    DeploymentStatus,
    OrchestratorEvent,
    Severity,
    Slot,
    SlotState,
    Verdict,
)
from observability import log_event
from rollback import RollbackController
from slot_state import live_slot
from slots import SlotManager
from storage import Storage, parse_utc, utc_now
from switching import SwitchCoordinator


class Orchestrator:
    def __init__(
        self,
        storage: Storage,
        settings,
        builder: Builder,
        switcher: TrafficSwitcher,
        invalidator: CacheInvalidator,
        probe: HealthProbe,
        signals: Optional[SignalSource] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monitor_sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        holder: Optional[str] = None,
    ) -> None:
        self.storage = storage
        self.settings = settings
        self.builder = builder
        self.queue = BuildQueue(storage)
        self.slots = SlotManager(storage)
        self.health = HealthChecker(probe, storage, HealthPolicy.from_settings(settings), sleep=sleep)
        self.leases = LeaseManager(
            storage,
            holder=holder or settings.controller_id or None,
            ttl_seconds=settings.lease_ttl_seconds,
            wait_seconds=settings.lock_wait_seconds,
        )
        self.switching = SwitchCoordinator(
            storage,
            switcher,
            invalidator,
            self.notify,
            switch_timeout_seconds=settings.switch_timeout_seconds,
            purge_timeout_seconds=settings.purge_timeout_seconds,
            purge_paths=settings.purge_paths,
        )
        self.rollbacks = RollbackController(
            storage,
            self.slots,
            self.switching,
            self.leases,
            self.health,
            self.notify,
            settings.slot_url,
            signals=signals,
            cooldown_seconds=settings.cooldown_seconds,
            interval_seconds=settings.monitor_interval_seconds,
            error_rate_threshold=settings.error_rate_threshold,
            failure_threshold=settings.monitor_failure_threshold,
            on_released=self._maybe_start_rollout,
            sleep=monitor_sleep or sleep,
        )
        self._build_tasks: Dict[str, asyncio.Task] = {}
        self._rollout_tasks: Dict[str, asyncio.Task] = {}
        self._ready: Dict[str, BuildJob] = {}
        self._switching: set = set()
        self._deferred: set = set()
        self._closing = False
        self._logger = logging.getLogger("blueswitch.orchestrator")

    # Operator-visible events

    def notify(self, environment: str, severity: Severity, event: str, detail: str = "") -> None:
        log_event(event.lower(), severity=severity.value, environment=environment, detail=detail)
        self.storage.insert_event(
            OrchestratorEvent(
                environment=environment,
                severity=severity,
                event=event,
                detail=detail,
                occurredAt=utc_now(),
            )
        )

    # Build pipeline

    def ingest(self, event: ChangeEvent) -> BuildJob:
        job, started = self.queue.enqueue(event.environment, event)
        if started:
            self._spawn_build(event.environment, job)
        return job

    def _spawn_build(self, environment: str, job: BuildJob) -> None:
        if self._closing:
            return
        task = asyncio.create_task(self._build_worker(job), name=f"build-{environment}")
        self._build_tasks[environment] = task
        task.add_done_callback(lambda done: self._forget(self._build_tasks, environment, done))

    async def _build_worker(self, job: Optional[BuildJob]) -> None:
        while job is not None:
            job = await self._run_build(job)

    async def _run_build(self, job: BuildJob) -> Optional[BuildJob]:
        environment = job.environment
        timeout = self.settings.build_timeout_seconds
        started = time.monotonic()
        try:
            try:
                result = await asyncio.wait_for(self.builder.invoke(job, timeout), timeout)
            except (asyncio.TimeoutError, CapabilityTimeout) as exc:
                raise BuildTimeout(f"Build {job.id} exceeded {timeout:.0f}s") from exc
            except CapabilityError as exc:
                raise BuildFailed(f"Build {job.id} failed: {exc}") from exc
            if not result.success:
                raise BuildFailed(f"Build {job.id} failed: {result.detail or 'builder reported failure'}")
            try:
                validate_artifact_ref_scheme(result.artifact_ref, self.settings.artifact_ref_schemes)
            except InvalidArtifactRef as exc:
                raise BuildFailed(f"Build {job.id} returned an unusable artifact: {exc}") from exc
        except asyncio.CancelledError:
            if self._closing:
                raise
            next_job = self.queue.finish(
                job.id,
                BuildState.FAILED,
                failureCode="ABORTED",
                failureDetail="Aborted by operator",
                durationMs=self._elapsed_ms(started),
            )
            self.notify(environment, Severity.WARNING, "BUILD_ABORTED", f"job={job.id}")
            if next_job is not None:
                self._spawn_build(environment, next_job)
            raise
        except BuildFailed as exc:
            self.notify(environment, Severity.WARNING, exc.code, f"job={job.id} {exc.message}")
            return self.queue.finish(
                job.id,
                BuildState.FAILED,
                failureCode=exc.code,
                failureDetail=exc.message,
                durationMs=self._elapsed_ms(started),
            )

        next_job = self.queue.finish(
            job.id,
            BuildState.SUCCEEDED,
            artifactRef=result.artifact_ref,
            logRef=result.log_ref,
            durationMs=result.duration_ms if result.duration_ms is not None else self._elapsed_ms(started),
        )
        self.notify(environment, Severity.INFO, "BUILD_SUCCEEDED", f"job={job.id} artifact={result.artifact_ref}")
        self._set_ready(environment, self.queue.status(job.id))
        self._maybe_start_rollout(environment)
        return next_job

    def _set_ready(self, environment: str, job: BuildJob) -> None:
        previous = self._ready.get(environment)
        if previous is not None and previous.id != job.id:
            self.queue.supersede(previous.id)
            self.notify(environment, Severity.INFO, "BUILD_SUPERSEDED", f"job={previous.id} replaced_by={job.id}")
        self._ready[environment] = job

    # Rollout pipeline

    def _maybe_start_rollout(self, environment: str) -> None:
        if self._closing:
            return
        task = self._rollout_tasks.get(environment)
        if task is not None and not task.done():
            return
        job = self._ready.get(environment)
        if job is None:
            return
        if self.slots.rollout_in_flight(environment) or self.storage.find_in_progress_deployment(environment):
            self._logger.info("rollout.deferred environment=%s job_id=%s", environment, job.id)
            return
        self._ready.pop(environment)
        task = asyncio.create_task(self._rollout(job), name=f"rollout-{environment}")
        self._rollout_tasks[environment] = task
        task.add_done_callback(lambda done: self._rollout_done(environment, done))

    def _rollout_done(self, environment: str, task: asyncio.Task) -> None:
        self._forget(self._rollout_tasks, environment, task)
        if environment in self._deferred:
            # Lease held elsewhere; retry after one lock wait.
            self._deferred.discard(environment)
            asyncio.get_running_loop().call_later(
                self.settings.lock_wait_seconds, self._maybe_start_rollout, environment
            )
            return
        self._maybe_start_rollout(environment)

    async def _rollout(self, job: BuildJob) -> Optional[Deployment]:
        environment = job.environment
        try:
            async with self.leases.hold(environment) as lease:
                return await self._stage_and_promote(job, lease)
        except LockTimeout as exc:
            if environment not in self._ready:
                self._ready[environment] = job
            self._deferred.add(environment)
            self.notify(environment, Severity.WARNING, "ROLLOUT_DEFERRED", f"job={job.id} {exc.message}")
            return None

    async def _stage_and_promote(self, job: BuildJob, lease: Lease) -> Optional[Deployment]:
        environment = job.environment
        slot: Optional[Slot] = None
        try:
            slot = self.slots.stage(environment, job.artifactRef, job.id)
            lease.renew()
            slot = self.slots.begin_warming(environment, slot.name)
            url = self.settings.slot_url(environment, slot.name.value)
            result = await self.health.evaluate(environment, slot.name, url, job.id, on_attempt=lease.renew)
            slot = self.slots.record_verdict(environment, slot.name, result.verdict)
            if result.verdict != Verdict.PASS:
                raise HealthCheckFailed(f"Slot {slot.name.value} health check {result.verdict.value}: {result.detail}")
        except asyncio.CancelledError:
            self._discard(environment, slot, "ROLLOUT_ABORTED", Severity.WARNING, f"job={job.id}")
            raise
        except HealthCheckFailed as exc:
            self._discard(environment, slot, exc.code, Severity.WARNING, f"job={job.id} {exc.message}")
            return None
        except OrchestratorError as exc:
            self._discard(environment, slot, "ROLLOUT_FAILED", Severity.ERROR, f"job={job.id} {exc.code}: {exc.message}")
            return None

        if not self.settings.auto_promote:
            self.notify(
                environment,
                Severity.INFO,
                "AWAITING_PROMOTION",
                f"slot={slot.name.value} job={job.id} passed health checks",
            )
            return None
        try:
            return await self._promote_slot(environment, slot)
        except SwitchFailed as exc:
            self._logger.error("rollout.switch_failed environment=%s job_id=%s error=%s", environment, job.id, exc.message)
            return None

    def _discard(self, environment: str, slot: Optional[Slot], event: str, severity: Severity, detail: str) -> None:
        if slot is not None:
            current = self.slots.get(environment, slot.name)
            if current.state in (SlotState.STAGED, SlotState.WARMING):
                self.slots.discard(environment, slot.name)
        self.notify(environment, severity, event, detail)

    async def _promote_slot(self, environment: str, slot: Slot) -> Deployment:
        active = self.slots.active(environment)
        deployment = self.switching.open_deployment(
            environment,
            active.name if active else None,
            slot.name,
            slot.artifactRef,
        )
        return await self._commit_promotion(deployment)

    async def _commit_promotion(self, deployment: Deployment) -> Deployment:
        environment = deployment.environment
        # The environment counts as switching until the rollback watch is armed.
        self._switching.add(environment)
        try:
            committed = await self.switching.switch(
                deployment,
                lambda: self.slots.plan_promotion(environment, deployment.toSlot),
            )
            try:
                await self.switching.purge(environment)
            finally:
                self.rollbacks.arm(environment, committed)
        finally:
            self._switching.discard(environment)
        return committed

    # Operator actions

    async def promote(self, environment: str) -> Deployment:
        """Switch traffic to a health-checked slot, or retry a stuck switch."""
        stuck = self.storage.find_in_progress_deployment(environment)
        if stuck is not None and stuck.kind == DeploymentKind.ROLLBACK:
            return await self.rollbacks.resume(stuck)
        self._ensure_no_rollout_task(environment)
        async with self.leases.hold(environment):
            stuck = self.storage.find_in_progress_deployment(environment)
            if stuck is not None:
                self.notify(environment, Severity.INFO, "SWITCH_RETRY", f"deployment={stuck.id}")
                return await self._commit_promotion(stuck)
            slot = self.slots.find(environment, SlotState.WARMING)
            if slot is None:
                raise InvalidStateTransition(f"No slot in {environment} is waiting for promotion")
            if slot.healthStatus != Verdict.PASS:
                raise HealthCheckFailed(
                    f"Slot {slot.name.value} in {environment} has not passed health checks "
                    f"({slot.healthStatus.value if slot.healthStatus else 'unchecked'})"
                )
            return await self._promote_slot(environment, slot)

    async def rollback(self, environment: str, reason: Optional[str] = None) -> Deployment:
        return await self.rollbacks.rollback(environment, reason=reason, automatic=False)

    async def abort(self, environment: str) -> dict:
        """Cancel the in-flight build and/or rollout of ``environment``.

        Live traffic is never touched. A health-checked slot waiting for
        promotion is discarded, and a switch stuck IN_PROGRESS is abandoned.
        """
        if environment in self._switching:
            raise InvalidStateTransition(
                f"A traffic switch is in flight for {environment} and cannot be aborted",
                code="SWITCH_IN_FLIGHT",
            )
        summary = {"environment": environment, "abortedBuildJobId": None, "abortedSlot": None, "abandonedDeploymentId": None}
        build_task = self._build_tasks.get(environment)
        running = self.queue.running(environment)
        if build_task is not None and not build_task.done() and running is not None:
            summary["abortedBuildJobId"] = running.id
            await self._cancel(build_task)
        rollout_task = self._rollout_tasks.get(environment)
        if rollout_task is not None and not rollout_task.done():
            in_rollout = self.slots.in_rollout(environment)
            summary["abortedSlot"] = in_rollout.name.value if in_rollout else None
            await self._cancel(rollout_task)
        elif summary["abortedBuildJobId"] is None:
            async with self.leases.hold(environment):
                stuck = self.storage.find_in_progress_deployment(environment)
                if stuck is not None:
                    self.storage.update_deployment_status(stuck.id, DeploymentStatus.ROLLED_BACK.value, reason="abandoned")
                    summary["abandonedDeploymentId"] = stuck.id
                    self.notify(environment, Severity.WARNING, "SWITCH_ABANDONED", f"deployment={stuck.id}")
                    if stuck.kind == DeploymentKind.ROLLBACK:
                        self.rollbacks.cancel(environment)
                        self.slots.release_draining(environment)
                waiting = self.slots.in_rollout(environment)
                if waiting is not None:
                    self.slots.discard(environment, waiting.name)
                    summary["abortedSlot"] = waiting.name.value
                    self.notify(environment, Severity.WARNING, "ROLLOUT_ABORTED", f"slot={waiting.name.value}")
            if summary["abandonedDeploymentId"] is None and summary["abortedSlot"] is None:
                raise InvalidStateTransition(f"Nothing to abort in {environment}")
            self._maybe_start_rollout(environment)
        log_event("operator_abort", environment=environment, **{k: v for k, v in summary.items() if k != "environment"})
        return summary

    def _ensure_no_rollout_task(self, environment: str) -> None:
        task = self._rollout_tasks.get(environment)
        if task is not None and not task.done():
            raise InvalidStateTransition(
                f"A rollout is still being health checked in {environment}",
                code="ROLLOUT_IN_FLIGHT",
            )

    async def _cancel(self, task: asyncio.Task) -> None:
        task.cancel()
        await asyncio.wait({task})

    # Queries

    def status(self, environment: str) -> dict:
        slots = self.slots.ensure(environment)
        running = self.queue.running(environment)
        pending = self.queue.pending(environment)
        latest = self.storage.latest_committed_deployment(environment)
        stuck = self.storage.find_in_progress_deployment(environment)
        ready = self._ready.get(environment)
        return {
            "environment": environment,
            "liveSlot": live_slot(self.storage.list_deployments(environment)),
            "slots": [slots[name].model_dump(mode="json") for name in sorted(slots, key=lambda n: n.value)],
            "runningBuild": running.model_dump(mode="json") if running else None,
            "pendingBuild": pending.model_dump(mode="json") if pending else None,
            "readyBuildJobId": ready.id if ready else None,
            "latestDeployment": latest.model_dump(mode="json") if latest else None,
            "inProgressDeployment": stuck.model_dump(mode="json") if stuck else None,
            "rollbackWindowDeploymentId": self.rollbacks.armed_deployment(environment),
            "lease": self.storage.get_lease(environment),
        }

    # Lifecycle

    def recover(self) -> None:
        """Rebuild in-memory state from the store after a controller restart."""
        for environment in self.settings.environments:
            self._recover_environment(environment)
        self._logger.info("orchestrator.recovered environments=%s", ",".join(self.settings.environments))

    def _recover_environment(self, environment: str) -> None:
        if self._closing:
            return
        # Reconcile only under the lease; another controller may be mid-rollout.
        if self.leases.held(environment) or not self.leases.try_acquire(environment):
            wait = self.leases.held_elsewhere(environment) or self.settings.lock_wait_seconds
            self.notify(
                environment,
                Severity.WARNING,
                "RECOVERY_DEFERRED",
                f"lease held by another operation; retrying in {wait:.1f}s",
            )
            asyncio.get_running_loop().call_later(wait, self._recover_environment, environment)
            return
        try:
            self._reconcile(environment)
            pending = self.queue.recover(environment)
        finally:
            self.leases.release(environment)
        if pending:
            job = self.queue.start_pending(environment)
            if job is not None:
                self._spawn_build(environment, job)
        self._maybe_start_rollout(environment)

    def _reconcile(self, environment: str) -> None:
        now = datetime.now(timezone.utc)
        latest = self.storage.latest_committed_deployment(environment)
        stuck = self.storage.find_in_progress_deployment(environment)
        remaining = 0.0
        if latest is not None and latest.fromSlot is not None and latest.kind == DeploymentKind.ROLL_FORWARD:
            switched_at = parse_utc(latest.switchedAt)
            if switched_at is not None:
                remaining = self.settings.cooldown_seconds - (now - switched_at).total_seconds()
        keep_draining = remaining > 0 or (stuck is not None and stuck.kind == DeploymentKind.ROLLBACK)
        pending = stuck if stuck is not None and stuck.kind == DeploymentKind.ROLL_FORWARD else None
        planned = self.slots.plan_reconcile(environment, latest, keep_draining, pending)
        if planned:
            self.storage.save_slots(planned)
            self.notify(
                environment,
                Severity.WARNING,
                "SLOTS_RECONCILED",
                ",".join(f"{slot.name.value}={slot.state.value}" for slot in planned),
            )
        if stuck is not None:
            self.notify(
                environment,
                Severity.ERROR,
                "SWITCH_IN_PROGRESS",
                f"deployment={stuck.id} kind={stuck.kind.value} needs promote (retry) or abort",
            )
        if remaining > 0 and latest is not None:
            self.rollbacks.arm(environment, latest, remaining)
        ready = self._recover_ready(environment, latest)
        if ready is not None:
            self._ready[environment] = ready

    def _recover_ready(self, environment: str, latest: Optional[Deployment]) -> Optional[BuildJob]:
        succeeded = self.storage.list_build_jobs(environment, BuildState.SUCCEEDED.value)
        if not succeeded:
            return None
        newest = succeeded[-1]
        if any(slot.buildJobId == newest.id for slot in self.slots.ensure(environment).values()):
            return None
        if self.storage.list_health_checks(environment, rollout_id=newest.id):
            return None
        if latest is not None and (newest.finishedAt or "") <= latest.createdAt:
            return None
        return newest

    async def wait_settled(self, environment: str) -> None:
        """Wait until no build or rollout task is running for ``environment``."""
        while True:
            tasks = [
                task
                for task in (self._build_tasks.get(environment), self._rollout_tasks.get(environment))
                if task is not None and not task.done()
            ]
            if not tasks:
                await asyncio.sleep(0)
                tasks = [
                    task
                    for task in (self._build_tasks.get(environment), self._rollout_tasks.get(environment))
                    if task is not None and not task.done()
                ]
                if not tasks:
                    return
            await asyncio.wait(tasks)

    async def shutdown(self) -> None:
        self._closing = True
        tasks: List[asyncio.Task] = [
            task for task in list(self._build_tasks.values()) + list(self._rollout_tasks.values()) if not task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)
        await self.rollbacks.shutdown()

    def _forget(self, registry: Dict[str, asyncio.Task], environment: str, task: asyncio.Task) -> None:
        if registry.get(environment) is task:
            registry.pop(environment, None)
        if not task.cancelled() and task.exception() is not None:
            self._logger.error(
                "orchestrator.task_crashed environment=%s task=%s error=%s",
                environment,
                task.get_name(),
                task.exception(),
            )

    def _elapsed_ms(self, started: float) -> int:
        return int((time.monotonic() - started) * 1000)

import asyncio
import logging
import math
from typing import Awaitable, Callable, Dict, Optional

from capability_adapters.base import CapabilityError, SignalSource
from errors import InvalidStateTransition, LockTimeout, OrchestratorError, RollbackTargetExpired
from health import HealthChecker
from lease import LeaseManager
from models import Deployment, DeploymentKind, Severity, Verdict
from slots import SlotManager
from storage import Storage
from switching import Notifier, SwitchCoordinator


class RollbackController:
    """Watches a freshly switched environment and reverts it on demand.

    After a roll-forward commits, the previously live slot stays DRAINING for
    the cool-down window. During that window the controller samples the
    signal source and probes the live slot; a breach switches traffic back to
    the DRAINING slot. When the window elapses the DRAINING slot is released
    to IDLE and can no longer be a rollback target.
    """

    def __init__(
        self,
        storage: Storage,
        slots: SlotManager,
        switching: SwitchCoordinator,
        leases: LeaseManager,
        health: HealthChecker,
        notify: Notifier,
        slot_url: Callable[[str, str], str],
        signals: Optional[SignalSource] = None,
        cooldown_seconds: float = 300.0,
        interval_seconds: float = 30.0,
        error_rate_threshold: float = 0.05,
        failure_threshold: int = 3,
        on_released: Optional[Callable[[str], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.storage = storage
        self.slots = slots
        self.switching = switching
        self.leases = leases
        self.health = health
        self.notify = notify
        self.slot_url = slot_url
        self.signals = signals
        self.cooldown_seconds = cooldown_seconds
        self.interval_seconds = interval_seconds
        self.error_rate_threshold = error_rate_threshold
        self.failure_threshold = max(int(failure_threshold), 1)
        self.on_released = on_released
        self.sleep = sleep
        self._watches: Dict[str, asyncio.Task] = {}
        self._armed: Dict[str, str] = {}
        self._logger = logging.getLogger("blueswitch.rollback")

    def arm(self, environment: str, deployment: Deployment, window_seconds: Optional[float] = None) -> Optional[asyncio.Task]:
        if deployment.fromSlot is None:
            self._logger.info("rollback.not_armed environment=%s deployment_id=%s reason=first_deployment", environment, deployment.id)
            return None
        self.cancel(environment)
        window = self.cooldown_seconds if window_seconds is None else max(window_seconds, 0.0)
        task = asyncio.create_task(
            self._watch(environment, deployment, window),
            name=f"rollback-watch-{environment}",
        )
        self._watches[environment] = task
        self._armed[environment] = deployment.id
        task.add_done_callback(lambda done: self._forget(environment, done))
        self._logger.info(
            "rollback.armed environment=%s deployment_id=%s window_seconds=%s",
            environment,
            deployment.id,
            window,
        )
        return task

    def armed_deployment(self, environment: str) -> Optional[str]:
        task = self._watches.get(environment)
        if task is None or task.done():
            return None
        return self._armed.get(environment)

    def cancel(self, environment: str) -> None:
        task = self._watches.get(environment)
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()

    async def wait(self, environment: str) -> None:
        task = self._watches.get(environment)
        if task is not None and task is not asyncio.current_task():
            await asyncio.wait({task})

    async def shutdown(self) -> None:
        tasks = [task for task in self._watches.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)

    async def rollback(self, environment: str, reason: Optional[str] = None, automatic: bool = False) -> Deployment:
        async with self.leases.hold(environment):
            draining = self.slots.draining(environment)
            latest = self.storage.latest_committed_deployment(environment)
            if draining is None:
                if latest is None:
                    raise InvalidStateTransition(f"Nothing has been deployed to {environment}")
                if latest.fromSlot is None:
                    raise InvalidStateTransition(f"Deployment {latest.id} has no previous slot to return to")
                raise RollbackTargetExpired(
                    f"Slot {latest.fromSlot.value} in {environment} is no longer draining; "
                    "the rollback window has closed"
                )
            active = self.slots.active(environment)
            deployment = self.switching.open_deployment(
                environment,
                active.name if active else None,
                draining.name,
                draining.artifactRef,
                kind=DeploymentKind.ROLLBACK,
                rollback_of=latest.id if latest else None,
                reason=reason or ("automatic rollback" if automatic else None),
            )
            return await self._complete(deployment, automatic)

    async def resume(self, deployment: Deployment) -> Deployment:
        """Retry the traffic switch of a ROLLBACK left IN_PROGRESS."""
        async with self.leases.hold(deployment.environment):
            return await self._complete(deployment, automatic=False)

    async def _complete(self, deployment: Deployment, automatic: bool) -> Deployment:
        environment = deployment.environment
        committed = await self.switching.switch(deployment, lambda: self.slots.plan_restore(environment))
        self.notify(
            environment,
            Severity.WARNING if automatic else Severity.INFO,
            "ROLLBACK_COMMITTED",
            f"restored {committed.toSlot.value} rollback_of={committed.rollbackOf} reason={committed.reason or '-'}",
        )
        await self.switching.purge(environment)
        self.cancel(environment)
        if self.on_released:
            self.on_released(environment)
        return committed

    async def _watch(self, environment: str, deployment: Deployment, window: float) -> None:
        interval = max(self.interval_seconds, 0.001)
        samples = max(1, math.ceil(window / interval))
        failures = 0
        for sample in range(1, samples + 1):
            await self.sleep(interval)
            breach, failures = await self._sample(environment, deployment, sample, failures)
            if breach:
                self.notify(environment, Severity.ERROR, "ROLLBACK_TRIGGERED", breach)
                try:
                    await self.rollback(environment, reason=breach[:240], automatic=True)
                except OrchestratorError as exc:
                    self.notify(environment, Severity.ERROR, "ROLLBACK_FAILED", f"{exc.code}: {exc.message}")
                return
        await self._expire(environment, deployment)

    async def _sample(self, environment: str, deployment: Deployment, sample: int, failures: int):
        slot = deployment.toSlot.value
        if self.signals is not None:
            try:
                rate = await self.signals.error_rate(environment, slot)
            except CapabilityError as exc:
                self._logger.warning("rollback.signal_unavailable environment=%s error=%s", environment, exc)
                rate = None
            if rate is not None and rate > self.error_rate_threshold:
                return f"error rate {rate:.3f} above {self.error_rate_threshold:.3f}", failures
        verdict, status_code, latency_ms, detail = await self.health.probe_once(self.slot_url(environment, slot))
        self.health.record(environment, deployment.toSlot, deployment.id, sample, verdict, status_code, latency_ms, detail)
        failures = 0 if verdict == Verdict.PASS else failures + 1
        if failures >= self.failure_threshold:
            return f"{failures} consecutive failed probes of {slot}", failures
        return None, failures

    async def _expire(self, environment: str, deployment: Deployment) -> None:
        try:
            async with self.leases.hold(environment, wait_seconds=self.leases.ttl_seconds):
                released = self.slots.release_draining(environment)
        except LockTimeout:
            self.notify(environment, Severity.ERROR, "DRAIN_RELEASE_FAILED", f"deployment={deployment.id}")
            return
        if released is not None:
            self.notify(
                environment,
                Severity.INFO,
                "ROLLBACK_WINDOW_CLOSED",
                f"deployment={deployment.id} released {released.name.value}",
            )
        if self.on_released:
            self.on_released(environment)

    def _forget(self, environment: str, task: asyncio.Task) -> None:
        if self._watches.get(environment) is task:
            self._watches.pop(environment, None)
            self._armed.pop(environment, None)
        if not task.cancelled() and task.exception() is not None:
            self._logger.error("rollback.watch_crashed environment=%s error=%s", environment, task.exception())

import asyncio
import logging
import sqlite3
import uuid
from typing import Callable, List, Optional

from capability_adapters.base import (
    CacheInvalidator,
    CapabilityError,
    CapabilityTimeout,
    PurgeResult,
    TrafficSwitcher,
)
from errors import InvalidStateTransition, PurgeFailed, SwitchFailed, SwitchTimeout
from models import Deployment, DeploymentKind, DeploymentStatus, Severity, Slot, SlotName
from storage import Storage, utc_now


Notifier = Callable[[str, Severity, str, str], None]


class SwitchCoordinator:
    """Flips live traffic and purges the edge cache afterwards.

    A switch is recorded as an IN_PROGRESS deployment before the capability is
    called. Only a successful call commits the deployment, and the commit
    lands in the same transaction as the planned slot transitions. A failed
    or timed out call leaves the record IN_PROGRESS for an operator to retry
    (promote) or abandon (abort).
    """

    def __init__(
        self,
        storage: Storage,
        switcher: TrafficSwitcher,
        invalidator: CacheInvalidator,
        notify: Notifier,
        switch_timeout_seconds: float = 60.0,
        purge_timeout_seconds: float = 30.0,
        purge_paths: Optional[List[str]] = None,
    ) -> None:
        self.storage = storage
        self.switcher = switcher
        self.invalidator = invalidator
        self.notify = notify
        self.switch_timeout_seconds = switch_timeout_seconds
        self.purge_timeout_seconds = purge_timeout_seconds
        self.purge_paths = list(purge_paths or ["/*"])
        self._logger = logging.getLogger("blueswitch.switch")

    def open_deployment(
        self,
        environment: str,
        from_slot: Optional[SlotName],
        to_slot: SlotName,
        artifact_ref: Optional[str],
        kind: DeploymentKind = DeploymentKind.ROLL_FORWARD,
        rollback_of: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Deployment:
        stuck = self.storage.find_in_progress_deployment(environment)
        if stuck is not None:
            raise InvalidStateTransition(
                f"Deployment {stuck.id} in {environment} is still IN_PROGRESS; promote to retry or abort",
                code="SWITCH_IN_PROGRESS",
            )
        deployment = Deployment(
            id=str(uuid.uuid4()),
            environment=environment,
            fromSlot=from_slot,
            toSlot=to_slot,
            artifactRef=artifact_ref,
            kind=kind,
            rollbackOf=rollback_of,
            createdAt=utc_now(),
            status=DeploymentStatus.IN_PROGRESS,
            reason=reason,
        )
        self.storage.insert_deployment(deployment)
        return deployment

    async def switch(self, deployment: Deployment, planned_slots: Callable[[], List[Slot]]) -> Deployment:
        """Drive an IN_PROGRESS deployment to COMMITTED.

        ``planned_slots`` is evaluated only after the capability succeeded so
        that it sees the slot records as they are at commit time.
        """
        if deployment.status != DeploymentStatus.IN_PROGRESS:
            raise InvalidStateTransition(f"Deployment {deployment.id} is {deployment.status.value}")
        environment = deployment.environment
        from_slot = deployment.fromSlot.value if deployment.fromSlot else None
        to_slot = deployment.toSlot.value
        timeout = self.switch_timeout_seconds
        try:
            receipt = await asyncio.wait_for(
                self.switcher.switch(environment, from_slot, to_slot, timeout),
                timeout,
            )
        except asyncio.TimeoutError as exc:
            self._switch_failed(deployment, f"no confirmation within {timeout:.0f}s")
            raise SwitchTimeout(f"Traffic switch for {environment} timed out after {timeout:.0f}s") from exc
        except CapabilityTimeout as exc:
            self._switch_failed(deployment, str(exc))
            raise SwitchTimeout(f"Traffic switch for {environment} timed out: {exc}") from exc
        except CapabilityError as exc:
            self._switch_failed(deployment, str(exc))
            raise SwitchFailed(f"Traffic switch for {environment} failed: {exc}") from exc

        switched_at = utc_now()
        slots = planned_slots()
        rolled_back_id = deployment.rollbackOf if deployment.kind == DeploymentKind.ROLLBACK else None
        try:
            self.storage.commit_switch(deployment.id, switched_at, slots, rolled_back_id=rolled_back_id)
        except sqlite3.IntegrityError as exc:
            raise InvalidStateTransition(f"Deployment {deployment.id} is no longer in progress") from exc
        committed = deployment.model_copy(update={"status": DeploymentStatus.COMMITTED, "switchedAt": switched_at})
        self._logger.info(
            "switch.committed deployment_id=%s environment=%s from_slot=%s to_slot=%s kind=%s reference=%s",
            committed.id,
            environment,
            from_slot,
            to_slot,
            committed.kind.value,
            getattr(receipt, "reference", None),
        )
        self.notify(
            environment,
            Severity.INFO,
            "SWITCH_COMMITTED",
            f"{committed.kind.value} {from_slot or '-'} -> {to_slot} deployment={committed.id}",
        )
        return committed

    async def purge(self, environment: str) -> Optional[PurgeResult]:
        timeout = self.purge_timeout_seconds
        try:
            result = await asyncio.wait_for(
                self.invalidator.purge(environment, list(self.purge_paths), timeout),
                timeout,
            )
        except asyncio.TimeoutError:
            self.notify(environment, Severity.WARNING, PurgeFailed.code, f"cache purge timed out after {timeout:.0f}s")
            return None
        except CapabilityError as exc:
            self.notify(environment, Severity.WARNING, PurgeFailed.code, f"cache purge failed: {exc}")
            return None
        if not result.accepted or result.rejected_patterns:
            rejected = ",".join(result.rejected_patterns) or "all"
            self.notify(environment, Severity.WARNING, PurgeFailed.code, f"cache purge rejected patterns: {rejected}")
        else:
            self._logger.info("purge.accepted environment=%s paths=%s", environment, ",".join(self.purge_paths))
        return result

    def _switch_failed(self, deployment: Deployment, detail: str) -> None:
        self.notify(
            deployment.environment,
            Severity.ERROR,
            "SWITCH_FAILED",
            f"deployment={deployment.id} left IN_PROGRESS: {detail}",
        )

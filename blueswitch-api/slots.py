import logging
from typing import Dict, List, Optional

from errors import InvalidStateTransition
from models import Deployment, Slot, SlotName, SlotState, Verdict
from slot_state import can_transition, rollout_in_flight
from storage import Storage, utc_now


SLOT_ORDER = [SlotName.BLUE, SlotName.GREEN]


class SlotManager:
    """Owns the blue/green slot records of every environment.

    Single-slot transitions are persisted immediately. Transitions that must
    land together with a traffic switch (promotion, rollback restore) are only
    planned here and persisted by the caller in the same transaction as the
    deployment record.
    """

    def __init__(self, storage: Storage) -> None:
        self.storage = storage
        self._logger = logging.getLogger("blueswitch.slots")

    def ensure(self, environment: str) -> Dict[SlotName, Slot]:
        slots = {slot.name: slot for slot in self.storage.get_slots(environment)}
        missing = [
            Slot(name=name, environment=environment, state=SlotState.IDLE, updatedAt=utc_now())
            for name in SLOT_ORDER
            if name not in slots
        ]
        if missing:
            self.storage.save_slots(missing)
            for slot in missing:
                slots[slot.name] = slot
        return slots

    def get(self, environment: str, name: SlotName) -> Slot:
        return self.ensure(environment)[SlotName(name)]

    def find(self, environment: str, state: SlotState) -> Optional[Slot]:
        slots = self.ensure(environment)
        for name in SLOT_ORDER:
            slot = slots[name]
            if slot.state == state:
                return slot
        return None

    def active(self, environment: str) -> Optional[Slot]:
        return self.find(environment, SlotState.ACTIVE)

    def draining(self, environment: str) -> Optional[Slot]:
        return self.find(environment, SlotState.DRAINING)

    def in_rollout(self, environment: str) -> Optional[Slot]:
        for state in (SlotState.WARMING, SlotState.STAGED):
            slot = self.find(environment, state)
            if slot:
                return slot
        return None

    def rollout_in_flight(self, environment: str) -> bool:
        return rollout_in_flight(slot.state for slot in self.ensure(environment).values())

    def stage(self, environment: str, artifact_ref: str, build_job_id: Optional[str] = None) -> Slot:
        slots = self.ensure(environment)
        if rollout_in_flight(slot.state for slot in slots.values()):
            raise InvalidStateTransition(
                f"A rollout is already in flight for {environment}",
                code="ROLLOUT_IN_FLIGHT",
            )
        target = next((slots[name] for name in SLOT_ORDER if slots[name].state == SlotState.IDLE), None)
        if target is None:
            raise InvalidStateTransition(f"No idle slot available in {environment}")
        staged = self._transition(
            target,
            SlotState.STAGED,
            artifactRef=artifact_ref,
            buildJobId=build_job_id,
            healthStatus=None,
        )
        self.storage.save_slots([staged])
        self._logger.info(
            "slot.staged environment=%s slot=%s artifact_ref=%s build_job_id=%s",
            environment,
            staged.name.value,
            artifact_ref,
            build_job_id,
        )
        return staged

    def begin_warming(self, environment: str, name: SlotName) -> Slot:
        warming = self._transition(self.get(environment, name), SlotState.WARMING)
        self.storage.save_slots([warming])
        return warming

    def record_verdict(self, environment: str, name: SlotName, verdict: Verdict) -> Slot:
        slot = self.get(environment, name)
        updated = slot.model_copy(update={"healthStatus": verdict, "updatedAt": utc_now()})
        self.storage.save_slots([updated])
        return updated

    def discard(self, environment: str, name: SlotName) -> Slot:
        slot = self.get(environment, name)
        if slot.state not in (SlotState.STAGED, SlotState.WARMING):
            raise InvalidStateTransition(
                f"Slot {slot.name.value} in {environment} is {slot.state.value}, not mid-rollout"
            )
        idle = self._transition(slot, SlotState.IDLE, artifactRef=None, buildJobId=None)
        self.storage.save_slots([idle])
        self._logger.info("slot.discarded environment=%s slot=%s", environment, name.value)
        return idle

    def release_draining(self, environment: str) -> Optional[Slot]:
        slot = self.draining(environment)
        if slot is None:
            return None
        idle = self._transition(slot, SlotState.IDLE)
        self.storage.save_slots([idle])
        self._logger.info("slot.released environment=%s slot=%s", environment, slot.name.value)
        return idle

    def plan_promotion(self, environment: str, name: SlotName) -> List[Slot]:
        slots = self.ensure(environment)
        target = slots[SlotName(name)]
        now = utc_now()
        planned = [self._transition(target, SlotState.ACTIVE, activatedAt=now)]
        for slot in slots.values():
            if slot.name != target.name and slot.state == SlotState.ACTIVE:
                planned.append(self._transition(slot, SlotState.DRAINING))
        return planned

    def plan_restore(self, environment: str) -> List[Slot]:
        slots = self.ensure(environment)
        draining = next((s for s in slots.values() if s.state == SlotState.DRAINING), None)
        active = next((s for s in slots.values() if s.state == SlotState.ACTIVE), None)
        if draining is None or active is None:
            raise InvalidStateTransition(f"No draining slot to restore in {environment}")
        # The demoted slot is the unhealthy one: straight to IDLE, no draining.
        return [
            self._transition(draining, SlotState.ACTIVE, activatedAt=utc_now()),
            self._transition(active, SlotState.IDLE),
        ]

    def plan_reconcile(
        self,
        environment: str,
        latest: Optional[Deployment],
        keep_draining: bool,
        pending: Optional[Deployment] = None,
    ) -> List[Slot]:
        """Derive slot states from the deployment log alone.

        ``latest`` is the newest committed deployment. ``pending`` is an
        IN_PROGRESS roll-forward whose target keeps its WARMING state so an
        operator can still retry the switch.
        """
        slots = self.ensure(environment)
        now = utc_now()
        planned = []
        for name in SLOT_ORDER:
            slot = slots[name]
            if latest is not None and name == latest.toSlot:
                state = SlotState.ACTIVE
            elif latest is not None and keep_draining and name == latest.fromSlot:
                state = SlotState.DRAINING
            elif pending is not None and name == pending.toSlot and slot.state == SlotState.WARMING:
                state = SlotState.WARMING
            else:
                state = SlotState.IDLE
            if slot.state == state:
                continue
            changes = {"state": state, "updatedAt": now}
            if state == SlotState.ACTIVE:
                changes["artifactRef"] = latest.artifactRef or slot.artifactRef
                changes["activatedAt"] = latest.switchedAt
            planned.append(slot.model_copy(update=changes))
        return planned

    def _transition(self, slot: Slot, target: SlotState, **changes) -> Slot:
        if not can_transition(slot.state, target):
            raise InvalidStateTransition(
                f"Slot {slot.name.value} in {slot.environment} cannot move from "
                f"{slot.state.value} to {target.value}"
            )
        update = dict(changes)
        update["state"] = target
        update["updatedAt"] = utc_now()
        return slot.model_copy(update=update)

from typing import Iterable, Optional

from models import Deployment, DeploymentStatus, SlotState


SLOT_TRANSITIONS = {
    SlotState.IDLE: {SlotState.STAGED},
    SlotState.STAGED: {SlotState.WARMING, SlotState.IDLE},
    SlotState.WARMING: {SlotState.ACTIVE, SlotState.IDLE},
    SlotState.ACTIVE: {SlotState.DRAINING, SlotState.IDLE},
    SlotState.DRAINING: {SlotState.IDLE, SlotState.ACTIVE},
}
ROLLOUT_STATES = {SlotState.STAGED, SlotState.WARMING, SlotState.DRAINING}


def can_transition(current: SlotState, target: SlotState) -> bool:
    return target in SLOT_TRANSITIONS.get(current, set())


def rollout_in_flight(states: Iterable[SlotState]) -> bool:
    return any(state in ROLLOUT_STATES for state in states)


def live_slot(deployments: Iterable[Deployment]) -> Optional[str]:
    committed = [
        d for d in deployments
        if d.status == DeploymentStatus.COMMITTED and d.switchedAt
    ]
    if not committed:
        return None
    latest = max(committed, key=lambda d: d.switchedAt)
    return latest.toSlot.value

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    OPERATOR = "OPERATOR"
    OBSERVER = "OBSERVER"


class BuildState(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SUPERSEDED = "SUPERSEDED"


class SlotName(str, Enum):
    BLUE = "blue"
    GREEN = "green"


class SlotState(str, Enum):
    IDLE = "IDLE"
    STAGED = "STAGED"
    WARMING = "WARMING"
    ACTIVE = "ACTIVE"
    DRAINING = "DRAINING"


class Verdict(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    TIMEOUT = "TIMEOUT"


class DeploymentStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMMITTED = "COMMITTED"
    ROLLED_BACK = "ROLLED_BACK"


class DeploymentKind(str, Enum):
    ROLL_FORWARD = "ROLL_FORWARD"
    ROLLBACK = "ROLLBACK"


class Severity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class Actor(BaseModel):
    actor_id: str
    role: Role


class ChangeEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    sourceSystem: str
    contentId: str
    receivedAt: str
    environment: str
    recordedAt: str
    eventType: Optional[str] = None


class BuildJob(BaseModel):
    id: str
    environment: str
    changeEventIds: List[str] = []
    state: BuildState
    createdAt: str
    startedAt: Optional[str] = None
    finishedAt: Optional[str] = None
    artifactRef: Optional[str] = None
    logRef: Optional[str] = None
    durationMs: Optional[int] = None
    failureCode: Optional[str] = None
    failureDetail: Optional[str] = None


class Slot(BaseModel):
    name: SlotName
    environment: str
    state: SlotState = SlotState.IDLE
    artifactRef: Optional[str] = None
    buildJobId: Optional[str] = None
    healthStatus: Optional[Verdict] = None
    activatedAt: Optional[str] = None
    updatedAt: Optional[str] = None


class HealthCheckResult(BaseModel):
    id: Optional[int] = None
    slotRef: str
    environment: str
    slot: SlotName
    rolloutId: str
    checkedAt: str
    attempt: int
    verdict: Verdict
    statusCode: Optional[int] = None
    latencyMs: Optional[float] = None
    detail: Optional[str] = None
    final: bool = False


class Deployment(BaseModel):
    id: str
    environment: str
    fromSlot: Optional[SlotName] = None
    toSlot: SlotName
    artifactRef: Optional[str] = None
    kind: DeploymentKind = DeploymentKind.ROLL_FORWARD
    rollbackOf: Optional[str] = None
    createdAt: str
    switchedAt: Optional[str] = None
    status: DeploymentStatus = DeploymentStatus.IN_PROGRESS
    reason: Optional[str] = Field(None, max_length=240)


class OrchestratorEvent(BaseModel):
    id: Optional[int] = None
    environment: str
    severity: Severity
    event: str
    detail: Optional[str] = None
    occurredAt: str


class RollbackRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=240)

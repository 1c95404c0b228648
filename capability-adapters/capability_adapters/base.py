"""Capability contracts the orchestrator consumes.

Each capability is implemented outside the control loop: the build system,
the load balancer / CDN that repoints traffic, the edge cache, the probe used
against a slot's health endpoint and the signal source feeding the rollback
window. Implementations must honour the ``timeout`` they are handed and raise
``CapabilityTimeout`` when it is exceeded, ``CapabilityError`` on any other
failure.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple


class CapabilityError(RuntimeError):
    def __init__(self, message: str, operation: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code


class CapabilityTimeout(CapabilityError):
    pass


@dataclass(frozen=True)
class BuildResult:
    success: bool
    artifact_ref: Optional[str] = None
    log_ref: Optional[str] = None
    duration_ms: Optional[int] = None
    detail: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "BuildResult":
        duration = payload.get("durationMs")
        return cls(
            success=bool(payload.get("success")),
            artifact_ref=payload.get("artifactRef"),
            log_ref=payload.get("logRef"),
            duration_ms=int(duration) if isinstance(duration, (int, float)) else None,
            detail=payload.get("detail"),
        )


@dataclass(frozen=True)
class SwitchReceipt:
    environment: str
    to_slot: str
    from_slot: Optional[str] = None
    reference: Optional[str] = None


@dataclass(frozen=True)
class PurgeResult:
    accepted: bool
    rejected_patterns: List[str] = field(default_factory=list)


class Builder(ABC):
    @abstractmethod
    async def invoke(self, job: Any, timeout: float) -> BuildResult:
        """Run the external site build for ``job`` and report its outcome."""


class TrafficSwitcher(ABC):
    @abstractmethod
    async def switch(
        self,
        environment: str,
        from_slot: Optional[str],
        to_slot: str,
        timeout: float,
    ) -> SwitchReceipt:
        """Repoint live traffic for ``environment`` to ``to_slot``."""


class CacheInvalidator(ABC):
    @abstractmethod
    async def purge(self, environment: str, path_patterns: List[str], timeout: float) -> PurgeResult:
        """Request an edge cache purge for ``path_patterns``."""


class HealthProbe(ABC):
    @abstractmethod
    async def check(self, url: str, timeout: float) -> Tuple[int, float]:
        """Return ``(status_code, latency_ms)`` for one request to ``url``."""


class SignalSource(ABC):
    @abstractmethod
    async def error_rate(self, environment: str, slot: str) -> float:
        """Return the current error ratio (0.0-1.0) observed for a live slot."""

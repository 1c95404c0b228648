import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple

from capability_adapters.base import CapabilityError, CapabilityTimeout, HealthProbe
from models import HealthCheckResult, SlotName, Verdict
from observability import log_event
from storage import Storage, utc_now


@dataclass(frozen=True)
class HealthPolicy:
    max_attempts: int = 5
    required_passes: int = 3
    interval_seconds: float = 10.0
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 60.0
    probe_timeout_seconds: float = 5.0
    max_latency_ms: float = 2000.0

    @classmethod
    def from_settings(cls, settings) -> "HealthPolicy":
        return cls(
            max_attempts=max(int(settings.health_max_attempts), 1),
            required_passes=max(int(settings.health_required_passes), 1),
            interval_seconds=float(settings.health_interval_seconds),
            backoff_base_seconds=float(settings.health_backoff_base_seconds),
            backoff_max_seconds=float(settings.health_backoff_max_seconds),
            probe_timeout_seconds=float(settings.health_probe_timeout_seconds),
            max_latency_ms=float(settings.health_max_latency_ms),
        )

    def backoff(self, failures: int) -> float:
        return min(self.backoff_base_seconds * (2 ** (failures - 1)), self.backoff_max_seconds)


class HealthChecker:
    """Evaluates a staged slot before it may receive traffic.

    A PASS needs ``required_passes`` consecutive passing probes within
    ``max_attempts``. Passing probes are followed by the fixed cadence,
    failing ones by exponential backoff. Evaluation stops once a PASS is out
    of reach, except while every probe so far has timed out: TIMEOUT is only
    returned after the whole budget timed out. Every probe and the final verdict
    are appended to the health log.
    """

    def __init__(
        self,
        probe: HealthProbe,
        storage: Storage,
        policy: HealthPolicy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.probe = probe
        self.storage = storage
        self.policy = policy
        self.sleep = sleep
        self._logger = logging.getLogger("blueswitch.health")

    async def probe_once(self, url: str) -> Tuple[Verdict, Optional[int], Optional[float], str]:
        timeout = self.policy.probe_timeout_seconds
        try:
            status_code, latency_ms = await asyncio.wait_for(self.probe.check(url, timeout), timeout)
        except (asyncio.TimeoutError, CapabilityTimeout):
            return Verdict.TIMEOUT, None, None, f"no response within {timeout:.1f}s"
        except CapabilityError as exc:
            return Verdict.FAIL, None, None, str(exc)
        if not 200 <= status_code < 400:
            return Verdict.FAIL, status_code, latency_ms, f"unhealthy status {status_code}"
        if latency_ms > self.policy.max_latency_ms:
            return Verdict.FAIL, status_code, latency_ms, f"latency {latency_ms:.0f}ms over {self.policy.max_latency_ms:.0f}ms"
        return Verdict.PASS, status_code, latency_ms, "ok"

    async def evaluate(
        self,
        environment: str,
        slot: SlotName,
        url: str,
        rollout_id: str,
        on_attempt: Optional[Callable[[], None]] = None,
    ) -> HealthCheckResult:
        policy = self.policy
        consecutive = 0
        failures = 0
        timeouts = 0
        attempts = 0
        delay = 0.0
        for attempt in range(1, policy.max_attempts + 1):
            if attempt > 1:
                await self.sleep(delay)
            if on_attempt:
                on_attempt()
            attempts = attempt
            verdict, status_code, latency_ms, detail = await self.probe_once(url)
            self.record(environment, slot, rollout_id, attempt, verdict, status_code, latency_ms, detail)
            if verdict == Verdict.PASS:
                consecutive += 1
                delay = policy.interval_seconds
                if consecutive >= policy.required_passes:
                    break
            else:
                consecutive = 0
                failures += 1
                if verdict == Verdict.TIMEOUT:
                    timeouts += 1
                delay = policy.backoff(failures)
            # Only a timeout across the whole budget is a TIMEOUT verdict.
            if timeouts < attempt and policy.max_attempts - attempt < policy.required_passes - consecutive:
                break

        if consecutive >= policy.required_passes:
            final_verdict = Verdict.PASS
            detail = f"{consecutive} consecutive passes"
        elif timeouts == attempts:
            final_verdict = Verdict.TIMEOUT
            detail = f"all {attempts} probes timed out"
        else:
            final_verdict = Verdict.FAIL
            detail = f"{consecutive}/{policy.required_passes} consecutive passes after {attempts} attempts"
        result = self.record(environment, slot, rollout_id, attempts, final_verdict, None, None, detail, final=True)
        log_event(
            "health_check_evaluated",
            severity="INFO" if final_verdict == Verdict.PASS else "WARNING",
            environment=environment,
            slot=slot,
            rollout_id=rollout_id,
            verdict=final_verdict,
            attempts=attempts,
        )
        return result

    def record(
        self,
        environment: str,
        slot: SlotName,
        rollout_id: str,
        attempt: int,
        verdict: Verdict,
        status_code: Optional[int],
        latency_ms: Optional[float],
        detail: str,
        final: bool = False,
    ) -> HealthCheckResult:
        slot = SlotName(slot)
        result = HealthCheckResult(
            slotRef=f"{environment}/{slot.value}",
            environment=environment,
            slot=slot,
            rolloutId=rollout_id,
            checkedAt=utc_now(),
            attempt=attempt,
            verdict=verdict,
            statusCode=status_code,
            latencyMs=latency_ms,
            detail=detail,
            final=final,
        )
        self._logger.info(
            "health.probe environment=%s slot=%s attempt=%s verdict=%s final=%s",
            environment,
            slot.value,
            attempt,
            verdict.value,
            final,
        )
        return self.storage.insert_health_check(result)

import logging
import time
from typing import Any, Callable, List, Optional

import httpx

from capability_adapters.base import (
    BuildResult,
    Builder,
    CacheInvalidator,
    CapabilityError,
    CapabilityTimeout,
    PurgeResult,
    SignalSource,
    SwitchReceipt,
    TrafficSwitcher,
)
from capability_adapters.redaction import redact_headers, redact_text, redact_url


TOKEN_HEADER = "x-blueswitch-engine-token"


class HttpEngineAdapter(Builder, TrafficSwitcher, CacheInvalidator, SignalSource):
    """Delegates builds, traffic switches, purges and signals to an engine endpoint.

    The engine is whatever runs the provider-specific calls (CI workflow
    dispatch, load balancer swap, CDN purge). It speaks JSON:

    - ``POST /builds``   -> ``{success, artifactRef, logRef, durationMs}``
    - ``POST /switch``   -> ``{reference}``
    - ``POST /purge``    -> ``{accepted, rejectedPatterns}``
    - ``GET  /signals``  -> ``{errorRate}``
    """

    def __init__(
        self,
        base_url: str = "",
        token: str = "",
        request_id_provider: Optional[Callable[[], str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url
        self.token = token
        self.request_id_provider = request_id_provider
        self._transport = transport
        self._logger = logging.getLogger("blueswitch.engine")
        self._obs_logger = logging.getLogger("blueswitch.obs")

    async def invoke(self, job: Any, timeout: float) -> BuildResult:
        body = {
            "buildJobId": job.id,
            "environment": job.environment,
            "changeEventIds": list(job.changeEventIds),
        }
        payload, _ = await self._request_json("POST", "/builds", timeout, body, operation="build")
        result = BuildResult.from_payload(payload)
        self._logger.info(
            "engine.build job_id=%s environment=%s success=%s artifact_ref=%s",
            job.id,
            job.environment,
            result.success,
            result.artifact_ref,
        )
        return result

    async def switch(
        self,
        environment: str,
        from_slot: Optional[str],
        to_slot: str,
        timeout: float,
    ) -> SwitchReceipt:
        body = {"environment": environment, "fromSlot": from_slot, "toSlot": to_slot}
        payload, _ = await self._request_json("POST", "/switch", timeout, body, operation="switch")
        return SwitchReceipt(
            environment=environment,
            from_slot=from_slot,
            to_slot=to_slot,
            reference=payload.get("reference"),
        )

    async def purge(self, environment: str, path_patterns: List[str], timeout: float) -> PurgeResult:
        body = {"environment": environment, "pathPatterns": list(path_patterns)}
        payload, _ = await self._request_json("POST", "/purge", timeout, body, operation="purge")
        rejected = payload.get("rejectedPatterns") or []
        if not isinstance(rejected, list):
            rejected = []
        return PurgeResult(accepted=bool(payload.get("accepted")), rejected_patterns=[str(item) for item in rejected])

    async def error_rate(self, environment: str, slot: str) -> float:
        payload, _ = await self._request_json(
            "GET",
            f"/signals?environment={environment}&slot={slot}",
            10.0,
            operation="signals",
        )
        value = payload.get("errorRate")
        if not isinstance(value, (int, float)):
            raise CapabilityError("Engine signals response missing errorRate", operation="signals")
        return float(value)

    async def _request_json(
        self,
        method: str,
        path: str,
        timeout: float,
        body: Optional[dict] = None,
        operation: str = "request",
    ) -> tuple[dict, int]:
        if not self.base_url:
            raise CapabilityError("Engine base URL is required", operation=operation)
        url = f"{self.base_url.rstrip('/')}{path}"
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers[TOKEN_HEADER] = self.token
        request_id = self.request_id_provider() if self.request_id_provider else ""
        if request_id:
            headers["X-Request-Id"] = request_id
        self._logger.debug(
            "engine.request method=%s url=%s headers=%s", method, redact_url(url), redact_headers(headers)
        )
        start = time.monotonic()
        self._log_engine_event("engine_call_started", request_id, operation, url)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.request(method, url, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            latency_ms = (time.monotonic() - start) * 1000
            self._log_engine_event(
                "engine_call_failed",
                request_id,
                operation,
                url,
                outcome="TIMEOUT",
                duration_ms=round(latency_ms, 1),
            )
            raise CapabilityTimeout(
                f"Engine {operation} timed out after {timeout:.1f}s",
                operation=operation,
            ) from exc
        except httpx.HTTPError as exc:
            latency_ms = (time.monotonic() - start) * 1000
            message = redact_text(f"Engine connection failed: {exc}")
            self._log_engine_event(
                "engine_call_failed",
                request_id,
                operation,
                url,
                outcome="FAILED",
                duration_ms=round(latency_ms, 1),
                error=message,
            )
            raise CapabilityError(message, operation=operation) from exc
        latency_ms = (time.monotonic() - start) * 1000
        if response.status_code >= 400:
            snippet = self._safe_snippet(response.text)
            message = f"Engine HTTP {response.status_code}: {snippet}" if snippet else f"Engine HTTP {response.status_code}"
            message = redact_text(message)
            self._log_engine_event(
                "engine_call_failed",
                request_id,
                operation,
                url,
                outcome="FAILED",
                duration_ms=round(latency_ms, 1),
                status_code=response.status_code,
                error=message,
            )
            self._logger.warning(
                "engine.request method=%s url=%s status=%s latency_ms=%.1f error=%s",
                method,
                redact_url(url),
                response.status_code,
                latency_ms,
                message,
            )
            raise CapabilityError(message, operation=operation, status_code=response.status_code)
        self._log_engine_event(
            "engine_call_succeeded",
            request_id,
            operation,
            url,
            outcome="SUCCESS",
            duration_ms=round(latency_ms, 1),
            status_code=response.status_code,
        )
        if not response.content:
            return {}, response.status_code
        try:
            payload = response.json()
        except ValueError:
            return {}, response.status_code
        if not isinstance(payload, dict):
            return {}, response.status_code
        return payload, response.status_code

    def _log_engine_event(
        self,
        event: str,
        request_id: str,
        operation: str,
        url: str,
        outcome: Optional[str] = None,
        duration_ms: Optional[float] = None,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        fields = {
            "event": event,
            "request_id": request_id or "",
            "operation": operation,
            "engine": redact_url(url),
            "outcome": outcome,
            "duration_ms": duration_ms,
            "status_code": status_code,
            "error": error,
        }
        parts = [f"{key}={fields[key]}" for key in sorted(fields) if fields[key] is not None]
        self._obs_logger.info(" ".join(parts))

    @staticmethod
    def _safe_snippet(value: str, limit: int = 240) -> str:
        if not value:
            return ""
        text = " ".join(value.split())
        if len(text) > limit:
            return text[:limit] + "..."
        return text

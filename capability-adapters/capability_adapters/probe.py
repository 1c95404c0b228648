import time
from typing import Optional, Tuple

import httpx

from capability_adapters.base import CapabilityError, CapabilityTimeout, HealthProbe
from capability_adapters.redaction import redact_text


class HttpHealthProbe(HealthProbe):
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._transport = transport

    async def check(self, url: str, timeout: float) -> Tuple[int, float]:
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.get(url, headers={"Cache-Control": "no-cache"})
        except httpx.TimeoutException as exc:
            raise CapabilityTimeout(f"Probe timed out after {timeout:.1f}s", operation="probe") from exc
        except httpx.HTTPError as exc:
            raise CapabilityError(redact_text(f"Probe failed: {exc}"), operation="probe") from exc
        latency_ms = (time.monotonic() - start) * 1000
        return response.status_code, round(latency_ms, 1)

import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from capability_adapters.base import CapabilityError, CapabilityTimeout  # noqa: E402
from capability_adapters.probe import HttpHealthProbe  # noqa: E402

pytestmark = pytest.mark.anyio

URL = "http://green.staging.internal/healthz"


async def test_returns_status_and_latency():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    status_code, latency_ms = await HttpHealthProbe(httpx.MockTransport(handler)).check(URL, timeout=2)
    assert status_code == 204
    assert latency_ms >= 0
    assert seen[0].headers["Cache-Control"] == "no-cache"


async def test_redirects_are_not_followed():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(301, headers={"Location": "http://elsewhere.test/"})

    status_code, _ = await HttpHealthProbe(httpx.MockTransport(handler)).check(URL, timeout=2)
    assert status_code == 301


async def test_timeout_and_connection_errors():
    def slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("slow", request=request)

    def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(CapabilityTimeout):
        await HttpHealthProbe(httpx.MockTransport(slow)).check(URL, timeout=2)
    with pytest.raises(CapabilityError) as exc_info:
        await HttpHealthProbe(httpx.MockTransport(refused)).check(URL, timeout=2)
    assert exc_info.value.operation == "probe"

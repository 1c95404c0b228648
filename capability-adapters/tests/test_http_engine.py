import json
import sys
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from capability_adapters.adapter import TOKEN_HEADER, HttpEngineAdapter  # noqa: E402
from capability_adapters.base import CapabilityError, CapabilityTimeout  # noqa: E402

pytestmark = pytest.mark.anyio

JOB = SimpleNamespace(id="job-1", environment="staging", changeEventIds=["evt-1", "evt-2"])


def _adapter(handler, **kwargs) -> HttpEngineAdapter:
    return HttpEngineAdapter(
        base_url=kwargs.pop("base_url", "http://engine.local/"),
        token=kwargs.pop("token", "engine-secret"),
        request_id_provider=lambda: "req-1",
        transport=httpx.MockTransport(handler),
    )


async def test_build_posts_job_and_parses_result():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"success": True, "artifactRef": "s3://sites/job-1.tar.gz", "logRef": "ci/1", "durationMs": 4200},
        )

    result = await _adapter(handler).invoke(JOB, timeout=30)

    assert result.success is True
    assert result.artifact_ref == "s3://sites/job-1.tar.gz"
    assert result.duration_ms == 4200
    request = seen[0]
    assert request.url == "http://engine.local/builds"
    assert request.headers[TOKEN_HEADER] == "engine-secret"
    assert request.headers["X-Request-Id"] == "req-1"
    assert json.loads(request.content) == {
        "buildJobId": "job-1",
        "environment": "staging",
        "changeEventIds": ["evt-1", "evt-2"],
    }


async def test_switch_and_purge_payloads():
    bodies = {}

    def handler(request: httpx.Request) -> httpx.Response:
        bodies[request.url.path] = json.loads(request.content)
        if request.url.path == "/switch":
            return httpx.Response(200, json={"reference": "lb-change-9"})
        return httpx.Response(202, json={"accepted": True, "rejectedPatterns": ["/feed.xml"]})

    adapter = _adapter(handler)
    receipt = await adapter.switch("production", "blue", "green", timeout=10)
    purge = await adapter.purge("production", ["/*", "/feed.xml"], timeout=10)

    assert receipt.reference == "lb-change-9"
    assert (receipt.from_slot, receipt.to_slot) == ("blue", "green")
    assert bodies["/switch"] == {"environment": "production", "fromSlot": "blue", "toSlot": "green"}
    assert bodies["/purge"] == {"environment": "production", "pathPatterns": ["/*", "/feed.xml"]}
    assert purge.accepted is True
    assert purge.rejected_patterns == ["/feed.xml"]


async def test_error_rate_reads_signals():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.params["slot"] == "green"
        return httpx.Response(200, json={"errorRate": 0.07})

    assert await _adapter(handler).error_rate("staging", "green") == pytest.approx(0.07)


async def test_error_rate_without_value_is_an_error():
    adapter = _adapter(lambda request: httpx.Response(200, json={}))
    with pytest.raises(CapabilityError):
        await adapter.error_rate("staging", "green")


async def test_http_error_is_redacted():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="upstream rejected Authorization: Bearer leaked-token")

    with pytest.raises(CapabilityError) as exc_info:
        await _adapter(handler).switch("staging", "blue", "green", timeout=10)
    assert exc_info.value.status_code == 500
    assert exc_info.value.operation == "switch"
    assert "leaked-token" not in str(exc_info.value)
    assert str(exc_info.value).startswith("Engine HTTP 500")


async def test_timeout_maps_to_capability_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(CapabilityTimeout):
        await _adapter(handler).invoke(JOB, timeout=1)


async def test_connection_error_maps_to_capability_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(CapabilityError) as exc_info:
        await _adapter(handler).purge("staging", ["/*"], timeout=1)
    assert not isinstance(exc_info.value, CapabilityTimeout)
    assert "Engine connection failed" in str(exc_info.value)


async def test_missing_base_url():
    adapter = HttpEngineAdapter()
    with pytest.raises(CapabilityError) as exc_info:
        await adapter.switch("staging", None, "blue", timeout=1)
    assert "base URL" in str(exc_info.value)

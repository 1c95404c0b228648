import json

import httpx
import pytest

import cli


def _transport(status_code: int, body: dict, seen: list = None) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status_code, json=body)

    return httpx.MockTransport(handler)


def test_status_prints_body_and_exits_zero(capsys):
    seen = []
    code = cli.main(
        ["--api-url", "http://blueswitch.test/", "--token", "t0k", "status", "staging"],
        transport=_transport(200, {"environment": "staging", "liveSlot": "blue"}, seen),
    )
    assert code == cli.EXIT_OK
    assert json.loads(capsys.readouterr().out)["liveSlot"] == "blue"
    request = seen[0]
    assert request.method == "GET"
    assert request.url.path == "/v1/environments/staging/status"
    assert request.headers["Authorization"] == "Bearer t0k"


def test_rollback_sends_reason_and_idempotency_key():
    seen = []
    code = cli.main(
        ["--idempotency-key", "k-1", "rollback", "production", "--reason", "broken nav"],
        transport=_transport(200, {"kind": "ROLLBACK"}, seen),
    )
    assert code == cli.EXIT_OK
    request = seen[0]
    assert request.url.path == "/v1/environments/production/rollback"
    assert json.loads(request.content) == {"reason": "broken nav"}
    assert request.headers["Idempotency-Key"] == "k-1"


@pytest.mark.parametrize(
    "status_code, body, expected",
    [
        (409, {"code": "ROLLBACK_TARGET_EXPIRED", "failure_cause": "INVALID_STATE"}, cli.EXIT_INVALID_STATE),
        (403, {"code": "ROLE_FORBIDDEN", "failure_cause": "USER_ERROR"}, cli.EXIT_INVALID_STATE),
        (502, {"code": "SWITCH_FAILED", "failure_cause": "EXTERNAL_FAILURE"}, cli.EXIT_EXTERNAL_FAILURE),
        (423, {"code": "LOCK_TIMEOUT", "failure_cause": "CONTENTION"}, cli.EXIT_CONTENTION),
        (500, {"message": "boom"}, cli.EXIT_EXTERNAL_FAILURE),
        (404, {"message": "missing"}, cli.EXIT_INVALID_STATE),
    ],
)
def test_exit_codes_follow_failure_cause(capsys, status_code, body, expected):
    code = cli.main(["promote", "staging"], transport=_transport(status_code, body))
    assert code == expected
    assert json.loads(capsys.readouterr().err) == body


def test_connection_failure_is_external(capsys):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    code = cli.main(["abort", "staging"], transport=httpx.MockTransport(handler))
    assert code == cli.EXIT_EXTERNAL_FAILURE
    assert "Request failed" in capsys.readouterr().err


def test_unknown_command_is_rejected():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["deploy", "staging"])

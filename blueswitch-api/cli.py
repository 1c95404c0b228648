#!/usr/bin/env python3
import argparse
import json
import os
import sys
from typing import List, Optional

import httpx


EXIT_OK = 0
EXIT_INVALID_STATE = 1
EXIT_EXTERNAL_FAILURE = 2
EXIT_CONTENTION = 3

EXIT_BY_CAUSE = {
    "INVALID_STATE": EXIT_INVALID_STATE,
    "USER_ERROR": EXIT_INVALID_STATE,
    "EXTERNAL_FAILURE": EXIT_EXTERNAL_FAILURE,
    "CONTENTION": EXIT_CONTENTION,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="deploy", description="Operate Blueswitch blue/green environments.")
    parser.add_argument("--api-url", default=os.getenv("BLUESWITCH_API_URL", "http://127.0.0.1:8000"))
    parser.add_argument("--token", default=os.getenv("BLUESWITCH_TOKEN", ""), help="Bearer token (BLUESWITCH_TOKEN)")
    parser.add_argument("--idempotency-key", help="Replay-safe key for mutations")
    parser.add_argument("--timeout", type=float, default=120.0, help="Request timeout in seconds")
    commands = parser.add_subparsers(dest="command", required=True)
    for name, help_text in (
        ("status", "Show slots, builds and the live deployment"),
        ("promote", "Switch traffic to the health-checked slot or retry a stuck switch"),
        ("rollback", "Return traffic to the draining slot"),
        ("abort", "Cancel the in-flight build and/or rollout"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("environment")
        if name == "rollback":
            command.add_argument("--reason", help="Recorded on the rollback deployment (max 240 chars)")
    return parser


def exit_code_for(status_code: int, body: object) -> int:
    if status_code < 400:
        return EXIT_OK
    cause = body.get("failure_cause") if isinstance(body, dict) else None
    if cause in EXIT_BY_CAUSE:
        return EXIT_BY_CAUSE[cause]
    return EXIT_EXTERNAL_FAILURE if status_code >= 500 else EXIT_INVALID_STATE


def main(argv: Optional[List[str]] = None, transport: Optional[httpx.BaseTransport] = None) -> int:
    args = build_parser().parse_args(argv)
    path = f"/v1/environments/{args.environment}/{args.command}"
    headers = {"Accept": "application/json"}
    if args.token:
        headers["Authorization"] = f"Bearer {args.token}"
    if args.idempotency_key:
        headers["Idempotency-Key"] = args.idempotency_key

    try:
        with httpx.Client(base_url=args.api_url.rstrip("/"), timeout=args.timeout, transport=transport) as client:
            if args.command == "status":
                response = client.get(path, headers=headers)
            elif args.command == "rollback":
                response = client.post(path, headers=headers, json={"reason": args.reason} if args.reason else None)
            else:
                response = client.post(path, headers=headers)
    except httpx.HTTPError as exc:
        print(f"Request failed: {exc}", file=sys.stderr)
        return EXIT_EXTERNAL_FAILURE

    try:
        body = response.json()
    except ValueError:
        body = {"message": response.text}
    stream = sys.stdout if response.status_code < 400 else sys.stderr
    print(json.dumps(body, indent=2, sort_keys=True), file=stream)
    return exit_code_for(response.status_code, body)


if __name__ == "__main__":
    raise SystemExit(main())

import json
import os
import time
from typing import Iterable

import jwt
import requests
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

ISSUER = "https://auth.blueswitch.example/"
AUDIENCE = "https://blueswitch-api"
ROLES_CLAIM = "https://blueswitch.example/claims/roles"
JWKS_URL = "https://auth.blueswitch.example/.well-known/jwks.json"
KID = "blueswitch-test-key"

OPERATORS = ["blueswitch-operators"]
OBSERVERS = ["blueswitch-observers"]

_PRIVATE_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
_PUBLIC_JWK = json.loads(RSAAlgorithm.to_jwk(_PRIVATE_KEY.public_key()))
_PUBLIC_JWK["kid"] = KID


def configure_auth_env() -> None:
    os.environ["BLUESWITCH_OIDC_ISSUER"] = ISSUER
    os.environ["BLUESWITCH_OIDC_AUDIENCE"] = AUDIENCE
    os.environ["BLUESWITCH_OIDC_JWKS_URL"] = JWKS_URL
    os.environ["BLUESWITCH_OIDC_ROLES_CLAIM"] = ROLES_CLAIM


def configure_auth_settings(monkeypatch, settings) -> None:
    monkeypatch.setattr(settings, "oidc_issuer", ISSUER)
    monkeypatch.setattr(settings, "oidc_audience", AUDIENCE)
    monkeypatch.setattr(settings, "oidc_jwks_url", JWKS_URL)
    monkeypatch.setattr(settings, "oidc_roles_claim", ROLES_CLAIM)


def build_token(
    roles: Iterable[str],
    subject: str = "operator-1",
    issuer: str = ISSUER,
    audience: str = AUDIENCE,
    expires_in: int = 3600,
    include_roles: bool = True,
) -> str:
    now = int(time.time())
    payload = {"iss": issuer, "aud": audience, "sub": subject, "iat": now, "exp": now + expires_in}
    if include_roles:
        payload[ROLES_CLAIM] = list(roles)
    return jwt.encode(payload, _PRIVATE_KEY, algorithm="RS256", headers={"kid": KID})


def auth_header(roles: Iterable[str], **kwargs) -> dict:
    return {"Authorization": f"Bearer {build_token(roles, **kwargs)}"}


def mock_jwks(monkeypatch) -> None:
    payload = {"keys": [_PUBLIC_JWK]}

    class FakeResponse:
        def raise_for_status(self) -> None:
            return None

        def json(self) -> dict:
            return payload

    def _fake_get(url: str, timeout: int = 5):
        if url != JWKS_URL:
            raise requests.RequestException(f"unexpected jwks url {url}")
        return FakeResponse()

    monkeypatch.setattr(requests, "get", _fake_get)

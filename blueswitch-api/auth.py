import json
import time
from typing import Any, Dict, List, Optional

import jwt
import requests
from fastapi import HTTPException
from jwt.algorithms import RSAAlgorithm

from config import SETTINGS
from models import Actor, Role

_JWKS_CACHE: Dict[str, Any] = {"url": None, "fetched_at": 0.0, "keys": {}}
_JWKS_TTL_SECONDS = 300

ROLE_GROUPS = {
    "blueswitch-operators": Role.OPERATOR,
    "blueswitch-observers": Role.OBSERVER,
}


def _auth_error(status_code: int, code: str, message: str) -> None:
    raise HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _jwks_url() -> str:
    if SETTINGS.oidc_jwks_url:
        return SETTINGS.oidc_jwks_url
    if not SETTINGS.oidc_issuer:
        return ""
    return f"{SETTINGS.oidc_issuer.rstrip('/')}/.well-known/jwks.json"


def _fetch_jwks(jwks_url: str) -> Dict[str, dict]:
    now = time.time()
    if _JWKS_CACHE["url"] == jwks_url and (now - _JWKS_CACHE["fetched_at"]) < _JWKS_TTL_SECONDS:
        return _JWKS_CACHE["keys"]
    try:
        response = requests.get(jwks_url, timeout=5)
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError):
        _auth_error(503, "OIDC_UNAVAILABLE", "Signing keys could not be fetched")
    keys = {key["kid"]: key for key in payload.get("keys", []) if key.get("kid")}
    _JWKS_CACHE.update({"url": jwks_url, "fetched_at": now, "keys": keys})
    return keys


def _decode_jwt(token: str) -> dict:
    for value, name in (
        (SETTINGS.oidc_issuer, "BLUESWITCH_OIDC_ISSUER"),
        (SETTINGS.oidc_audience, "BLUESWITCH_OIDC_AUDIENCE"),
        (SETTINGS.oidc_roles_claim, "BLUESWITCH_OIDC_ROLES_CLAIM"),
    ):
        if not value:
            _auth_error(500, "OIDC_CONFIG_MISSING", f"{name} is required")
    jwks_url = _jwks_url()
    if not jwks_url:
        _auth_error(500, "OIDC_CONFIG_MISSING", "BLUESWITCH_OIDC_JWKS_URL is required")
    try:
        header = jwt.get_unverified_header(token)
    except jwt.InvalidTokenError:
        _auth_error(401, "UNAUTHORIZED", "Invalid token header")
    kid = header.get("kid")
    if not kid:
        _auth_error(401, "UNAUTHORIZED", "Token is missing kid")
    jwk = _fetch_jwks(jwks_url).get(kid)
    if not jwk:
        _auth_error(401, "UNAUTHORIZED", "Unknown signing key")
    try:
        return jwt.decode(
            token,
            key=RSAAlgorithm.from_jwk(json.dumps(jwk)),
            algorithms=["RS256"],
            audience=SETTINGS.oidc_audience,
            issuer=SETTINGS.oidc_issuer,
        )
    except jwt.ExpiredSignatureError:
        _auth_error(401, "UNAUTHORIZED", "Token expired")
    except jwt.InvalidTokenError:
        _auth_error(401, "UNAUTHORIZED", "Invalid token")
    return {}


def _map_role(groups: List[str]) -> Role:
    # Operators win when a token carries both groups.
    for group, role in ROLE_GROUPS.items():
        if group in groups:
            return role
    _auth_error(403, "AUTHZ_ROLE_REQUIRED", "No recognized Blueswitch role in token")
    return Role.OBSERVER


def get_actor(authorization: Optional[str]) -> Actor:
    if not authorization:
        _auth_error(401, "UNAUTHORIZED", "Authorization header required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        _auth_error(401, "UNAUTHORIZED", "Authorization must be Bearer token")
    claims = _decode_jwt(token.strip())
    groups = claims.get(SETTINGS.oidc_roles_claim, [])
    if not isinstance(groups, list):
        _auth_error(403, "AUTHZ_ROLE_REQUIRED", "Roles claim missing or invalid")
    actor_id = claims.get("sub") or claims.get("email") or "unknown"
    return Actor(actor_id=actor_id, role=_map_role(groups))

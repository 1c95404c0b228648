import logging
import os
import sys
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Body, FastAPI, Header, Query, Request
from fastapi.exceptions import HTTPException as FastAPIHTTPException, RequestValidationError
from fastapi.responses import JSONResponse

HERE = os.path.abspath(os.path.dirname(__file__))
ADAPTER_CANDIDATES = [
    os.path.join(HERE, "capability-adapters"),
    os.path.join(os.path.dirname(HERE), "capability-adapters"),
]
for candidate in ADAPTER_CANDIDATES:
    if os.path.isdir(candidate) and candidate not in sys.path:
        sys.path.append(candidate)
        break

from capability_adapters.adapter import HttpEngineAdapter
from capability_adapters.probe import HttpHealthProbe

from auth import get_actor
from config import SETTINGS
from errors import MutationsDisabled, NotFound, OrchestratorError, classify_failure_cause
from idempotency import IdempotencyStore, request_fingerprint
from models import Actor, RollbackRequest, Role
from observability import get_request_id, log_event, request_id_ctx
from orchestrator import Orchestrator
from storage import build_storage
from webhooks import PROVIDER_HEADER, SIGNATURE_HEADER, WebhookReceiver


logger = logging.getLogger("blueswitch.api")
storage = build_storage(SETTINGS.db_path)
engine = HttpEngineAdapter(SETTINGS.engine_url, SETTINGS.engine_token, request_id_provider=get_request_id)
orchestrator = Orchestrator(storage, SETTINGS, engine, engine, engine, HttpHealthProbe(), signals=engine)
receiver = WebhookReceiver(
    storage,
    SETTINGS.webhook_secret,
    SETTINGS.environments,
    SETTINGS.default_environment,
    dedup_window_seconds=SETTINGS.webhook_dedup_window_seconds,
)
idempotency = IdempotencyStore(storage)

logger.info(
    "config.loaded environments=%s engine_url=%s engine_token=%s webhook_secret=%s",
    ",".join(SETTINGS.environments),
    "set" if SETTINGS.engine_url else "missing",
    "set" if SETTINGS.engine_token else "missing",
    "set" if SETTINGS.webhook_secret else "missing",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    orchestrator.recover()
    yield
    await orchestrator.shutdown()


app = FastAPI(title="Blueswitch API", version="1.0.0", lifespan=lifespan)


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "code": code,
            "error_code": code,
            "failure_cause": classify_failure_cause(code),
            "message": message,
            "request_id": request_id_ctx.get() or str(uuid.uuid4()),
        },
    )


@app.exception_handler(OrchestratorError)
async def orchestrator_error_handler(request: Request, exc: OrchestratorError):
    log_event(
        "request_failed",
        severity="WARNING",
        path=request.url.path,
        error_code=exc.code,
        failure_cause=exc.failure_cause,
    )
    return error_response(exc.status_code, exc.code, exc.message)


@app.exception_handler(FastAPIHTTPException)
async def http_exception_handler(request: Request, exc: FastAPIHTTPException):
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        return error_response(exc.status_code, exc.detail["code"], exc.detail.get("message", ""))
    return error_response(exc.status_code, "HTTP_ERROR", str(exc.detail))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return error_response(400, "INVALID_REQUEST", "Invalid request")


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    token = request_id_ctx.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx.reset(token)
    response.headers["X-Request-Id"] = request_id
    return response


def require_role(actor: Actor, allowed: set, action: str) -> Optional[JSONResponse]:
    if actor.role in allowed:
        return None
    return error_response(403, "ROLE_FORBIDDEN", f"Role {actor.role.value} cannot {action}")


def require_environment(environment: str) -> None:
    if environment not in orchestrator.settings.environments:
        raise NotFound(f"Environment {environment} is not managed")


def require_mutations_enabled() -> None:
    if SETTINGS.mutations_disabled:
        raise MutationsDisabled("Mutations are disabled by BLUESWITCH_MUTATIONS_DISABLED")


def enforce_idempotency(request: Request, idempotency_key: Optional[str], fingerprint: str):
    if not idempotency_key:
        return None
    cached = idempotency.get(f"{idempotency_key}:{request.method}:{request.url.path}")
    if not cached:
        return None
    if cached.get("request_fingerprint") not in (None, fingerprint):
        return error_response(409, "IDMP_KEY_CONFLICT", "Idempotency-Key was used with a different request")
    return JSONResponse(status_code=cached["status_code"], content=cached["response"])


def store_idempotency(request: Request, idempotency_key: Optional[str], response: dict, fingerprint: str) -> None:
    if idempotency_key:
        idempotency.set(f"{idempotency_key}:{request.method}:{request.url.path}", response, 200, fingerprint)


@app.get("/v1/health")
def health():
    return {"status": "ok"}


@app.post("/webhooks/content-change", status_code=202)
async def content_change(
    request: Request,
    signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
    provider: Optional[str] = Header(None, alias=PROVIDER_HEADER),
):
    require_mutations_enabled()
    body = await request.body()
    event, is_new = receiver.receive(body, signature, provider)
    job = orchestrator.ingest(event) if is_new else None
    log_event(
        "webhook_received",
        change_event_id=event.id,
        environment=event.environment,
        duplicate=not is_new,
        build_job_id=job.id if job else None,
    )
    return {
        "changeEventId": event.id,
        "environment": event.environment,
        "duplicate": not is_new,
        "buildJobId": job.id if job else None,
    }


@app.get("/v1/environments/{environment}/status")
def environment_status(environment: str, authorization: Optional[str] = Header(None)):
    get_actor(authorization)
    require_environment(environment)
    return orchestrator.status(environment)


async def _operator_mutation(request: Request, environment: str, action: str, authorization, idempotency_key, run, body=None):
    actor = get_actor(authorization)
    role_error = require_role(actor, {Role.OPERATOR}, action)
    if role_error:
        return role_error
    require_mutations_enabled()
    require_environment(environment)
    fingerprint = request_fingerprint(environment, action, body)
    cached = enforce_idempotency(request, idempotency_key, fingerprint)
    if cached:
        return cached
    result = await run()
    response = result if isinstance(result, dict) else result.model_dump(mode="json")
    store_idempotency(request, idempotency_key, response, fingerprint)
    log_event("operator_action", action=action, environment=environment, actor_id=actor.actor_id)
    return response


@app.post("/v1/environments/{environment}/promote")
async def promote(
    environment: str,
    request: Request,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    authorization: Optional[str] = Header(None),
):
    return await _operator_mutation(
        request,
        environment,
        "promote",
        authorization,
        idempotency_key,
        lambda: orchestrator.promote(environment),
    )


@app.post("/v1/environments/{environment}/rollback")
async def rollback(
    environment: str,
    request: Request,
    payload: Optional[RollbackRequest] = Body(None),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    authorization: Optional[str] = Header(None),
):
    reason = payload.reason if payload else None
    return await _operator_mutation(
        request,
        environment,
        "rollback",
        authorization,
        idempotency_key,
        lambda: orchestrator.rollback(environment, reason=reason),
        body={"reason": reason},
    )


@app.post("/v1/environments/{environment}/abort")
async def abort(
    environment: str,
    request: Request,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    authorization: Optional[str] = Header(None),
):
    return await _operator_mutation(
        request,
        environment,
        "abort",
        authorization,
        idempotency_key,
        lambda: orchestrator.abort(environment),
    )


@app.get("/v1/builds/{job_id}")
def get_build(job_id: str, authorization: Optional[str] = Header(None)):
    get_actor(authorization)
    return orchestrator.queue.status(job_id).model_dump(mode="json")


@app.get("/v1/environments/{environment}/builds")
def list_builds(environment: str, authorization: Optional[str] = Header(None)):
    get_actor(authorization)
    require_environment(environment)
    return [job.model_dump(mode="json") for job in orchestrator.storage.list_build_jobs(environment)]


@app.get("/v1/environments/{environment}/change-events")
def list_change_events(environment: str, authorization: Optional[str] = Header(None)):
    get_actor(authorization)
    require_environment(environment)
    return [e.model_dump(mode="json") for e in orchestrator.storage.list_change_events(environment)]


@app.get("/v1/environments/{environment}/deployments")
def list_deployments(environment: str, authorization: Optional[str] = Header(None)):
    get_actor(authorization)
    require_environment(environment)
    return [d.model_dump(mode="json") for d in orchestrator.storage.list_deployments(environment)]


@app.get("/v1/environments/{environment}/health-checks")
def list_health_checks(
    environment: str,
    rollout_id: Optional[str] = Query(None, alias="rolloutId"),
    authorization: Optional[str] = Header(None),
):
    get_actor(authorization)
    require_environment(environment)
    return [r.model_dump(mode="json") for r in orchestrator.storage.list_health_checks(environment, rollout_id)]


@app.get("/v1/environments/{environment}/events")
def list_events(
    environment: str,
    limit: int = Query(50, ge=1, le=500),
    authorization: Optional[str] = Header(None),
):
    get_actor(authorization)
    require_environment(environment)
    return [e.model_dump(mode="json") for e in orchestrator.storage.list_events(environment, limit)]


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=os.getenv("BLUESWITCH_LOG_LEVEL", "INFO"))
    uvicorn.run("main:app", host=os.getenv("BLUESWITCH_HOST", "127.0.0.1"), port=int(os.getenv("BLUESWITCH_PORT", "8000")))

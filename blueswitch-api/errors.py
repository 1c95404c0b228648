from typing import Optional


USER_ERROR = "USER_ERROR"
INVALID_STATE = "INVALID_STATE"
EXTERNAL_FAILURE = "EXTERNAL_FAILURE"
CONTENTION = "CONTENTION"
UNKNOWN = "UNKNOWN"


class OrchestratorError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    failure_cause = UNKNOWN

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code


class InvalidSignature(OrchestratorError):
    status_code = 401
    code = "INVALID_SIGNATURE"
    failure_cause = USER_ERROR


class MalformedPayload(OrchestratorError):
    status_code = 400
    code = "MALFORMED_PAYLOAD"
    failure_cause = USER_ERROR


class NotFound(OrchestratorError):
    status_code = 404
    code = "NOT_FOUND"
    failure_cause = USER_ERROR


class BuildFailed(OrchestratorError):
    status_code = 502
    code = "BUILD_FAILED"
    failure_cause = EXTERNAL_FAILURE


class BuildTimeout(BuildFailed):
    status_code = 504
    code = "BUILD_TIMEOUT"


class HealthCheckFailed(OrchestratorError):
    status_code = 409
    code = "HEALTH_CHECK_FAILED"
    failure_cause = INVALID_STATE


class SwitchFailed(OrchestratorError):
    status_code = 502
    code = "SWITCH_FAILED"
    failure_cause = EXTERNAL_FAILURE


class SwitchTimeout(SwitchFailed):
    status_code = 504
    code = "SWITCH_TIMEOUT"


class PurgeFailed(OrchestratorError):
    status_code = 502
    code = "PURGE_FAILED"
    failure_cause = EXTERNAL_FAILURE


class InvalidStateTransition(OrchestratorError):
    status_code = 409
    code = "INVALID_STATE_TRANSITION"
    failure_cause = INVALID_STATE


class RollbackTargetExpired(InvalidStateTransition):
    code = "ROLLBACK_TARGET_EXPIRED"


class MutationsDisabled(OrchestratorError):
    status_code = 503
    code = "MUTATIONS_DISABLED"
    failure_cause = INVALID_STATE


class LockTimeout(OrchestratorError):
    status_code = 423
    code = "LOCK_TIMEOUT"
    failure_cause = CONTENTION


_CAUSE_BY_CODE = {
    "INVALID_REQUEST": USER_ERROR,
    "UNAUTHORIZED": USER_ERROR,
    "AUTHZ_ROLE_REQUIRED": USER_ERROR,
    "ROLE_FORBIDDEN": USER_ERROR,
    "IDMP_KEY_CONFLICT": USER_ERROR,
    "HTTP_ERROR": USER_ERROR,
}


def classify_failure_cause(error_code: Optional[str]) -> str:
    if not error_code:
        return UNKNOWN
    if error_code in _CAUSE_BY_CODE:
        return _CAUSE_BY_CODE[error_code]
    for error_class in _all_error_classes(OrchestratorError):
        if error_class.code == error_code:
            return error_class.failure_cause
    return UNKNOWN


def _all_error_classes(root: type) -> list:
    found = []
    for sub in root.__subclasses__():
        found.append(sub)
        found.extend(_all_error_classes(sub))
    return found

"""Domain Errors - Centralized Exception Hierarchy"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base domain error - all errors extend this"""

    error_code: str = "DOMAIN_ERROR"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to API response dict"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Authentication & Authorization Errors
class AuthenticationError(DomainError):
    """Token missing, invalid, or expired"""
    error_code = "AUTHENTICATION_ERROR"
    http_status = 401


class AuthorizationError(DomainError):
    """User lacks permission for action"""
    error_code = "AUTHORIZATION_ERROR"
    http_status = 403


class PermissionDeniedError(AuthorizationError):
    """Specific permission denied"""
    error_code = "PERMISSION_DENIED"

    def __init__(self, permission: str, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message or f"Missing required permission: {permission}",
            details={"permission": permission, **(details or {})}
        )
        self.permission = permission


# Validation Errors
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"
    http_status = 400


class WorkflowValidationError(ValidationError):
    """Workflow definition validation failed"""
    error_code = "WORKFLOW_VALIDATION_ERROR"


class InvalidActionError(ValidationError):
    """Unknown control action requested"""
    error_code = "INVALID_ACTION"


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"
    http_status = 404


class WorkflowNotFoundError(NotFoundError):
    """Workflow definition not found"""
    error_code = "WORKFLOW_NOT_FOUND"


class RunNotFoundError(NotFoundError):
    """Workflow instance not found"""
    error_code = "RUN_NOT_FOUND"


class StepNotFoundError(NotFoundError):
    """Step not found in definition"""
    error_code = "STEP_NOT_FOUND"


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict (e.g., concurrent modification)"""
    error_code = "CONFLICT"
    http_status = 409


class ConcurrencyError(ConflictError):
    """Optimistic concurrency conflict"""
    error_code = "CONCURRENCY_CONFLICT"


class AlreadyExistsError(ConflictError):
    """Resource already exists (unique constraint)"""
    error_code = "ALREADY_EXISTS"


class IdempotencyConflictError(ConflictError):
    """Idempotency key reused with a different request body"""
    error_code = "IDEMPOTENCY_KEY_REUSED"


class IdempotencyInProgressError(ConflictError):
    """Another request holding the same idempotency key has not finished"""
    error_code = "IDEMPOTENCY_IN_PROGRESS"


class IdempotentReplayError(DomainError):
    """Replay of a stored failure for an idempotency key"""
    error_code = "IDEMPOTENT_REPLAY"

    def __init__(self, message: str, status_code: int, stored_error: Optional[Dict[str, Any]] = None):
        super().__init__(message, details={"replayed": True})
        self.http_status = status_code
        if stored_error and stored_error.get("code"):
            self.error_code = stored_error["code"]


# Status Errors
class InvalidStatusError(DomainError):
    """Requested transition is illegal from the current status"""
    error_code = "INVALID_STATUS"
    http_status = 400


class AlreadyCancelledError(InvalidStatusError):
    """Run was already cancelled"""
    error_code = "ALREADY_CANCELLED"


# Engine Errors
class EngineError(DomainError):
    """Workflow engine error"""
    error_code = "ENGINE_ERROR"
    http_status = 500


class GuardrailViolationError(EngineError):
    """A step precondition failed"""
    error_code = "GUARDRAIL_VIOLATION"
    http_status = 422


class ActionExecutionError(EngineError):
    """A store adapter call failed mid-step"""
    error_code = "ACTION_EXECUTION_ERROR"


class StepTimeoutError(EngineError):
    """A suspended step exceeded its timeout"""
    error_code = "STEP_TIMEOUT"
    http_status = 408


class CancellationFailedError(EngineError):
    """Underlying cancel primitive reported failure"""
    error_code = "CANCELLATION_FAILED"


# External Service Errors
class ExternalServiceError(DomainError):
    """External service failure"""
    error_code = "EXTERNAL_SERVICE_ERROR"
    http_status = 502


class StoreError(ExternalServiceError):
    """Persistent store adapter failure"""
    error_code = "STORE_ERROR"

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
        """Convert error to a response dict"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Authorization Errors
class AuthorizationError(DomainError):
    """Actor lacks permission for action"""
    error_code = "AUTHORIZATION_ERROR"
    http_status = 403


class PermissionDeniedError(AuthorizationError):
    """Actor does not hold the permissions a transition requires"""
    error_code = "WORKFLOW_PERMISSION_DENIED"

    @property
    def required_permissions(self):
        return self.details.get("required_permissions", [])

    @property
    def missing_permissions(self):
        return self.details.get("missing_permissions", [])


# Validation Errors
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"
    http_status = 400


class WorkflowValidationError(ValidationError):
    """Workflow definition validation failed"""
    error_code = "WORKFLOW_VALIDATION_ERROR"

    @property
    def issues(self):
        return self.details.get("issues", [])


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"
    http_status = 404


class WorkflowNotFoundError(NotFoundError):
    """Workflow not found"""
    error_code = "WORKFLOW_NOT_FOUND"


class StageNotFoundError(NotFoundError):
    """Workflow stage not found"""
    error_code = "STAGE_NOT_FOUND"


class TransitionNotFoundError(NotFoundError):
    """Stage transition not found"""
    error_code = "TRANSITION_NOT_FOUND"


class NoActiveWorkflowError(NotFoundError):
    """No active workflow for an application type"""
    error_code = "NO_ACTIVE_WORKFLOW"


class ApplicationNotFoundError(NotFoundError):
    """Application unknown to the application collaborator"""
    error_code = "APPLICATION_NOT_FOUND"


class ApplicationNotInitializedError(NotFoundError):
    """Application has no status history yet"""
    error_code = "APPLICATION_NOT_INITIALIZED"


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict (e.g., concurrent modification)"""
    error_code = "CONFLICT"
    http_status = 409


class WorkflowVersionConflictError(ConflictError):
    """Workflow changed since the caller read it"""
    error_code = "WORKFLOW_VERSION_CONFLICT"


class ActiveWorkflowModificationError(ConflictError):
    """Structural change attempted on an active workflow"""
    error_code = "ACTIVE_WORKFLOW_MODIFICATION"


class WorkflowInUseError(ConflictError):
    """Workflow or stage is referenced by application history"""
    error_code = "WORKFLOW_IN_USE"


class ApplicationAlreadyInitializedError(ConflictError):
    """Application already has a status history"""
    error_code = "APPLICATION_ALREADY_INITIALIZED"


class InvalidTransitionError(ConflictError):
    """Transition does not start at the application's current stage"""
    error_code = "INVALID_TRANSITION"


class ConcurrencyError(InvalidTransitionError):
    """Another execution changed the application's stage first"""
    error_code = "CONCURRENCY_CONFLICT"


class TransitionLockTimeoutError(ConcurrencyError):
    """Timed out waiting for the application's transition lock"""
    error_code = "TRANSITION_LOCK_TIMEOUT"


# Requirement Errors
class StageRequirementsNotMetError(DomainError):
    """Transition conditions are not satisfied by the application's facts"""
    error_code = "STAGE_REQUIREMENTS_NOT_MET"
    http_status = 422

    @property
    def missing_requirements(self):
        return self.details.get("missing_requirements", [])


# Engine Errors
class EngineError(DomainError):
    """Workflow engine error"""
    error_code = "ENGINE_ERROR"
    http_status = 500


class TransitionCommitError(EngineError):
    """Status entry could not be persisted"""
    error_code = "TRANSITION_COMMIT_FAILED"

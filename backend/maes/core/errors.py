"""
Error taxonomy shared by the job store, dispatcher, vault and lifecycle manager.

Every error carries a human-readable message plus a details dict that the API
layer returns verbatim, so callers can self-correct (e.g. which jobs block a purge).
"""
from typing import Any, Optional


class OrchestrationError(Exception):
    """Base error for the orchestration core"""

    status_code = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(OrchestrationError):
    """Bad input; the caller can fix the request"""

    status_code = 400


class NotFoundError(OrchestrationError):
    """Organization, job or record does not exist in the caller's scope"""

    status_code = 404


class ConflictError(OrchestrationError):
    """Current state disallows the requested operation"""

    status_code = 409


class PermissionDeniedError(OrchestrationError):
    """Protected organization or insufficient role"""

    status_code = 403


class ExecutorUnavailableError(OrchestrationError):
    """External executor or cooperating service timed out or is unreachable"""

    status_code = 503


class InvalidTransitionError(OrchestrationError):
    """Job state machine edge violation (programming error, not caller input)"""

    status_code = 500

"""Exception hierarchy for the workflow engine."""

from typing import Any, Dict, List, Optional


class WorkflowEngineError(Exception):
    """Base class for all engine errors."""


class WorkflowValidationError(WorkflowEngineError, ValueError):
    """Malformed workflow, node or action settings. Rejected at creation time."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []


class NotFoundError(WorkflowEngineError):
    """Workflow or node referenced by a job no longer exists."""


class DeliveryError(WorkflowEngineError):
    """Transient failure delivering a webhook or email. Retried."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RetriesExhaustedError(WorkflowEngineError):
    """All attempts failed. The job is routed to the dead letter queue."""

    def __init__(self, last_error: str, attempts: int, result: Optional[Dict[str, Any]] = None):
        super().__init__(last_error)
        self.last_error = last_error
        self.attempts = attempts
        self.result = result or {}


class CustomCodeError(WorkflowEngineError):
    """Invalid or failing custom code operation. Reported as a failed result."""

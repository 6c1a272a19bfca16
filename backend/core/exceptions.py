"""Custom exceptions for the approval workflow engine."""

from typing import Optional


class WorkflowEngineError(Exception):
    """Base exception for the workflow engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code the API layer should map this to
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(WorkflowEngineError):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class ValidationError(WorkflowEngineError):
    """Validation error exception."""

    def __init__(self, message: str = "Validation failed"):
        """Initialize ValidationError with 422 status code."""
        super().__init__(message, 422)


class ConflictError(WorkflowEngineError):
    """Resource conflict exception."""

    def __init__(self, message: str = "Resource conflict"):
        """Initialize ConflictError with 409 status code."""
        super().__init__(message, 409)


# ─── Definition errors ─────────────────────────────────────────

class DefinitionNotFound(NotFoundError):
    """No workflow definition matches the request."""

    def __init__(self, message: str = "Workflow definition not found"):
        super().__init__(message)


class DefinitionValidationError(ValidationError):
    """Publish rejected because the definition is structurally invalid."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("Workflow definition is invalid: " + "; ".join(self.problems))


class DefinitionImmutable(ConflictError):
    """Attempt to edit a definition that is no longer a draft."""

    def __init__(self, workflow_id: str, status: str):
        self.workflow_id = workflow_id
        self.status = status
        super().__init__(
            f"Workflow {workflow_id} is {status}; create a new version to change it"
        )


class DefinitionNotActive(ConflictError):
    """Execution requested against a version that is not active."""

    def __init__(self, workflow_id: str, status: str):
        self.workflow_id = workflow_id
        self.status = status
        super().__init__(f"Workflow {workflow_id} is {status}, not active")


# ─── Execution / task errors ───────────────────────────────────

class ExecutionNotFound(NotFoundError):
    """Workflow execution does not exist."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Workflow execution {execution_id} not found")


class InvalidExecutionState(ConflictError):
    """Operation not permitted in the execution's current status."""

    def __init__(self, execution_id: str, status: str, operation: str):
        self.execution_id = execution_id
        self.status = status
        super().__init__(f"Cannot {operation} execution {execution_id} in status {status}")


class TaskNotFound(NotFoundError):
    """Task does not exist."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class InvalidTaskState(ConflictError):
    """Task cannot be mutated: it is closed or its execution is terminal."""

    def __init__(self, task_id: str, reason: str, status: Optional[str] = None):
        self.task_id = task_id
        self.reason = reason
        self.status = status
        super().__init__(f"Task {task_id} cannot be completed: {reason}")

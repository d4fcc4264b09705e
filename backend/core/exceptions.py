"""Custom exceptions for the CRM automation engine."""


class AutomationError(Exception):
    """Base exception for the automation engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(AutomationError):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class UnauthorizedError(AutomationError):
    """Unauthorized access exception."""

    def __init__(self, message: str = "Unauthorized"):
        """Initialize UnauthorizedError with 401 status code."""
        super().__init__(message, 401)


class ForbiddenError(AutomationError):
    """Forbidden access exception."""

    def __init__(self, message: str = "Forbidden"):
        """Initialize ForbiddenError with 403 status code."""
        super().__init__(message, 403)


class ValidationError(AutomationError):
    """Validation error exception.

    ``errors`` carries structured detail (for example graph validation
    errors) that is returned to API clients alongside the message.
    """

    def __init__(self, message: str = "Validation failed", errors: list | None = None):
        """Initialize ValidationError with 422 status code."""
        super().__init__(message, 422)
        self.errors = errors or []


class ConflictError(AutomationError):
    """Resource conflict exception."""

    def __init__(self, message: str = "Resource conflict"):
        """Initialize ConflictError with 409 status code."""
        super().__init__(message, 409)


# ─── Engine errors ──────────────────────────────────────────────────────────


class GraphParseError(AutomationError):
    """Raised when graph JSON cannot be turned into a workflow graph."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("; ".join(problems) or "Invalid graph", 422)


class ConditionEvaluationError(AutomationError):
    """Raised when a condition cannot be evaluated against a subject.

    Evaluation errors fail the run and are never retried.
    """

    def __init__(self, message: str):
        super().__init__(message, 422)


class CollaboratorError(AutomationError):
    """Error returned by an external collaborator service.

    Args:
        message: Human readable error
        retryable: Whether the call may succeed if attempted again
        status_code: Upstream HTTP status, when there was one
    """

    def __init__(self, message: str, retryable: bool = False, status_code: int = 502):
        super().__init__(message, status_code)
        self.retryable = retryable

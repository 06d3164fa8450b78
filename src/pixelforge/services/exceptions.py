"""Service error hierarchy for the generation pipeline.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (authentication, validation)

Domain errors raised by the dispatcher and step handlers live here as well so
the API layer can map them to HTTP responses in one place.
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (503)
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    - Configuration errors
    """

    pass


# AI backend errors
class AIBackendError(ServiceError):
    """Base exception for AI backend errors."""

    pass


class AITimeoutError(TransientError):
    """AI call did not finish within its time budget."""

    pass


class ContentPolicyError(PermanentError):
    """Model refused the input (safety / content policy)."""

    pass


# Storage errors
class StorageError(ServiceError):
    """Base exception for object storage errors."""

    pass


class StorageNetworkError(TransientError):
    """Network timeout or storage unavailable."""

    pass


class StorageAuthError(PermanentError):
    """Authentication failure (401, 403)."""

    pass


class StorageNotFoundError(PermanentError):
    """Object does not exist (404)."""

    pass


# Worker launch errors
class WorkerLaunchTimeout(TransientError):
    """Launch request was not acknowledged in time.

    Not a failure: the worker may have started and will write its own result.
    """

    pass


class WorkerLaunchRejected(PermanentError):
    """Worker service refused the launch (unknown worker, bad credentials, 4xx/5xx)."""

    pass


# Pipeline errors
class PermanentStepError(PermanentError):
    """Step failure that must fail the task immediately, without retries.

    current_state names the state the task is in when the step already moved
    it (hand-off before launch); None means the state the step ran in.
    """

    def __init__(self, message: str, current_state=None):
        super().__init__(message)
        self.current_state = current_state


# Dispatcher errors
class TaskValidationError(ServiceError):
    """Request rejected before anything was written."""

    pass


class InsufficientCreditsError(ServiceError):
    """User balance does not cover the task cost."""

    def __init__(self, required: int, available: int):
        super().__init__(f"Insufficient credits: required {required}, available {available}")
        self.required = required
        self.available = available


class TooManyActiveTasksError(ServiceError):
    """User already has the maximum number of non-terminal tasks."""

    def __init__(self, limit: int):
        super().__init__(f"Too many active tasks: at most {limit} may run at once")
        self.limit = limit


class TaskNotFoundError(ServiceError):
    """Task (or work) does not exist or belongs to another user."""

    pass

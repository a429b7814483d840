"""Error taxonomy for job processing.

Handlers raise these; the worker classifies them into a ``fail()`` call.
Only ``FatalError`` during startup is allowed to reach the process.
"""

from typing import Optional


class JobError(Exception):
    """Base exception for job processing errors."""

    code = "job_error"
    retryable = True


class ValidationError(JobError):
    """Payload failed shape checks. Never retried."""

    code = "validation_error"
    retryable = False


class DependencyError(JobError):
    """A collaborator call failed. Retried per the queue's backoff policy."""

    code = "dependency_error"

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class CircuitOpenError(DependencyError):
    """The breaker guarding a dependency is open; the call was not attempted."""

    code = "circuit_open"

    def __init__(self, breaker: str, retry_after: Optional[float] = None):
        super().__init__(f"Circuit breaker '{breaker}' is open", retry_after=retry_after)
        self.breaker = breaker


class JobTimeoutError(JobError):
    """The job, or a protected call, exceeded its time budget."""

    code = "timeout"


class StallError(JobError):
    """A claimed job's worker stopped renewing its lock."""

    code = "stalled"


class FatalError(JobError):
    """Unrecoverable infrastructure failure, e.g. store unreachable at startup."""

    code = "fatal"
    retryable = False


class JobNotFoundError(JobError):
    code = "not_found"

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidJobStateError(JobError):
    code = "invalid_state"

    def __init__(self, job_id: str, current_state: str, operation: str):
        super().__init__(f"Cannot {operation} job {job_id} in state {current_state}")
        self.job_id = job_id
        self.current_state = current_state


class LockLostError(JobError):
    """A worker tried to ack a job it no longer owns."""

    code = "lock_lost"


def classify_error(exc: BaseException) -> tuple[bool, str, Optional[float]]:
    """
    Map an exception raised by a handler to a failure outcome.

    Returns:
        Tuple of (retryable, error_code, retry_after)
    """
    if isinstance(exc, JobError):
        return exc.retryable, exc.code, getattr(exc, "retry_after", None)
    # Anything unexpected is treated as a dependency failure.
    return True, DependencyError.code, None

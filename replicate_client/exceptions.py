from typing import Any, Optional


class ReplicateClientError(Exception):
    """Base exception for all errors raised by the client."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class APIError(ReplicateClientError):
    """Raised when the API responds with a non-2xx status code."""

    def __init__(self, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"API error {status_code}: {detail}", {"status": status_code})


class ValueDecodeError(ReplicateClientError, ValueError):
    """Raised when a JSON node matches none of the known value shapes."""


class RetryBudgetExhausted(ReplicateClientError, TimeoutError):
    """Raised when polling runs out of time or attempts before the job terminates."""

    def __init__(self, job_id: str, attempts: int):
        self.job_id = job_id
        self.attempts = attempts
        super().__init__(
            f"Job {job_id} did not finish after {attempts} attempts",
            {"job_id": job_id, "attempts": attempts},
        )


class JobFailed(ReplicateClientError):
    """Raised by `Client.run` when the job finishes with status `failed`."""

    def __init__(self, job: Any):
        self.job = job
        detail = job.error.detail if job.error is not None else "Prediction failed"
        super().__init__(detail, {"job_id": job.id})


class StopPolling(Exception):
    """
    Raise from a progress callback to stop waiting early.

    The wait returns the last record seen before the callback was invoked
    instead of raising.
    """

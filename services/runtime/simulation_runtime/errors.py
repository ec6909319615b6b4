from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ValidationOutcome


class SimulationRuntimeError(Exception):
    """Base class for every error raised by the runtime."""


class ParameterValidationError(SimulationRuntimeError):
    """Submitted parameters violate a hard rule; nothing was sent to the service."""

    def __init__(self, outcome: ValidationOutcome):
        self.outcome = outcome
        super().__init__("invalid parameters: " + "; ".join(outcome.errors))


class JobClientError(SimulationRuntimeError):
    """The job service rejected a request or answered with something unusable."""

    def __init__(self, status_code: int, message: str, raw_body: str | None = None):
        self.status_code = status_code
        self.message = message
        self.raw_body = raw_body
        super().__init__(f"[{status_code}] {message}")


class TransportError(JobClientError):
    """Network failure, timeout or 5xx. Transient; callers may retry."""


class AuthError(JobClientError):
    """Credentials were rejected (401). Never retried; the caller must re-authenticate."""


class JobFailure(SimulationRuntimeError):
    def __init__(self, job_id: str, error_message: str):
        self.job_id = job_id
        self.error_message = error_message
        super().__init__(f"simulation {job_id} failed: {error_message}")


class InvalidTransitionError(SimulationRuntimeError):
    pass


class ModelLoadError(SimulationRuntimeError):
    pass

"""
kubetrace error types.

Validation errors are raised before any remote call. Remote errors keep the
original ApiException as their cause so callers can inspect the HTTP status.
"""

from typing import List, Optional, Tuple


class TraceError(Exception):
    """Base class for all kubetrace errors."""


class ProgramValidationError(TraceError, ValueError):
    """The tracing program is missing or empty."""


class TargetResolutionError(TraceError, ValueError):
    """The target node cannot be turned into a hostname."""


class TraceJobCreateError(TraceError):
    """
    Creating one of the two remote objects failed.

    stage is "config" when the ConfigMap could not be created (nothing exists
    remotely) and "job" when the Job failed after its ConfigMap was created
    (partial: the ConfigMap is left for an explicit delete).
    """

    def __init__(self, name: str, stage: str, cause: Exception):
        self.name = name
        self.stage = stage
        self.cause = cause
        super().__init__(f"error creating {self._kind} {name}: {_reason(cause)}")

    @property
    def _kind(self) -> str:
        return "configmap" if self.stage == "config" else "job"

    @property
    def partial(self) -> bool:
        return self.stage == "job"

    @property
    def already_exists(self) -> bool:
        return getattr(self.cause, "status", None) == 409


class TraceJobDeleteError(TraceError):
    """One or more deletions failed. Every failure is reported."""

    def __init__(self, failures: List[Tuple[str, str, Exception]]):
        self.failures = failures
        details = "; ".join(f"{kind} {name}: {_reason(err)}" for kind, name, err in failures)
        super().__init__(f"error deleting trace objects: {details}")


class OperationCancelled(TraceError):
    """
    A blocking operation was interrupted by the cancellation token.

    Control flow only, never shown to the user as a failure.
    """


def _reason(err: Exception) -> str:
    reason: Optional[str] = getattr(err, "reason", None)
    status = getattr(err, "status", None)
    if reason and status:
        return f"({status}) {reason}"
    return str(err)

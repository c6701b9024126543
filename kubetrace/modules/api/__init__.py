"""
API Module - Black Box Interface

Purpose: Shared data models and error types
Interface: TraceJob, TraceJobFilter, ExecutionStatus, StatusSnapshot, errors
Hidden: Naming scheme and label layout

Every other module speaks in these types.
"""

from .errors import (
    OperationCancelled,
    ProgramValidationError,
    TargetResolutionError,
    TraceError,
    TraceJobCreateError,
    TraceJobDeleteError,
)
from .models import (
    HOSTNAME_LABEL_KEY,
    OBJECT_NAME_PREFIX,
    PROGRAM_KEY,
    TRACE_ID_LABEL_KEY,
    TRACE_LABEL_KEY,
    TRACE_LABEL_VALUE,
    AttachOutcome,
    ExecutionStatus,
    StatusSnapshot,
    TraceJob,
    TraceJobFilter,
    TraceJSONEncoder,
    job_name,
)

__all__ = [
    "HOSTNAME_LABEL_KEY",
    "OBJECT_NAME_PREFIX",
    "PROGRAM_KEY",
    "TRACE_ID_LABEL_KEY",
    "TRACE_LABEL_KEY",
    "TRACE_LABEL_VALUE",
    "AttachOutcome",
    "ExecutionStatus",
    "StatusSnapshot",
    "TraceJob",
    "TraceJobFilter",
    "TraceJSONEncoder",
    "job_name",
    "OperationCancelled",
    "ProgramValidationError",
    "TargetResolutionError",
    "TraceError",
    "TraceJobCreateError",
    "TraceJobDeleteError",
]

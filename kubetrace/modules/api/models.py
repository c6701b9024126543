"""
kubetrace shared data models.

These models define the structure of all data passed between
components in the kubetrace system.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, Field, model_validator

# Naming and labelling

OBJECT_NAME_PREFIX = "kubetrace-"
TRACE_LABEL_KEY = "kubetrace.io/trace"
TRACE_LABEL_VALUE = "kubetrace"
TRACE_ID_LABEL_KEY = "kubetrace.io/trace-id"
HOSTNAME_LABEL_KEY = "kubernetes.io/hostname"
PROGRAM_KEY = "program.bt"


# Enums


class ExecutionStatus(str, Enum):
    """Lifecycle state of a trace job, derived from a single observation."""

    UNKNOWN = "Unknown"
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    STOPPED = "Stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.SUCCEEDED, ExecutionStatus.FAILED, ExecutionStatus.STOPPED)


class AttachOutcome(str, Enum):
    """How an attach session ended."""

    COMPLETED = "completed"  # remote stream closed, process exited
    CANCELLED = "cancelled"  # caller interrupted
    DETACHED = "detached"  # attach failed after the job was running
    FINISHED = "finished"  # job was already terminal, nothing to attach to


# Core Models


def job_name(trace_id: str) -> str:
    """Derive the remote object name shared by the Job and its ConfigMap."""
    return f"{OBJECT_NAME_PREFIX}{trace_id}"


class TraceJob(BaseModel):
    """A request to run one tracing program on one node."""

    id: str = Field(..., description="Client-generated unique trace ID")
    name: str = Field(..., description="Remote object name of the Job and ConfigMap")
    namespace: str = Field(default="default", min_length=1)
    hostname: str = Field(default="", description="Target node kubernetes.io/hostname label")
    program: str = Field(default="", description="bpftrace program source")

    # Only populated on jobs read back from the cluster
    status: ExecutionStatus = ExecutionStatus.UNKNOWN
    start_time: Optional[datetime] = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def check_name(self):
        """Name must stay derivable from the ID."""
        if self.name != job_name(self.id):
            raise ValueError(f"name {self.name!r} does not match trace id {self.id!r}")
        return self

    @classmethod
    def new(cls, namespace: str, hostname: str, program: str) -> "TraceJob":
        """Create a trace job with a freshly generated ID."""
        trace_id = str(uuid.uuid4())
        return cls(
            id=trace_id,
            name=job_name(trace_id),
            namespace=namespace,
            hostname=hostname,
            program=program,
        )

    @property
    def labels(self) -> Dict[str, str]:
        return {TRACE_LABEL_KEY: TRACE_LABEL_VALUE, TRACE_ID_LABEL_KEY: self.id}


class TraceJobFilter(BaseModel):
    """Selects trace jobs by name, by ID, or all of them."""

    name: Optional[str] = None
    id: Optional[str] = None

    @property
    def label_selector(self) -> str:
        selector = f"{TRACE_LABEL_KEY}={TRACE_LABEL_VALUE}"
        if self.id:
            selector += f",{TRACE_ID_LABEL_KEY}={self.id}"
        return selector

    def matches(self, name: str) -> bool:
        return self.name is None or self.name == name


@dataclass(frozen=True)
class StatusSnapshot:
    """
    One observation of a Job and its backing pod.

    Only the fields the status derivation needs; everything else in the
    remote objects is ignored.
    """

    found: bool
    conditions: FrozenSet[str] = field(default_factory=frozenset)
    pod_phase: Optional[str] = None
    container_running: bool = False
    deleting: bool = False


# Serialization Helpers


class TraceJSONEncoder(json.JSONEncoder):
    """JSON encoder for kubetrace models."""

    def default(self, obj):
        if isinstance(obj, datetime):
            return obj.isoformat()
        elif isinstance(obj, Enum):
            return obj.value
        elif hasattr(obj, "model_dump"):
            return obj.model_dump()
        return super().default(obj)


__all__ = [
    # Constants
    "OBJECT_NAME_PREFIX",
    "TRACE_LABEL_KEY",
    "TRACE_LABEL_VALUE",
    "TRACE_ID_LABEL_KEY",
    "HOSTNAME_LABEL_KEY",
    "PROGRAM_KEY",
    # Enums
    "ExecutionStatus",
    "AttachOutcome",
    # Models
    "TraceJob",
    "TraceJobFilter",
    "StatusSnapshot",
    # Helpers
    "job_name",
    "TraceJSONEncoder",
]

"""
Status derivation for trace jobs.

The API server reports a Job's progress across Job conditions and the phase
of whatever pod the Job controller created. derive_status() folds one such
observation into a single ExecutionStatus. It is total and pure: every
snapshot maps to exactly one status and the same snapshot always maps to
the same status.
"""

import logging
from typing import List, Optional, Protocol

from kubernetes import client as k8s_client

from kubetrace.modules.api import ExecutionStatus, StatusSnapshot
from kubetrace.modules.bundle import TRACE_CONTAINER_NAME

logger = logging.getLogger("kubetrace.status")

FAILURE_CONDITIONS = frozenset({"Failed", "FailureTarget"})
SUCCESS_CONDITIONS = frozenset({"Complete", "SuccessCriteriaMet"})
STOP_CONDITIONS = frozenset({"Suspended"})


def derive_status(snapshot: StatusSnapshot) -> ExecutionStatus:
    """
    Map one observation to a lifecycle status.

    Order matters: terminal conditions win over everything the pod says,
    and a Job that is being deleted is Stopped even if its pod still runs.
    """
    if not snapshot.found:
        return ExecutionStatus.UNKNOWN
    if snapshot.conditions & FAILURE_CONDITIONS:
        return ExecutionStatus.FAILED
    if snapshot.conditions & SUCCESS_CONDITIONS:
        return ExecutionStatus.SUCCEEDED
    if snapshot.deleting or snapshot.conditions & STOP_CONDITIONS:
        return ExecutionStatus.STOPPED
    if snapshot.pod_phase == "Running" and snapshot.container_running:
        return ExecutionStatus.RUNNING
    return ExecutionStatus.PENDING


def snapshot_from(
    job: Optional[k8s_client.V1Job],
    pods: List[k8s_client.V1Pod],
    container: str = TRACE_CONTAINER_NAME,
) -> StatusSnapshot:
    """
    Extract a StatusSnapshot from raw API objects.

    Args:
        job: The Job, or None if it was not found
        pods: The Job's pods, newest first; only the first one is looked at
        container: Name of the main container inside the pod
    """
    if job is None:
        return StatusSnapshot(found=False)

    conditions = frozenset(
        c.type for c in ((job.status.conditions if job.status else None) or []) if c.status == "True"
    )
    deleting = job.metadata.deletion_timestamp is not None

    pod_phase = None
    container_running = False
    if pods:
        pod = pods[0]
        pod_phase = pod.status.phase if pod.status else None
        statuses = [
            cs for cs in ((pod.status.container_statuses if pod.status else None) or [])
            if cs.name == container
        ]
        if statuses:
            state = statuses[0].state
            container_running = state is not None and state.running is not None
        else:
            # Single-container pod: Running phase means the container is up.
            container_running = pod_phase == "Running"

    return StatusSnapshot(
        found=True,
        conditions=conditions,
        pod_phase=pod_phase,
        container_running=container_running,
        deleting=deleting,
    )


class JobReader(Protocol):
    """Read path of the trace job client."""

    async def read_job(self, name: str) -> Optional[k8s_client.V1Job]:
        ...

    async def list_pods(self, name: str) -> List[k8s_client.V1Pod]:
        ...


class StatusTracker:
    """Observes trace jobs. Nothing is cached between calls."""

    def __init__(self, reader: JobReader):
        self.reader = reader

    async def snapshot(self, name: str) -> StatusSnapshot:
        job = await self.reader.read_job(name)
        if job is None:
            return StatusSnapshot(found=False)
        pods = await self.reader.list_pods(name)
        return snapshot_from(job, pods)

    async def observe(self, name: str) -> ExecutionStatus:
        """
        Current status of a trace job.

        Args:
            name: Trace job name

        Returns:
            ExecutionStatus; UNKNOWN if the Job is not visible (yet)

        API errors other than not-found propagate.
        """
        status = derive_status(await self.snapshot(name))
        logger.debug(f"Trace job {name} is {status.value}")
        return status

    async def find_pod(self, name: str) -> Optional[k8s_client.V1Pod]:
        """The newest pod backing a trace job, if any."""
        pods = await self.reader.list_pods(name)
        return pods[0] if pods else None

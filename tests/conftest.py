"""
Shared pytest fixtures for kubetrace tests.

This module provides common fixtures including:
- Kubernetes object builders (Jobs, Pods) made from real client models
- Mocked BatchV1Api / CoreV1Api clients
- FakeAttachStream: a scripted stand-in for the attach websocket
"""

import io
import os
import sys
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence, Tuple
from unittest.mock import MagicMock

import pytest
from kubernetes import client as k8s_client

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kubetrace.modules.api import TRACE_ID_LABEL_KEY, TRACE_LABEL_KEY, TRACE_LABEL_VALUE, job_name


# =============================================================================
# Kubernetes object builders
# =============================================================================

def make_job(
    trace_id: str = "1234",
    conditions: Sequence[str] = (),
    deleting: bool = False,
    namespace: str = "default",
    hostname: Optional[str] = "nodeA",
    start_time: Optional[datetime] = None,
) -> k8s_client.V1Job:
    """Build a V1Job as the API server would return it for a trace job."""
    affinity = None
    if hostname:
        affinity = k8s_client.V1Affinity(
            node_affinity=k8s_client.V1NodeAffinity(
                required_during_scheduling_ignored_during_execution=k8s_client.V1NodeSelector(
                    node_selector_terms=[
                        k8s_client.V1NodeSelectorTerm(
                            match_expressions=[
                                k8s_client.V1NodeSelectorRequirement(
                                    key="kubernetes.io/hostname", operator="In", values=[hostname]
                                )
                            ]
                        )
                    ]
                )
            )
        )

    return k8s_client.V1Job(
        metadata=k8s_client.V1ObjectMeta(
            name=job_name(trace_id),
            namespace=namespace,
            labels={TRACE_LABEL_KEY: TRACE_LABEL_VALUE, TRACE_ID_LABEL_KEY: trace_id},
            deletion_timestamp=datetime.now(timezone.utc) if deleting else None,
        ),
        spec=k8s_client.V1JobSpec(
            template=k8s_client.V1PodTemplateSpec(
                spec=k8s_client.V1PodSpec(
                    containers=[k8s_client.V1Container(name="kubetrace")],
                    affinity=affinity,
                )
            )
        ),
        status=k8s_client.V1JobStatus(
            conditions=[k8s_client.V1JobCondition(type=c, status="True") for c in conditions] or None,
            start_time=start_time,
        ),
    )


def make_pod(
    trace_id: str = "1234",
    phase: str = "Pending",
    running: Optional[bool] = None,
    name: Optional[str] = None,
    age_seconds: int = 0,
) -> k8s_client.V1Pod:
    """
    Build a V1Pod backing a trace job.

    running=None leaves container_statuses empty; True/False adds a status
    for the trace container in running or waiting state.
    """
    statuses = None
    if running is not None:
        state = (
            k8s_client.V1ContainerState(running=k8s_client.V1ContainerStateRunning())
            if running
            else k8s_client.V1ContainerState(
                waiting=k8s_client.V1ContainerStateWaiting(reason="ContainerCreating")
            )
        )
        statuses = [
            k8s_client.V1ContainerStatus(
                name="kubetrace", image="bpftrace", image_id="", ready=running,
                restart_count=0, state=state,
            )
        ]

    return k8s_client.V1Pod(
        metadata=k8s_client.V1ObjectMeta(
            name=name or f"{job_name(trace_id)}-abcde",
            labels={
                TRACE_LABEL_KEY: TRACE_LABEL_VALUE,
                TRACE_ID_LABEL_KEY: trace_id,
                "job-name": job_name(trace_id),
            },
            creation_timestamp=datetime.now(timezone.utc) - timedelta(seconds=age_seconds),
        ),
        status=k8s_client.V1PodStatus(phase=phase, container_statuses=statuses),
    )


def object_list(items: List) -> MagicMock:
    """What list_namespaced_* returns: something with .items."""
    result = MagicMock()
    result.items = items
    return result


# =============================================================================
# Attach stream stand-in
# =============================================================================

class FakeAttachStream:
    """
    Scripted replacement for kubernetes.stream.ws_client.WSClient.

    Each update() consumes one (stdout, stderr) chunk. When the chunks run
    out the stream closes, unless stay_open is set, in which case it idles
    like a tracer waiting for events.
    """

    def __init__(self, chunks: Sequence[Tuple[str, str]] = (), stay_open: bool = False,
                 fail_on_update: Optional[Exception] = None):
        self.chunks = list(chunks)
        self.stay_open = stay_open
        self.fail_on_update = fail_on_update
        self.closed = False
        self.updates = 0
        self._stdout = ""
        self._stderr = ""
        self._lock = threading.Lock()

    def is_open(self) -> bool:
        with self._lock:
            return not self.closed and (bool(self.chunks) or self.stay_open)

    def update(self, timeout=0):
        self.updates += 1
        if self.fail_on_update is not None:
            raise self.fail_on_update
        with self._lock:
            if self.chunks:
                self._stdout, self._stderr = self.chunks.pop(0)
                return
        time.sleep(min(timeout, 0.01))

    def peek_stdout(self) -> bool:
        return bool(self._stdout)

    def read_stdout(self) -> str:
        out, self._stdout = self._stdout, ""
        return out

    def peek_stderr(self) -> bool:
        return bool(self._stderr)

    def read_stderr(self) -> str:
        err, self._stderr = self._stderr, ""
        return err

    def close(self):
        with self._lock:
            self.closed = True


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def api():
    """
    Parent mock holding batch and core API mocks.

    api.mock_calls records calls on both in order, which is how creation
    ordering is asserted.
    """
    parent = MagicMock()
    parent.batch.list_namespaced_job.return_value = object_list([])
    parent.core.list_namespaced_pod.return_value = object_list([])
    parent.core.list_namespaced_config_map.return_value = object_list([])
    return parent


@pytest.fixture
def out():
    return io.StringIO()


@pytest.fixture
def err():
    return io.StringIO()


# =============================================================================
# Test Markers Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "scenario: End-to-end lifecycle scenarios against mocked APIs"
    )

"""
Tests for status derivation and the status tracker.
"""

from unittest.mock import AsyncMock

import pytest

from conftest import make_job, make_pod
from kubetrace.modules.api import ExecutionStatus, StatusSnapshot
from kubetrace.modules.status import StatusTracker, derive_status, snapshot_from


class TestDeriveStatus:
    """Test the snapshot -> status mapping."""

    @pytest.mark.parametrize(
        "snapshot, expected",
        [
            (StatusSnapshot(found=False), ExecutionStatus.UNKNOWN),
            (StatusSnapshot(found=True), ExecutionStatus.PENDING),
            (StatusSnapshot(found=True, pod_phase="Pending"), ExecutionStatus.PENDING),
            (StatusSnapshot(found=True, pod_phase="Running", container_running=False), ExecutionStatus.PENDING),
            (StatusSnapshot(found=True, pod_phase="Running", container_running=True), ExecutionStatus.RUNNING),
            (StatusSnapshot(found=True, conditions=frozenset({"Complete"})), ExecutionStatus.SUCCEEDED),
            (StatusSnapshot(found=True, conditions=frozenset({"SuccessCriteriaMet"})), ExecutionStatus.SUCCEEDED),
            (StatusSnapshot(found=True, conditions=frozenset({"Failed"})), ExecutionStatus.FAILED),
            (StatusSnapshot(found=True, conditions=frozenset({"FailureTarget"})), ExecutionStatus.FAILED),
            (StatusSnapshot(found=True, conditions=frozenset({"Suspended"})), ExecutionStatus.STOPPED),
            (StatusSnapshot(found=True, deleting=True, pod_phase="Running", container_running=True),
             ExecutionStatus.STOPPED),
        ],
    )
    def test_mapping(self, snapshot, expected):
        assert derive_status(snapshot) == expected

    def test_failure_wins_over_success(self):
        snapshot = StatusSnapshot(found=True, conditions=frozenset({"Complete", "Failed"}))
        assert derive_status(snapshot) == ExecutionStatus.FAILED

    def test_terminal_condition_wins_over_running_pod(self):
        snapshot = StatusSnapshot(
            found=True, conditions=frozenset({"Complete"}), pod_phase="Running", container_running=True
        )
        assert derive_status(snapshot) == ExecutionStatus.SUCCEEDED

    def test_same_snapshot_same_status(self):
        snapshot = StatusSnapshot(found=True, pod_phase="Running", container_running=True)
        assert {derive_status(snapshot) for _ in range(10)} == {ExecutionStatus.RUNNING}

    def test_unrecognized_fields_fall_back_to_pending(self):
        snapshot = StatusSnapshot(found=True, conditions=frozenset({"SomethingNew"}), pod_phase="Weird")
        assert derive_status(snapshot) == ExecutionStatus.PENDING


class TestSnapshotFrom:
    """Test extraction from Kubernetes objects."""

    def test_missing_job(self):
        assert snapshot_from(None, []) == StatusSnapshot(found=False)

    def test_job_without_pods(self):
        snapshot = snapshot_from(make_job(), [])
        assert snapshot.found
        assert snapshot.pod_phase is None
        assert not snapshot.container_running

    def test_running_container(self):
        snapshot = snapshot_from(make_job(), [make_pod(phase="Running", running=True)])
        assert snapshot.pod_phase == "Running"
        assert snapshot.container_running

    def test_init_phase_is_not_running(self):
        snapshot = snapshot_from(make_job(), [make_pod(phase="Pending", running=False)])
        assert not snapshot.container_running

    def test_running_phase_without_container_statuses(self):
        snapshot = snapshot_from(make_job(), [make_pod(phase="Running", running=None)])
        assert snapshot.container_running

    def test_only_true_conditions_count(self):
        job = make_job(conditions=["Complete"])
        job.status.conditions[0].status = "False"
        assert snapshot_from(job, []).conditions == frozenset()

    def test_newest_pod_is_used(self):
        pods = [make_pod(phase="Running", running=True), make_pod(phase="Failed", age_seconds=60)]
        assert snapshot_from(make_job(), pods).pod_phase == "Running"

    def test_deletion_timestamp(self):
        assert snapshot_from(make_job(deleting=True), []).deleting


@pytest.fixture
def reader():
    reader = AsyncMock()
    reader.read_job.return_value = None
    reader.list_pods.return_value = []
    return reader


@pytest.mark.asyncio
async def test_observe_unknown_when_job_not_visible(reader):
    tracker = StatusTracker(reader)

    assert await tracker.observe("kubetrace-1234") == ExecutionStatus.UNKNOWN
    reader.list_pods.assert_not_called()


@pytest.mark.asyncio
async def test_observe_propagates_api_errors(reader):
    reader.read_job.side_effect = RuntimeError("connection refused")
    tracker = StatusTracker(reader)

    with pytest.raises(RuntimeError):
        await tracker.observe("kubetrace-1234")


@pytest.mark.asyncio
async def test_find_pod(reader):
    pod = make_pod()
    reader.list_pods.return_value = [pod]

    assert await StatusTracker(reader).find_pod("kubetrace-1234") is pod


@pytest.mark.asyncio
@pytest.mark.scenario
async def test_status_progression(reader):
    """A trace job observed across its lifetime: Pending -> Running -> Succeeded."""
    tracker = StatusTracker(reader)
    observations = [
        (make_job(), []),
        (make_job(), [make_pod(phase="Pending", running=False)]),
        (make_job(), [make_pod(phase="Running", running=True)]),
        (make_job(conditions=["Complete"]), [make_pod(phase="Succeeded", running=False)]),
    ]

    seen = []
    for job, pods in observations:
        reader.read_job.return_value = job
        reader.list_pods.return_value = pods
        seen.append(await tracker.observe(job.metadata.name))

    assert seen == [
        ExecutionStatus.PENDING,
        ExecutionStatus.PENDING,
        ExecutionStatus.RUNNING,
        ExecutionStatus.SUCCEEDED,
    ]

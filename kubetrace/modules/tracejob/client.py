import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from kubernetes import client as k8s_client
from kubernetes.client.rest import ApiException

from kubetrace.modules.api import (
    HOSTNAME_LABEL_KEY,
    TRACE_ID_LABEL_KEY,
    OperationCancelled,
    TraceJob,
    TraceJobCreateError,
    TraceJobDeleteError,
    TraceJobFilter,
    job_name,
)
from kubetrace.modules.bundle import ProgramBundleBuilder
from kubetrace.modules.signals import CancellationToken, run_blocking
from kubetrace.modules.status import derive_status, snapshot_from

logger = logging.getLogger("kubetrace.tracejob")


class TraceJobClient:
    def __init__(
        self,
        batch_api: k8s_client.BatchV1Api,
        core_api: k8s_client.CoreV1Api,
        namespace: str,
        builder: Optional[ProgramBundleBuilder] = None,
        request_timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ):
        """
        Initialize the trace job client.

        Args:
            batch_api: Kubernetes batch/v1 API (Jobs)
            core_api: Kubernetes core/v1 API (ConfigMaps, Pods)
            namespace: Namespace all lookups and deletions are scoped to
            builder: Bundle builder used by create_job
            request_timeout: Per-request timeout in seconds passed to the API client
            token: Optional cancellation token raced against every remote call
        """
        self.batch_api = batch_api
        self.core_api = core_api
        self.namespace = namespace
        self.builder = builder or ProgramBundleBuilder()
        self.request_timeout = request_timeout
        self.token = token

    async def create_job(self, job: TraceJob) -> k8s_client.V1Job:
        """
        Create the ConfigMap and then the Job for a trace job.

        Args:
            job: Trace job to create

        Returns:
            The Job as accepted by the API server

        Raises:
            ProgramValidationError: Program is empty; nothing was created
            TraceJobCreateError: A remote creation failed. When stage is "job"
                the ConfigMap was already created and is left in place.

        Logic:
        1. Build both descriptors (local validation)
        2. Create ConfigMap - the Job mounts it, so it goes first
        3. Create Job
        No retries: the derived name would collide again.
        """
        bundle = self.builder.build(job)

        try:
            await self._call(self.core_api.create_namespaced_config_map, job.namespace, bundle.config_map)
        except OperationCancelled:
            raise
        except Exception as e:
            raise TraceJobCreateError(job.name, "config", e) from e

        try:
            created = await self._call(self.batch_api.create_namespaced_job, job.namespace, bundle.job)
        except OperationCancelled:
            raise
        except Exception as e:
            logger.warning(f"Job {job.name} was not created, configmap {job.name} left in place")
            raise TraceJobCreateError(job.name, "job", e) from e

        logger.info(f"Created trace job {job.name} in namespace {job.namespace}")
        return created

    # Read path

    async def read_job(self, name: str) -> Optional[k8s_client.V1Job]:
        """Read a Job by name. Returns None if it does not exist."""
        try:
            return await self._call(self.batch_api.read_namespaced_job, name, self.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def list_pods(self, name: str) -> List[k8s_client.V1Pod]:
        """Pods created for a Job, newest first."""
        pods = await self._call(
            self.core_api.list_namespaced_pod, self.namespace, label_selector=f"job-name={name}"
        )
        return _newest_first(pods.items or [])

    async def get_job(self, name: str) -> Optional[TraceJob]:
        """
        Look up one trace job by name.

        Returns:
            TraceJob with its current status, or None if the Job does not exist
        """
        job = await self.read_job(name)
        if job is None:
            return None
        pods = await self.list_pods(name)
        return _to_trace_job(job, pods, self.namespace)

    async def list_jobs(self, filter: Optional[TraceJobFilter] = None) -> List[TraceJob]:
        """
        List trace jobs matching a filter.

        Args:
            filter: Name and/or ID to match; all trace jobs when omitted

        Returns:
            Matching trace jobs with their current status
        """
        filter = filter or TraceJobFilter()
        selector = filter.label_selector

        jobs = await self._call(self.batch_api.list_namespaced_job, self.namespace, label_selector=selector)
        pods = await self._call(self.core_api.list_namespaced_pod, self.namespace, label_selector=selector)

        pods_by_id: Dict[str, List[k8s_client.V1Pod]] = {}
        for pod in pods.items or []:
            trace_id = (pod.metadata.labels or {}).get(TRACE_ID_LABEL_KEY)
            pods_by_id.setdefault(trace_id, []).append(pod)

        result = []
        for job in jobs.items or []:
            if not filter.matches(job.metadata.name):
                continue
            trace_id = (job.metadata.labels or {}).get(TRACE_ID_LABEL_KEY)
            trace_pods = _newest_first(pods_by_id.get(trace_id, []))
            result.append(_to_trace_job(job, trace_pods, self.namespace))
        return result

    # Delete path

    async def delete_jobs(
        self, name: Optional[str] = None, filter: Optional[TraceJobFilter] = None
    ) -> List[str]:
        """
        Delete the Job and ConfigMap of every matching trace job.

        Args:
            name: Delete exactly this trace job
            filter: Delete every trace job matching the filter (ignored when name is set)

        Returns:
            Names of the trace jobs whose objects were deleted or already absent

        Raises:
            TraceJobDeleteError: With every individual failure

        Both deletions are attempted for each name regardless of the other's
        outcome. Objects that no longer exist are skipped silently.
        """
        if name is not None:
            names = [name]
        else:
            names = await self._names_matching(filter or TraceJobFilter())

        failures = []
        for current in names:
            outcomes = await asyncio.gather(
                self._delete("job", current),
                self._delete("configmap", current),
                return_exceptions=True,
            )
            for kind, outcome in zip(("job", "configmap"), outcomes):
                if isinstance(outcome, OperationCancelled):
                    raise outcome
                if isinstance(outcome, Exception):
                    failures.append((kind, current, outcome))

        if failures:
            raise TraceJobDeleteError(failures)
        return names

    async def _delete(self, kind: str, name: str) -> None:
        if kind == "job":
            fn: Callable[..., Any] = self.batch_api.delete_namespaced_job
            kwargs = {"propagation_policy": "Background", "grace_period_seconds": 0}
        else:
            fn = self.core_api.delete_namespaced_config_map
            kwargs = {}

        try:
            await self._call(fn, name, self.namespace, **kwargs)
            logger.info(f"Deleted {kind} {name}")
        except ApiException as e:
            if e.status != 404:
                raise
            logger.debug(f"{kind} {name} already gone")

    async def _names_matching(self, filter: TraceJobFilter) -> List[str]:
        selector = filter.label_selector
        jobs = await self._call(self.batch_api.list_namespaced_job, self.namespace, label_selector=selector)
        config_maps = await self._call(
            self.core_api.list_namespaced_config_map, self.namespace, label_selector=selector
        )
        # Orphaned configmaps from a partial create are included.
        names = {obj.metadata.name for obj in (jobs.items or []) + (config_maps.items or [])}
        return sorted(n for n in names if filter.matches(n))

    async def _call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a blocking API call in a worker thread, racing the cancellation token."""
        if self.request_timeout:
            kwargs.setdefault("_request_timeout", self.request_timeout)
        coro = run_blocking(fn, *args, **kwargs)
        if self.token is None:
            return await coro
        return await self.token.guard(coro)


def _newest_first(pods: List[k8s_client.V1Pod]) -> List[k8s_client.V1Pod]:
    return sorted(
        pods,
        key=lambda p: (p.metadata.creation_timestamp is not None, p.metadata.creation_timestamp or 0),
        reverse=True,
    )


def _hostname_of(job: k8s_client.V1Job) -> str:
    """Read the pinned hostname back out of the node affinity."""
    try:
        terms = (
            job.spec.template.spec.affinity.node_affinity
            .required_during_scheduling_ignored_during_execution.node_selector_terms
        )
    except AttributeError:
        return ""
    for term in terms or []:
        for expr in term.match_expressions or []:
            if expr.key == HOSTNAME_LABEL_KEY and expr.values:
                return expr.values[0]
    return ""


def _to_trace_job(job: k8s_client.V1Job, pods: List[k8s_client.V1Pod], namespace: str) -> TraceJob:
    labels = job.metadata.labels or {}
    name = job.metadata.name
    trace_id = labels.get(TRACE_ID_LABEL_KEY) or name[len(job_name("")):]
    return TraceJob(
        id=trace_id,
        name=job_name(trace_id),
        namespace=job.metadata.namespace or namespace,
        hostname=_hostname_of(job),
        status=derive_status(snapshot_from(job, pods)),
        start_time=job.status.start_time if job.status else None,
    )

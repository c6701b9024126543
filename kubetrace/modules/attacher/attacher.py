import asyncio
import logging
import sys
from typing import Any, Callable, Dict, Optional, TextIO, Tuple

from kubernetes import client as k8s_client
from kubernetes.stream import stream as k8s_stream

from kubetrace.modules.api import AttachOutcome, ExecutionStatus, OperationCancelled
from kubetrace.modules.bundle import TRACE_CONTAINER_NAME
from kubetrace.modules.signals import CancellationToken, run_blocking
from kubetrace.modules.status import StatusTracker

logger = logging.getLogger("kubetrace.attacher")

WAITING_STATES = (ExecutionStatus.PENDING, ExecutionStatus.UNKNOWN)


class Attacher:
    """Streams the live output of a trace job's container to the caller."""

    def __init__(
        self,
        tracker: StatusTracker,
        core_api: k8s_client.CoreV1Api,
        namespace: str,
        token: CancellationToken,
        out: Optional[TextIO] = None,
        err: Optional[TextIO] = None,
        poll_interval: float = 1.0,
        tick: float = 1.0,
        log_fallback: bool = True,
        request_timeout: Optional[float] = None,
        stream_factory: Optional[Callable[..., Any]] = None,
        container: str = TRACE_CONTAINER_NAME,
    ):
        """
        Initialize the attacher.

        Args:
            tracker: Status tracker for the trace job
            core_api: Kubernetes core/v1 API used for attach and log reads
            namespace: Namespace of the trace job
            token: Cancellation token checked at every blocking point
            out: Sink for the program's stdout (default sys.stdout)
            err: Sink for stderr and warnings (default sys.stderr)
            poll_interval: Seconds between status polls while waiting
            tick: Upper bound in seconds for one blocking stream read
            log_fallback: Print the container log when live attach is not possible
            request_timeout: Timeout in seconds for opening the stream and reading logs
            stream_factory: kubernetes.stream.stream (default) or a stand-in
            container: Container to attach to
        """
        self.tracker = tracker
        self.core_api = core_api
        self.namespace = namespace
        self.token = token
        self.out = out or sys.stdout
        self.err = err or sys.stderr
        self.poll_interval = poll_interval
        self.tick = tick
        self.log_fallback = log_fallback
        self.request_timeout = request_timeout
        self.stream_factory = stream_factory
        self.container = container

    async def attach_job(self, name: str) -> AttachOutcome:
        """
        Wait for a trace job to run, then relay its output until it ends.

        Args:
            name: Trace job name

        Returns:
            AttachOutcome describing how the session ended

        Logic:
        1. Poll status while Pending/Unknown, sleeping on the token
        2. If the job went terminal first, fall back to its log
        3. Open an attach stream on the running container
        4. Relay until the stream closes or the token fires

        Cancellation is an outcome, not an error. API errors while waiting
        propagate; attach errors once running are reported as warnings.
        """
        try:
            status, pod = await self._wait_for_pod(name)

            if pod is None or status != ExecutionStatus.RUNNING:
                self._warn(f"trace job {name} already {status.value.lower()}, nothing to attach to")
                await self._fallback_logs(pod)
                return AttachOutcome.FINISHED

            pod_name = pod.metadata.name
            opening = asyncio.ensure_future(run_blocking(self._open, pod_name))
            try:
                stream = await self.token.guard(asyncio.shield(opening))
            except OperationCancelled:
                opening.add_done_callback(_close_late_stream)
                raise
            except Exception as e:
                logger.info(f"Attach to {pod_name} failed: {e}")
                self._warn(f"could not attach to trace job {name}, the process may have already finished")
                await self._fallback_logs(pod)
                return AttachOutcome.DETACHED

            if stream is None:
                return AttachOutcome.CANCELLED
            return await self._relay(name, pod, stream)

        except OperationCancelled:
            logger.info(f"Attach to {name} cancelled")
            return AttachOutcome.CANCELLED

    async def _wait_for_pod(self, name: str) -> Tuple[ExecutionStatus, Optional[k8s_client.V1Pod]]:
        """Poll until the job runs (with a pod) or is terminal."""
        while True:
            if self.token.cancelled:
                raise OperationCancelled("attach cancelled")

            status = await self.token.guard(self.tracker.observe(name))

            if status == ExecutionStatus.RUNNING:
                pod = await self.token.guard(self.tracker.find_pod(name))
                if pod is not None:
                    return status, pod
            elif status not in WAITING_STATES:
                return status, await self.token.guard(self.tracker.find_pod(name))

            logger.debug(f"Trace job {name} is {status.value}, retrying in {self.poll_interval}s")
            if await self.token.wait(self.poll_interval):
                raise OperationCancelled("attach cancelled")

    def _open(self, pod_name: str):
        """Open the attach websocket. Runs in a worker thread."""
        factory = self.stream_factory or k8s_stream
        stream = factory(
            self.core_api.connect_get_namespaced_pod_attach,
            pod_name,
            self.namespace,
            container=self.container,
            stdin=False,
            stdout=True,
            stderr=True,
            tty=False,
            _preload_content=False,
            **self._timeout_kwargs(),
        )
        if self.token.cancelled:
            stream.close()
            return None
        return stream

    def _pump(self, stream) -> Tuple[bool, str, str]:
        """One bounded read from the stream. Runs in a worker thread."""
        if not stream.is_open():
            return False, "", ""
        stream.update(timeout=self.tick)
        stdout = stream.read_stdout() if stream.peek_stdout() else ""
        stderr = stream.read_stderr() if stream.peek_stderr() else ""
        return stream.is_open(), stdout, stderr

    async def _relay(self, name: str, pod: k8s_client.V1Pod, stream) -> AttachOutcome:
        relayed = False
        try:
            while True:
                if self.token.cancelled:
                    return AttachOutcome.CANCELLED
                try:
                    is_open, stdout, stderr = await self.token.guard(run_blocking(self._pump, stream))
                except OperationCancelled:
                    return AttachOutcome.CANCELLED
                except Exception as e:
                    logger.info(f"Stream from {name} failed: {e}")
                    self._warn(f"lost the output stream of trace job {name}, the process may have already finished")
                    if not relayed:
                        await self._fallback_logs(pod)
                    return AttachOutcome.DETACHED

                if stdout:
                    self._write(self.out, stdout)
                    relayed = True
                if stderr:
                    self._write(self.err, stderr)
                    relayed = True
                if not is_open:
                    logger.info(f"Stream from {name} closed")
                    return AttachOutcome.COMPLETED
        finally:
            try:
                stream.close()
            except Exception as e:
                logger.debug(f"Error closing stream: {e}")

    async def _fallback_logs(self, pod: Optional[k8s_client.V1Pod]) -> None:
        """Print whatever the container already logged. Best effort."""
        if not self.log_fallback or pod is None:
            return
        pod_name = pod.metadata.name
        try:
            logs = await self.token.guard(
                run_blocking(
                    self.core_api.read_namespaced_pod_log,
                    pod_name,
                    self.namespace,
                    container=self.container,
                    **self._timeout_kwargs(),
                )
            )
        except OperationCancelled:
            raise
        except Exception as e:
            logger.info(f"Log fallback for {pod_name} failed: {e}")
            return
        if logs:
            self._write(self.out, logs)

    def _timeout_kwargs(self) -> Dict[str, float]:
        return {"_request_timeout": self.request_timeout} if self.request_timeout else {}

    def _warn(self, message: str) -> None:
        self._write(self.err, f"warning: {message}\n")

    @staticmethod
    def _write(sink: TextIO, data: str) -> None:
        sink.write(data)
        if hasattr(sink, "flush"):
            sink.flush()


def _close_late_stream(opening: "asyncio.Future") -> None:
    """Close an attach stream that finished opening after the caller gave up."""
    if opening.cancelled() or opening.exception() is not None:
        return
    stream = opening.result()
    if stream is not None:
        stream.close()

#!/usr/bin/env python3
"""
kubetrace - Main Entry Point

This is the thin orchestration layer that:
1. Loads configuration
2. Builds the Kubernetes clients and modules
3. Runs one command (run, get, attach, logs, delete)

All lifecycle logic is in the modules.
"""

import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import wraps
from typing import Optional

import click
from dotenv import load_dotenv
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes import watch as k8s_watch
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from rich.console import Console
from rich.table import Table

from kubetrace.config.provider import ConfigProvider, EnvConfigProvider
from kubetrace.logging_config import configure_logging
from kubetrace.modules.api import (
    HOSTNAME_LABEL_KEY,
    OBJECT_NAME_PREFIX,
    AttachOutcome,
    OperationCancelled,
    TargetResolutionError,
    TraceError,
    TraceJob,
    TraceJobFilter,
    TraceJSONEncoder,
    job_name,
)
from kubetrace.modules.attacher import Attacher
from kubetrace.modules.bundle import TRACE_CONTAINER_NAME, ProgramBundleBuilder
from kubetrace.modules.signals import CancellationToken, run_blocking, run_with_signals
from kubetrace.modules.status import StatusTracker
from kubetrace.modules.tracejob import TraceJobClient

logger = logging.getLogger("kubetrace.main")

IN_CLUSTER_NAMESPACE_FILE = "/var/run/secrets/kubernetes.io/serviceaccount/namespace"


@dataclass
class Clients:
    """Everything one command needs to talk to the cluster."""
    batch_api: k8s_client.BatchV1Api
    core_api: k8s_client.CoreV1Api
    namespace: str


def load_clients(
    provider: ConfigProvider,
    namespace: Optional[str] = None,
    kubeconfig: Optional[str] = None,
    context: Optional[str] = None,
) -> Clients:
    """
    Load cluster credentials and build API clients.

    Namespace precedence: flag, KUBETRACE_NAMESPACE, kubeconfig context,
    in-cluster service account, "default".
    """
    cluster = provider.get_cluster_config()
    kubeconfig = kubeconfig or cluster.kubeconfig
    context = context or cluster.context
    namespace = namespace or cluster.namespace

    try:
        k8s_config.load_kube_config(config_file=kubeconfig, context=context)
        if not namespace:
            contexts, active = k8s_config.list_kube_config_contexts(config_file=kubeconfig)
            if context:
                active = next((c for c in contexts if c["name"] == context), active)
            namespace = (active or {}).get("context", {}).get("namespace")
    except (ConfigException, FileNotFoundError):
        logger.debug("No usable kubeconfig, trying in-cluster configuration")
        k8s_config.load_incluster_config()
        if not namespace and os.path.exists(IN_CLUSTER_NAMESPACE_FILE):
            with open(IN_CLUSTER_NAMESPACE_FILE) as f:
                namespace = f.read().strip()

    return Clients(
        batch_api=k8s_client.BatchV1Api(),
        core_api=k8s_client.CoreV1Api(),
        namespace=namespace or "default",
    )


def resolve_hostname(core_api: k8s_client.CoreV1Api, target: str, request_timeout: Optional[float] = None) -> str:
    """
    Turn a node reference into its kubernetes.io/hostname label.

    Accepts "NAME" or "node/NAME". Pods are not supported as targets.
    """
    kind, _, name = target.rpartition("/")
    kind = kind.lower()
    if kind in ("pod", "pods", "po"):
        raise TargetResolutionError("running bpftrace programs against pods is not supported")
    if kind not in ("", "node", "nodes", "no"):
        raise TargetResolutionError("first argument must be (NODE | node/NAME)")

    kwargs = {"_request_timeout": request_timeout} if request_timeout else {}
    node = core_api.read_node(name, **kwargs)
    hostname = (node.metadata.labels or {}).get(HOSTNAME_LABEL_KEY)
    if not hostname:
        raise TargetResolutionError(f"label {HOSTNAME_LABEL_KEY} not found in node {name}")
    return hostname


def read_program(eval_: Optional[str], filename: Optional[str]) -> str:
    if eval_ is None and filename is None:
        raise click.UsageError("the bpftrace program is mandatory")
    if eval_ is not None and filename is not None:
        raise click.UsageError(
            "specify the bpftrace program either via an external file or via a literal string, not both"
        )
    if filename is not None:
        try:
            with open(filename) as f:
                program = f.read()
        except OSError as e:
            raise click.UsageError(f"error opening program file: {e}")
    else:
        program = eval_
    if not program.strip():
        raise click.UsageError("the bpftrace program cannot be empty")
    return program


def trace_name(ref: str) -> str:
    """Accept either a trace ID or a full trace job name."""
    return ref if ref.startswith(OBJECT_NAME_PREFIX) else job_name(ref)


def _age(start_time: Optional[datetime]) -> str:
    if start_time is None:
        return "<unknown>"
    seconds = int((datetime.now(timezone.utc) - start_time).total_seconds())
    if seconds < 120:
        return f"{seconds}s"
    if seconds < 7200:
        return f"{seconds // 60}m"
    if seconds < 172800:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"


def handle_errors(fn):
    """Map kubetrace, API and configuration errors to a message on stderr and exit code 1."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except OperationCancelled:
            click.echo("interrupted", err=True)
            sys.exit(1)
        except TraceError as e:
            raise click.ClickException(str(e))
        except ApiException as e:
            raise click.ClickException(f"({e.status}) {e.reason}")
        except ConfigException as e:
            raise click.ClickException(f"error loading cluster configuration: {e}")
        except ValueError as e:
            raise click.ClickException(f"invalid configuration: {e}")
    return wrapper


@dataclass
class CliState:
    provider: ConfigProvider
    namespace: Optional[str]
    kubeconfig: Optional[str]
    context: Optional[str]

    def clients(self) -> Clients:
        return load_clients(self.provider, self.namespace, self.kubeconfig, self.context)


def _trace_client(state: CliState, clients: Clients, token: CancellationToken) -> TraceJobClient:
    return TraceJobClient(
        clients.batch_api,
        clients.core_api,
        clients.namespace,
        builder=ProgramBundleBuilder(state.provider.get_job_template_config()),
        request_timeout=state.provider.get_cluster_config().request_timeout,
        token=token,
    )


async def _attach(state: CliState, clients: Clients, name: str, token: CancellationToken) -> AttachOutcome:
    attach_config = state.provider.get_attach_config()
    attacher = Attacher(
        StatusTracker(_trace_client(state, clients, token)),
        clients.core_api,
        clients.namespace,
        token,
        poll_interval=attach_config.poll_interval,
        tick=attach_config.stream_tick,
        log_fallback=attach_config.log_fallback,
        request_timeout=state.provider.get_cluster_config().request_timeout,
    )
    outcome = await attacher.attach_job(name)
    logger.info(f"Attach to {name} ended: {outcome.value}")
    return outcome


async def _follow_logs(core_api: k8s_client.CoreV1Api, pod_name: str, namespace: str,
                       token: CancellationToken) -> None:
    """Relay a container log line by line until it ends or the token fires."""
    loop = asyncio.get_running_loop()
    lines: asyncio.Queue = asyncio.Queue()
    w = k8s_watch.Watch()

    def _pump():
        try:
            for line in w.stream(
                core_api.read_namespaced_pod_log,
                pod_name,
                namespace,
                container=TRACE_CONTAINER_NAME,
                follow=True,
            ):
                loop.call_soon_threadsafe(lines.put_nowait, line)
        finally:
            loop.call_soon_threadsafe(lines.put_nowait, None)

    pump = asyncio.ensure_future(run_blocking(_pump))
    try:
        while True:
            line = await token.guard(lines.get())
            if line is None:
                break
            click.echo(line)
        await pump
    finally:
        w.stop()
        if not pump.done():
            pump.cancel()


@click.group()
@click.option("-n", "--namespace", default=None, help="Namespace for the trace jobs")
@click.option("--kubeconfig", default=None, help="Path to the kubeconfig file")
@click.option("--context", default=None, help="Kubeconfig context to use")
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR)")
@click.pass_context
def cli(ctx, namespace, kubeconfig, context, log_level):
    """Run bpftrace programs on Kubernetes nodes."""
    load_dotenv()
    configure_logging(log_level or os.getenv("LOG_LEVEL", "WARNING"))
    ctx.obj = CliState(
        provider=EnvConfigProvider(),
        namespace=namespace,
        kubeconfig=kubeconfig,
        context=context,
    )


@cli.command()
@click.argument("target")
@click.option("-e", "--eval", "eval_", default=None, help="Literal string to be evaluated as a bpftrace program")
@click.option("-f", "--filename", default=None, help="File containing a bpftrace program")
@click.option("-a", "--attach", is_flag=True, help="Attach to the trace program once it is created")
@click.pass_obj
@handle_errors
def run(state: CliState, target, eval_, filename, attach):
    """Execute a bpftrace program on a node (NODE or node/NAME)."""
    program = read_program(eval_, filename)
    clients = state.clients()
    hostname = resolve_hostname(
        clients.core_api, target, state.provider.get_cluster_config().request_timeout
    )

    job = TraceJob.new(namespace=clients.namespace, hostname=hostname, program=program)

    async def _run(token: CancellationToken):
        await _trace_client(state, clients, token).create_job(job)
        click.echo(f"trace {job.id} created")
        if attach:
            await _attach(state, clients, job.name, token)

    run_with_signals(_run)


@cli.command()
@click.argument("trace_id", required=False)
@click.option("-o", "--output", type=click.Choice(["table", "json"]), default="table")
@click.pass_obj
@handle_errors
def get(state: CliState, trace_id, output):
    """List trace jobs, or show one by ID."""
    clients = state.clients()
    flt = TraceJobFilter()
    if trace_id:
        flt = TraceJobFilter(name=trace_name(trace_id))

    jobs = run_with_signals(lambda token: _trace_client(state, clients, token).list_jobs(flt))

    if output == "json":
        click.echo(json.dumps([j.model_dump() for j in jobs], cls=TraceJSONEncoder, indent=2))
        return

    table = Table(box=None, show_edge=False, pad_edge=False)
    for column in ("NAMESPACE", "HOSTNAME", "NAME", "STATUS", "AGE"):
        table.add_column(column)
    for j in jobs:
        table.add_row(j.namespace, j.hostname, j.name, j.status.value, _age(j.start_time))
    Console().print(table)


@cli.command()
@click.argument("trace_id")
@click.pass_obj
@handle_errors
def attach(state: CliState, trace_id):
    """Attach to the output of a running trace."""
    clients = state.clients()
    run_with_signals(lambda token: _attach(state, clients, trace_name(trace_id), token))


@cli.command()
@click.argument("trace_id")
@click.option("-f", "--follow", is_flag=True, help="Keep streaming new log lines")
@click.pass_obj
@handle_errors
def logs(state: CliState, trace_id, follow):
    """Print the log of a trace's container."""
    clients = state.clients()
    request_timeout = state.provider.get_cluster_config().request_timeout

    async def _logs(token: CancellationToken):
        tracker = StatusTracker(_trace_client(state, clients, token))
        pod = await tracker.find_pod(trace_name(trace_id))
        if pod is None:
            raise click.ClickException(f"no pod found for trace {trace_id}")

        pod_name = pod.metadata.name
        if follow:
            await _follow_logs(clients.core_api, pod_name, clients.namespace, token)
            return

        text = await token.guard(
            run_blocking(
                clients.core_api.read_namespaced_pod_log,
                pod_name,
                clients.namespace,
                container=TRACE_CONTAINER_NAME,
                _request_timeout=request_timeout,
            )
        )
        click.echo(text, nl=False)

    run_with_signals(_logs)


@cli.command()
@click.argument("trace_id", required=False)
@click.option("--all", "all_", is_flag=True, help="Delete every trace job in the namespace")
@click.pass_obj
@handle_errors
def delete(state: CliState, trace_id, all_):
    """Delete a trace job (its Job and its ConfigMap)."""
    if bool(trace_id) == all_:
        raise click.UsageError("specify either a trace ID or --all")

    clients = state.clients()
    if all_:
        run_with_signals(lambda token: _trace_client(state, clients, token).delete_jobs(filter=TraceJobFilter()))
    else:
        run_with_signals(lambda token: _trace_client(state, clients, token).delete_jobs(name=trace_name(trace_id)))


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()

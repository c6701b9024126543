import logging
from dataclasses import dataclass
from typing import List, Optional

from kubernetes import client as k8s_client

from kubetrace.config.provider import JobTemplateConfig
from kubetrace.modules.api import (
    HOSTNAME_LABEL_KEY,
    PROGRAM_KEY,
    ProgramValidationError,
    TraceJob,
)

logger = logging.getLogger("kubetrace.bundle")

INIT_CONTAINER_NAME = "kubetrace-init"
TRACE_CONTAINER_NAME = "kubetrace"
PROGRAMS_MOUNT_PATH = "/programs"


@dataclass
class ProgramBundle:
    """The two remote objects that make up one trace job."""

    config_map: k8s_client.V1ConfigMap
    job: k8s_client.V1Job


class ProgramBundleBuilder:
    def __init__(self, template: Optional[JobTemplateConfig] = None):
        """
        Initialize the builder.

        Args:
            template: Images and limits for the Job; defaults are used when omitted
        """
        self.template = template or JobTemplateConfig(
            init_image="quay.io/kubetrace/kubetrace-init:latest",
            trace_image="quay.io/kubetrace/kubetrace-bpftrace:latest",
            image_pull_policy="IfNotPresent",
            active_deadline_seconds=3600,
            ttl_seconds_after_finished=None,
        )

    def build(self, job: TraceJob) -> ProgramBundle:
        """
        Turn a trace job into its ConfigMap and Job descriptors.

        Args:
            job: Trace job with a non-empty program

        Returns:
            ProgramBundle with the ConfigMap and the Job that mounts it

        Raises:
            ProgramValidationError: If the program is empty
        """
        if not job.program or not job.program.strip():
            raise ProgramValidationError("the bpftrace program cannot be empty")

        logger.debug(f"Building bundle {job.name} for host {job.hostname}")
        return ProgramBundle(config_map=self.build_config_map(job), job=self.build_job(job))

    def build_config_map(self, job: TraceJob) -> k8s_client.V1ConfigMap:
        return k8s_client.V1ConfigMap(
            api_version="v1",
            kind="ConfigMap",
            metadata=self._metadata(job),
            data={PROGRAM_KEY: job.program},
        )

    def build_job(self, job: TraceJob) -> k8s_client.V1Job:
        template = self.template

        init_container = k8s_client.V1Container(
            name=INIT_CONTAINER_NAME,
            image=template.init_image,
            image_pull_policy=template.image_pull_policy,
            volume_mounts=[
                k8s_client.V1VolumeMount(name="lib-modules", mount_path="/lib/modules", read_only=True),
                k8s_client.V1VolumeMount(name="usr-src", mount_path="/usr/src"),
            ],
        )

        # Runs the program with host visibility; no stdin and no tty.
        trace_container = k8s_client.V1Container(
            name=TRACE_CONTAINER_NAME,
            image=template.trace_image,
            image_pull_policy=template.image_pull_policy,
            command=["bpftrace", f"{PROGRAMS_MOUNT_PATH}/{PROGRAM_KEY}"],
            security_context=k8s_client.V1SecurityContext(privileged=True),
            stdin=False,
            tty=False,
            volume_mounts=[
                k8s_client.V1VolumeMount(name="program", mount_path=PROGRAMS_MOUNT_PATH, read_only=True),
                k8s_client.V1VolumeMount(name="lib-modules", mount_path="/lib/modules", read_only=True),
                k8s_client.V1VolumeMount(name="usr-src", mount_path="/usr/src", read_only=True),
                k8s_client.V1VolumeMount(name="sys", mount_path="/sys"),
            ],
        )

        pod_spec = k8s_client.V1PodSpec(
            host_pid=True,
            restart_policy="Never",
            init_containers=[init_container],
            containers=[trace_container],
            volumes=self._volumes(job),
            affinity=self._node_affinity(job.hostname),
            tolerations=[
                k8s_client.V1Toleration(operator="Exists", effect="NoSchedule"),
                k8s_client.V1Toleration(operator="Exists", effect="NoExecute"),
            ],
        )

        job_spec = k8s_client.V1JobSpec(
            parallelism=1,
            completions=1,
            backoff_limit=0,
            active_deadline_seconds=template.active_deadline_seconds,
            ttl_seconds_after_finished=template.ttl_seconds_after_finished,
            template=k8s_client.V1PodTemplateSpec(
                metadata=k8s_client.V1ObjectMeta(labels=dict(job.labels)),
                spec=pod_spec,
            ),
        )

        return k8s_client.V1Job(
            api_version="batch/v1",
            kind="Job",
            metadata=self._metadata(job),
            spec=job_spec,
        )

    @staticmethod
    def _metadata(job: TraceJob) -> k8s_client.V1ObjectMeta:
        return k8s_client.V1ObjectMeta(name=job.name, namespace=job.namespace, labels=dict(job.labels))

    @staticmethod
    def _volumes(job: TraceJob) -> List[k8s_client.V1Volume]:
        return [
            k8s_client.V1Volume(
                name="program",
                config_map=k8s_client.V1ConfigMapVolumeSource(name=job.name),
            ),
            k8s_client.V1Volume(
                name="lib-modules",
                host_path=k8s_client.V1HostPathVolumeSource(path="/lib/modules"),
            ),
            k8s_client.V1Volume(
                name="sys",
                host_path=k8s_client.V1HostPathVolumeSource(path="/sys"),
            ),
            k8s_client.V1Volume(name="usr-src", empty_dir=k8s_client.V1EmptyDirVolumeSource()),
        ]

    @staticmethod
    def _node_affinity(hostname: str) -> k8s_client.V1Affinity:
        requirement = k8s_client.V1NodeSelectorRequirement(
            key=HOSTNAME_LABEL_KEY, operator="In", values=[hostname]
        )
        return k8s_client.V1Affinity(
            node_affinity=k8s_client.V1NodeAffinity(
                required_during_scheduling_ignored_during_execution=k8s_client.V1NodeSelector(
                    node_selector_terms=[k8s_client.V1NodeSelectorTerm(match_expressions=[requirement])]
                )
            )
        )

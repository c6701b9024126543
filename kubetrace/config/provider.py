"""Configuration provider following Black Box Design principles."""
import os
from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass
class JobTemplateConfig:
    """Images and limits stamped into every trace Job."""
    init_image: str
    trace_image: str
    image_pull_policy: str
    active_deadline_seconds: Optional[int]
    ttl_seconds_after_finished: Optional[int]


@dataclass
class AttachConfig:
    """Attach loop timing."""
    poll_interval: float
    stream_tick: float
    log_fallback: bool


@dataclass
class ClusterConfig:
    """How to reach the control plane."""
    kubeconfig: Optional[str]
    context: Optional[str]
    namespace: Optional[str]
    request_timeout: float


class ConfigProvider(Protocol):
    """Protocol for configuration providers."""

    def get_job_template_config(self) -> JobTemplateConfig:
        """Get Job template configuration."""
        ...

    def get_attach_config(self) -> AttachConfig:
        """Get attach configuration."""
        ...

    def get_cluster_config(self) -> ClusterConfig:
        """Get cluster connection configuration."""
        ...


def _env_float(key: str, default: str) -> float:
    value = os.getenv(key, default)
    try:
        parsed = float(value)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {value!r}")
    if parsed <= 0:
        raise ValueError(f"{key} must be positive, got {value!r}")
    return parsed


def _env_optional_int(key: str, default: Optional[str]) -> Optional[int]:
    value = os.getenv(key, default)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {value!r}")


class EnvConfigProvider:
    """Environment-based configuration provider."""

    def get_job_template_config(self) -> JobTemplateConfig:
        """Get Job template configuration from environment variables."""
        return JobTemplateConfig(
            init_image=os.getenv("KUBETRACE_INIT_IMAGE", "quay.io/kubetrace/kubetrace-init:latest"),
            trace_image=os.getenv("KUBETRACE_TRACE_IMAGE", "quay.io/kubetrace/kubetrace-bpftrace:latest"),
            image_pull_policy=os.getenv("KUBETRACE_IMAGE_PULL_POLICY", "IfNotPresent"),
            active_deadline_seconds=_env_optional_int("KUBETRACE_ACTIVE_DEADLINE", "3600"),
            ttl_seconds_after_finished=_env_optional_int("KUBETRACE_TTL_AFTER_FINISHED", None),
        )

    def get_attach_config(self) -> AttachConfig:
        """Get attach configuration from environment variables."""
        return AttachConfig(
            poll_interval=_env_float("KUBETRACE_POLL_INTERVAL", "1.0"),
            stream_tick=_env_float("KUBETRACE_STREAM_TICK", "1.0"),
            log_fallback=os.getenv("KUBETRACE_LOG_FALLBACK", "true").lower() == "true",
        )

    def get_cluster_config(self) -> ClusterConfig:
        """Get cluster connection configuration from environment variables."""
        return ClusterConfig(
            kubeconfig=os.getenv("KUBETRACE_KUBECONFIG") or None,
            context=os.getenv("KUBETRACE_CONTEXT") or None,
            namespace=os.getenv("KUBETRACE_NAMESPACE") or None,
            request_timeout=_env_float("KUBETRACE_REQUEST_TIMEOUT", "30"),
        )

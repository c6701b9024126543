"""
kubetrace - bpftrace programs scheduled on Kubernetes nodes

Runs a tracing program as a Job on a target node and optionally streams
its live output back to the caller.

Architecture:
- Each module is self-contained with clear interfaces
- No module knows the internals of another
- All communication through defined interfaces

Modules:
- api: Shared data models and error types
- bundle: Program bundle (ConfigMap + Job) construction
- tracejob: Creation, lookup and deletion of trace jobs
- status: Lifecycle status derivation
- attacher: Live output streaming from the trace container
- signals: Interrupt-to-cancellation wiring
"""

__version__ = "0.1.0"

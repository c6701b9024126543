"""
Bundle Module - Black Box Interface

Purpose: Package a tracing program into cluster-native objects
Interface: ProgramBundleBuilder.build()
Hidden: Volume layout, init/main container wiring, node pinning

Pure construction - no remote calls.
"""

from .bundle import (
    INIT_CONTAINER_NAME,
    TRACE_CONTAINER_NAME,
    ProgramBundle,
    ProgramBundleBuilder,
)

__all__ = [
    "INIT_CONTAINER_NAME",
    "TRACE_CONTAINER_NAME",
    "ProgramBundle",
    "ProgramBundleBuilder",
]

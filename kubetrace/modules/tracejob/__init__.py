"""
TraceJob Module - Black Box Interface

Purpose: Create, look up and delete trace jobs against the API server
Interface: create_job(), get_job(), list_jobs(), delete_jobs()
Hidden: ConfigMap/Job pairing, label selectors, thread offloading

A trace job is two remote objects under one name. Creation is ordered
(ConfigMap first) and not rolled back; deletion attempts both and reports
every failure.
"""

from .client import TraceJobClient

__all__ = ["TraceJobClient"]

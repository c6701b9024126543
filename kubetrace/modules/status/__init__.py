"""
Status Module - Black Box Interface

Purpose: Derive a normalized lifecycle status for a trace job
Interface: derive_status(), snapshot_from(), StatusTracker.observe()
Hidden: Which Job conditions and pod fields count for what

Recomputes from scratch on every observation.
"""

from .tracker import JobReader, StatusTracker, derive_status, snapshot_from

__all__ = ["JobReader", "StatusTracker", "derive_status", "snapshot_from"]

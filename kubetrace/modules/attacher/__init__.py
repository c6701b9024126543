"""
Attacher Module - Black Box Interface

Purpose: Relay live output of a running trace job to the caller
Interface: Attacher.attach_job()
Hidden: Status polling, websocket attach, bounded reads, log fallback

Waits for the job to be scheduled, streams until the process exits or the
caller cancels. Failing to attach to a job that already ran is a warning.
"""

from .attacher import Attacher

__all__ = ["Attacher"]

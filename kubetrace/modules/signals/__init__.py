"""
Signals Module - Black Box Interface

Purpose: Turn OS interrupts into cooperative cancellation
Interface: CancellationToken, StandardSignals, run_blocking, run_with_signals
Hidden: Event loop signal handler installation and restoration, daemon worker threads

First interrupt cancels, second interrupt exits.
"""

from .signals import CancellationToken, StandardSignals, run_blocking, run_with_signals

__all__ = ["CancellationToken", "StandardSignals", "run_blocking", "run_with_signals"]

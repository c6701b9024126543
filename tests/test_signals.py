"""
Tests for cancellation tokens and signal wiring.
"""

import asyncio
import signal
import time
from unittest.mock import MagicMock

import pytest

from kubetrace.modules.api import OperationCancelled
from kubetrace.modules.signals import CancellationToken, StandardSignals, run_blocking, run_with_signals


# =============================================================================
# CancellationToken
# =============================================================================

@pytest.mark.asyncio
async def test_wait_times_out_when_not_cancelled():
    token = CancellationToken()

    assert await token.wait(0.01) is False
    assert not token.cancelled


@pytest.mark.asyncio
async def test_wait_returns_early_on_cancel():
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.05, token.cancel)

    start = time.monotonic()
    assert await token.wait(30) is True
    assert time.monotonic() - start < 1.0


@pytest.mark.asyncio
async def test_guard_returns_result():
    token = CancellationToken()

    async def work():
        return 42

    assert await token.guard(work()) == 42


@pytest.mark.asyncio
async def test_guard_propagates_errors():
    token = CancellationToken()

    async def work():
        raise ValueError("boom")

    with pytest.raises(ValueError):
        await token.guard(work())


@pytest.mark.asyncio
async def test_guard_interrupts_blocking_thread_call():
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.05, token.cancel)

    start = time.monotonic()
    with pytest.raises(OperationCancelled):
        await token.guard(asyncio.to_thread(time.sleep, 0.5))
    assert time.monotonic() - start < 0.4


@pytest.mark.asyncio
async def test_guard_on_cancelled_token_does_not_start_work():
    token = CancellationToken()
    token.cancel()
    called = []

    async def work():
        called.append(True)

    with pytest.raises(OperationCancelled):
        await token.guard(work())
    assert called == []


# =============================================================================
# StandardSignals
# =============================================================================

@pytest.mark.asyncio
async def test_first_signal_cancels_second_exits():
    token = CancellationToken()
    exit_fn = MagicMock()

    with StandardSignals(token, exit_fn=exit_fn) as handlers:
        handlers._handle(signal.SIGINT)
        assert token.cancelled
        exit_fn.assert_not_called()

        handlers._handle(signal.SIGINT)
        exit_fn.assert_called_once_with(1)


@pytest.mark.asyncio
async def test_real_interrupt_cancels_token():
    token = CancellationToken()
    exit_fn = MagicMock()

    with StandardSignals(token, exit_fn=exit_fn):
        signal.raise_signal(signal.SIGINT)
        assert await token.wait(1.0)

    exit_fn.assert_not_called()


@pytest.mark.asyncio
async def test_handlers_are_removed_on_exit():
    token = CancellationToken()
    previous = signal.getsignal(signal.SIGINT)

    with StandardSignals(token, exit_fn=MagicMock()):
        pass

    assert signal.getsignal(signal.SIGINT) == previous


# =============================================================================
# run_blocking / run_with_signals
# =============================================================================

@pytest.mark.asyncio
async def test_run_blocking_returns_result():
    assert await run_blocking(lambda a, b=0: a + b, 40, b=2) == 42


@pytest.mark.asyncio
async def test_run_blocking_propagates_errors():
    def fail():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await run_blocking(fail)


def test_run_with_signals_returns_result_and_restores_handlers():
    previous = signal.getsignal(signal.SIGINT)

    async def main(token):
        return "done"

    assert run_with_signals(main, exit_fn=MagicMock()) == "done"
    assert signal.getsignal(signal.SIGINT) == previous


@pytest.mark.scenario
def test_interrupt_during_hung_call_returns_promptly():
    """A remote call that never answers must not hold the caller after an interrupt."""
    exit_fn = MagicMock()

    async def main(token):
        asyncio.get_running_loop().call_later(0.2, signal.raise_signal, signal.SIGINT)
        await token.guard(run_blocking(time.sleep, 3))

    start = time.monotonic()
    with pytest.raises(OperationCancelled):
        run_with_signals(main, exit_fn=exit_fn)

    assert time.monotonic() - start < 1.0
    exit_fn.assert_not_called()


@pytest.mark.scenario
def test_second_interrupt_exits_during_teardown():
    exit_fn = MagicMock()

    async def slow_cleanup():
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            await asyncio.sleep(0.4)

    async def main(token):
        loop = asyncio.get_running_loop()
        main.cleanup = loop.create_task(slow_cleanup())
        loop.call_later(0.05, signal.raise_signal, signal.SIGINT)
        loop.call_later(0.2, signal.raise_signal, signal.SIGINT)
        await token.wait()

    run_with_signals(main, exit_fn=exit_fn)

    exit_fn.assert_called_once_with(1)

import asyncio
import logging
import os
import signal
import threading
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from kubetrace.modules.api import OperationCancelled

logger = logging.getLogger("kubetrace.signals")

T = TypeVar("T")


class CancellationToken:
    """
    Shared cancellation signal for one invocation.

    Every blocking point (retry sleep, stream read, remote call) waits on
    this token so a cancel unblocks it immediately.
    """

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Sleep until cancelled or until timeout elapses.

        Args:
            timeout: Seconds to wait (None = until cancelled)

        Returns:
            True if the token was cancelled
        """
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        return self.cancelled

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await something, giving up as soon as the token is cancelled.

        The abandoned work is cancelled; work already handed to a thread
        keeps running there but its result is discarded.

        Raises:
            OperationCancelled: If the token fires first
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelled("operation cancelled")

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        raise OperationCancelled("operation cancelled")


class StandardSignals:
    """
    Wire SIGINT/SIGTERM to a cancellation token for the life of a block.

    The first signal cancels the token. The second exits the process
    immediately without waiting for any cleanup. Previous handlers are
    restored on exit.

    Usage:
        token = CancellationToken()
        with StandardSignals(token):
            await attacher.attach_job(name)
    """

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(
        self,
        token: CancellationToken,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        exit_fn: Callable[[int], None] = os._exit,
    ):
        self.token = token
        self.exit_fn = exit_fn
        self._loop = loop
        self._received = 0
        self._loop_handlers: List[int] = []
        self._previous_handlers: Dict[int, object] = {}

    def __enter__(self) -> "StandardSignals":
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        for sig in self.SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self._handle, sig)
                self._loop_handlers.append(sig)
            except (NotImplementedError, RuntimeError):
                # No loop signal support here (e.g. Windows); use a plain handler
                # that hops back onto the loop.
                self._previous_handlers[sig] = signal.signal(sig, self._handle_threadsafe)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        for sig in self._loop_handlers:
            self._loop.remove_signal_handler(sig)
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._loop_handlers = []
        self._previous_handlers = {}

    def _handle_threadsafe(self, signum, frame) -> None:
        self._loop.call_soon_threadsafe(self._handle, signum)

    def _handle(self, signum: int) -> None:
        self._received += 1
        if self._received == 1:
            logger.info(f"Received signal {signum}, stopping")
            self.token.cancel()
            return

        logger.warning(f"Received signal {signum} again, exiting immediately")
        self.exit_fn(1)


async def run_blocking(fn: Callable[..., T], *args, **kwargs) -> T:
    """
    Run a blocking call in a daemon thread and await its result.

    The thread is never joined. If the caller stops waiting (for example
    through CancellationToken.guard) the call finishes in the background and
    its result is dropped, even once the event loop is closed.
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def _resolve(result, error) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    def _worker() -> None:
        result, error = None, None
        try:
            result = fn(*args, **kwargs)
        except Exception as e:
            error = e
        try:
            loop.call_soon_threadsafe(_resolve, result, error)
        except RuntimeError:
            logger.debug(f"Dropping late result of {getattr(fn, '__name__', fn)}, event loop is closed")

    threading.Thread(target=_worker, name="kubetrace-blocking", daemon=True).start()
    return await future


def run_with_signals(
    main: Callable[[CancellationToken], Awaitable[T]],
    exit_fn: Callable[[int], None] = os._exit,
) -> T:
    """
    Run one command on a fresh event loop with interrupts wired to a token.

    Handlers stay installed from before the loop starts until after it is
    torn down, so a second interrupt always reaches exit_fn, including while
    leftover tasks and executors are being shut down.

    Args:
        main: Coroutine function receiving the invocation's token
        exit_fn: Called with 1 on the second interrupt

    Returns:
        Whatever main returns
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    token = CancellationToken()
    try:
        with StandardSignals(token, loop=loop, exit_fn=exit_fn):
            try:
                return loop.run_until_complete(main(token))
            finally:
                _cancel_remaining(loop)
                loop.run_until_complete(loop.shutdown_asyncgens())
                loop.run_until_complete(loop.shutdown_default_executor())
    finally:
        asyncio.set_event_loop(None)
        loop.close()


def _cancel_remaining(loop: asyncio.AbstractEventLoop) -> None:
    pending = asyncio.all_tasks(loop)
    if not pending:
        return
    for task in pending:
        task.cancel()
    loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))

"""
Async Safety Utilities.

Provides safe async patterns for the deployment controller:
- Deadline-bounded external calls
- Retry with backoff
- Cancellable waits
- Task tracking with cancellation and cleanup

Usage:
    from deployctl.core.async_utils import call_with_deadline, retry_call

    # Bounded external call
    result = await call_with_deadline(router.set_split(target, split), timeout=5.0)

    # One retry after a short backoff
    await retry_call(lambda: router.set_split(target, split), attempts=2, backoff=1.0)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Set, Tuple, Type, TypeVar

from .exceptions import CallTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_deadline(
    coro: Awaitable[T],
    timeout: Optional[float],
    context: str = "",
) -> T:
    """
    Await a coroutine under a deadline.

    Args:
        coro: Coroutine to await
        timeout: Deadline in seconds (None or <= 0 disables the deadline)
        context: Description used in the timeout error

    Raises:
        CallTimeoutError: If the deadline expires
    """
    if timeout is None or timeout <= 0:
        return await coro

    try:
        async with asyncio.timeout(timeout):
            return await coro
    except TimeoutError as exc:
        raise CallTimeoutError(
            f"{context or 'call'} exceeded deadline of {timeout:.2f}s",
            timeout=timeout,
        ) from exc


async def retry_call(
    factory: Callable[[], Awaitable[T]],
    attempts: int = 2,
    backoff: float = 1.0,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    context: str = "",
    on_retry: Optional[Callable[[Exception, int], None]] = None,
) -> T:
    """
    Call ``factory()`` and await its result, retrying on failure.

    A fresh awaitable is created for every attempt. The last exception is
    re-raised once all attempts are exhausted.

    Args:
        factory: Zero-argument callable returning an awaitable
        attempts: Total attempts including the first one
        backoff: Delay before each retry in seconds
        exceptions: Exception types that trigger a retry
        context: Context string for logging
        on_retry: Callback called on each retry (exception, attempt_number)
    """
    ctx = context or getattr(factory, "__name__", "call")

    for attempt in range(1, attempts + 1):
        try:
            return await factory()
        except exceptions as e:
            if attempt == attempts:
                logger.error(f"{ctx}: failed after {attempts} attempts: {e}")
                raise

            logger.warning(
                f"{ctx}: attempt {attempt}/{attempts} failed: {e}. "
                f"Retrying in {backoff:.2f}s..."
            )
            if on_retry:
                on_retry(e, attempt)
            if backoff > 0:
                await asyncio.sleep(backoff)

    raise RuntimeError(f"{ctx}: unexpected retry loop exit")


async def wait_or_cancelled(event: asyncio.Event, timeout: float) -> bool:
    """
    Suspend for ``timeout`` seconds unless ``event`` is set first.

    Returns:
        True if the event was set (cancelled), False if the timeout elapsed.
    """
    if event.is_set():
        return True
    if timeout <= 0:
        return False

    try:
        async with asyncio.timeout(timeout):
            await event.wait()
        return True
    except TimeoutError:
        return False


class AsyncTaskManager:
    """
    Owns background tasks so they can be awaited or cancelled as a group.

    Once closed (``cancel_all`` or leaving ``async with``) it refuses new tasks.
    Failures of finished tasks are logged when the task completes, so an
    exception is never lost just because nobody awaited the task.

    Example:
        async with AsyncTaskManager("sessions") as tasks:
            tasks.create_task(run_session(a), name="rollout-a")
            tasks.create_task(run_session(b), name="rollout-b")
            await tasks.wait_all()
    """

    def __init__(self, name: str = "TaskManager"):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def active(self) -> int:
        return len(self._tasks)

    def create_task(self, coro: Awaitable[T], name: Optional[str] = None) -> asyncio.Task[T]:
        if self._closed:
            raise RuntimeError(f"{self.name} no longer accepts tasks")

        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"{self.name}: task {task.get_name()} raised {exc!r}", exc_info=exc)

    async def wait_all(self, timeout: Optional[float] = None) -> List[Any]:
        """
        Results (or exceptions) of every tracked task.

        On timeout the remaining tasks are cancelled and an empty list returned.
        """
        pending = list(self._tasks)
        if not pending:
            return []
        try:
            async with asyncio.timeout(timeout):
                return await asyncio.gather(*pending, return_exceptions=True)
        except TimeoutError:
            logger.warning(
                f"{self.name}: {len(self._tasks)} task(s) still running after {timeout}s"
            )
            await self.cancel_all()
            return []

    async def cancel_all(self, timeout: float = 5.0) -> None:
        """Close the manager, cancel every task and wait up to ``timeout`` for them."""
        self._closed = True
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if not pending:
            return

        _, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            names = ", ".join(sorted(t.get_name() for t in still_running))
            logger.warning(f"{self.name}: tasks ignored cancellation: {names}")

    async def __aenter__(self) -> "AsyncTaskManager":
        self._closed = False
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.cancel_all()

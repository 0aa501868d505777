"""Asyncio helpers shared by the pipeline components.

- ``with_timeout``: soft time budget for ancillary lookups. The operation is
  raced against a timer; when the timer wins the fallback is returned and the
  operation keeps running with its result ignored.
- ``BackgroundTaskRunner``: fire-and-forget work (cache writes, metric
  persistence, access-count bumps) with strong task references and errors
  routed to the log.
"""

import asyncio
import logging
from typing import Any, Awaitable, Optional, Set, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def consume_result(task: "asyncio.Future[Any]") -> None:
    """Retrieve a late result so asyncio never reports it as unhandled."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f"Abandoned operation finished with error: {exc}")


async def with_timeout(
    operation: Awaitable[T],
    timeout_seconds: float,
    fallback: T,
    name: str = "operation",
) -> T:
    """Return the result of ``operation`` or ``fallback`` if it is too slow.

    The operation is never cancelled, not even when the caller is. If it
    raises, the fallback is returned as well, so the caller always gets a
    usable value.

    Args:
        operation: Coroutine or future to await
        timeout_seconds: Soft budget in seconds
        fallback: Value returned on timeout or error
        name: Label used in log messages

    Returns:
        The operation's result or the fallback
    """
    task = asyncio.ensure_future(operation)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_seconds)
    except asyncio.CancelledError:
        # Caller gave up; the operation still runs and its outcome is dropped
        task.add_done_callback(consume_result)
        raise

    if not done:
        logger.info(f"{name} exceeded {timeout_seconds * 1000:.0f}ms budget, using fallback")
        task.add_done_callback(consume_result)
        return fallback

    try:
        return task.result()
    except Exception as e:
        logger.warning(f"{name} failed, using fallback: {e}")
        return fallback


class BackgroundTaskRunner:
    """Owns fire-and-forget tasks until they finish.

    The event loop only keeps weak references to tasks, so every spawned task
    is held here until its done-callback runs. Failures are logged and never
    reach the code that spawned the task.
    """

    def __init__(self, name: str = "background"):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()
        self.completed = 0
        self.failed = 0

    def spawn(self, coro: Awaitable[Any], name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        if name and hasattr(task, "set_name"):
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.failed += 1
            logger.error(
                f"Background task {task.get_name()} in '{self.name}' failed: {exc}",
                exc_info=exc,
            )
        else:
            self.completed += 1

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout_seconds: Optional[float] = None) -> None:
        """Wait for every pending task, including tasks spawned while draining.

        Args:
            timeout_seconds: Overall budget; remaining tasks are left running
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout_seconds is None else loop.time() + timeout_seconds

        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                logger.warning(f"'{self.name}' drain timed out with {len(self._tasks)} task(s) pending")
                return
            await asyncio.wait(set(self._tasks), timeout=remaining)
            # Let done-callbacks run before re-checking the set
            await asyncio.sleep(0)

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger("neoai.background")


class BackgroundTaskRunner:
    """Runs fire-and-forget coroutines that must outlive the request.

    Tasks are tracked so a strong reference is held until they finish and so
    application shutdown can wait for in-flight persistence.  Failures are
    logged from the done-callback and never propagate to the submitter.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("background_task_cancelled", extra={"task": task.get_name()})
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "background_task_failed",
                extra={"task": task.get_name(), "error": str(exc)},
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def drain(self, timeout_s: float = 10.0) -> int:
        """Wait for in-flight tasks; return how many were still running at the deadline."""
        if not self._tasks:
            return 0
        # Tasks submitted while draining (e.g. a pump scheduling its consumer)
        # are picked up by the next pass.
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        while self._tasks:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.wait(set(self._tasks), timeout=remaining)
        still_running = len(self._tasks)
        if still_running:
            logger.warning("background_drain_timeout", extra={"count": still_running})
        return still_running

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, Set

from flamingo.logging import get_logger

logger = get_logger(__name__)


class BackgroundTaskRunner:
    """Runs best-effort work off the request path.

    Submitted coroutines are scheduled on the running loop. Their failures are
    logged with the job name and never re-raised to the submitter. Strong
    references are kept until completion so tasks are not garbage collected
    mid-flight.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()
        self.failures = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(
        self,
        name: str,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        **context: Any,
    ) -> asyncio.Task:
        """Schedule ``func(*args)``; ``context`` is attached to failure logs."""
        task = asyncio.create_task(self._run(name, func, args, context), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self,
        name: str,
        func: Callable[..., Awaitable[Any]],
        args: tuple,
        context: dict,
    ) -> None:
        try:
            await func(*args)
        except asyncio.CancelledError:
            logger.warning("background_task_cancelled", task=name, **context)
            raise
        except Exception as exc:
            self.failures += 1
            logger.error(
                "background_task_failed",
                task=name,
                error_type=type(exc).__name__,
                error=str(exc),
                **context,
            )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight tasks; cancel whatever outlives ``timeout``."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("background_tasks_cancelled", count=len(still_running))

"""
Fire-and-forget task runner used for buffer refills and prefetches.

Dispatched work runs independently of the request that scheduled it;
failures are logged here and never propagate back to the caller.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from studymate.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class BackgroundTaskRunner:
    """Owns background asyncio tasks so they are tracked, logged and drainable."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()
        self._closed = False
        self.submitted = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(
        self,
        factory: Callable[[], Awaitable[object]],
        *,
        name: str,
        delay_s: float = 0.0,
    ) -> asyncio.Task | None:
        """
        Schedule ``factory()`` on the running loop, optionally after a delay.

        Returns None (and logs) when the runner has been shut down.
        """
        if self._closed:
            logger.warning("Background runner closed, dropping task", task=name)
            return None

        async def _run():
            if delay_s > 0:
                await asyncio.sleep(delay_s)
            return await factory()

        task = asyncio.create_task(_run(), name=name)
        self._tasks.add(task)
        self.submitted += 1
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug("Background task cancelled", task=task.get_name())
            return

        error = task.exception()
        if error is not None:
            self.failed += 1
            logger.error(
                "Background task failed",
                task=task.get_name(),
                error=str(error),
                error_type=type(error).__name__,
            )

    async def drain(self) -> None:
        """Wait until every task (including ones spawned meanwhile) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout_s: float = 5.0) -> None:
        """Stop accepting work, give in-flight tasks a grace period, then cancel."""
        self._closed = True
        if not self._tasks:
            return

        _, still_running = await asyncio.wait(list(self._tasks), timeout=timeout_s)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.info("Cancelled unfinished background tasks", count=len(still_running))

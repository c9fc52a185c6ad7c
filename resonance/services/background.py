"""
Resonance — Best-effort background task runner.

Work that must never sit on a request's critical path (push notifications,
the discovery run triggered by deploying a prompt) is handed to a
``BackgroundTaskRunner``.  The contract is simple:

* ``spawn`` schedules the coroutine and returns immediately.
* Failures are logged when the task finishes and are never re-raised.
* The runner holds a strong reference to every pending task so the event
  loop cannot garbage-collect it mid-flight.
* ``drain`` waits (bounded) for pending work during shutdown.
"""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine

import structlog

logger = structlog.get_logger("resonance.background")


class BackgroundTaskRunner:
    """Fire-and-forget task supervisor with logged-on-failure semantics."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, label: str) -> asyncio.Task | None:
        """Schedule *coro* on the running loop.

        Returns the task, or ``None`` if the runner has been closed (the
        coroutine is closed without running).
        """
        if self._closed:
            coro.close()
            logger.warning("background_task_rejected", label=label, reason="runner closed")
            return None

        task = asyncio.create_task(coro, name=label)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info("background_task_cancelled", label=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "background_task_failed",
                label=task.get_name(),
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for pending tasks; cancel whatever is left after *timeout*."""
        if not self._tasks:
            return
        pending = set(self._tasks)
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            task.cancel()
        if still_pending:
            logger.warning("background_drain_timeout", cancelled=len(still_pending))
            await asyncio.gather(*still_pending, return_exceptions=True)

    async def close(self, timeout: float = 10.0) -> None:
        self._closed = True
        await self.drain(timeout=timeout)

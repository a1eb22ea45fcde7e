"""Observable background task submission.

Work spawned from a request path (e.g. completion after the first price
observation) is submitted here instead of being fired and forgotten: the
queue bounds concurrency, records failures, and can be awaited with
:meth:`BackgroundTaskQueue.join`.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

ErrorSink = Callable[[str, BaseException], None]

MAX_RECENT_ERRORS = 100


@dataclass
class TaskStats:
    submitted: int = 0
    succeeded: int = 0
    failed: int = 0
    # most recent failures only; `failed` keeps the total
    errors: deque[str] = field(default_factory=lambda: deque(maxlen=MAX_RECENT_ERRORS))


class BackgroundTaskQueue:
    """Bounded-concurrency runner for detached coroutines."""

    def __init__(self, concurrency: int = 16, on_error: ErrorSink | None = None):
        self._semaphore = asyncio.Semaphore(concurrency)
        self._tasks: set[asyncio.Task] = set()
        self._on_error = on_error
        self.stats = TaskStats()

    def submit(self, name: str, factory: Callable[[], Awaitable[object]]) -> asyncio.Task:
        """Schedule ``factory()`` to run in the background.

        Args:
            name: Label for logs and error reports
            factory: Zero-argument callable returning the coroutine to run

        Returns:
            The scheduled task
        """
        task = asyncio.create_task(self._run(name, factory), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self.stats.submitted += 1
        return task

    async def _run(self, name: str, factory: Callable[[], Awaitable[object]]) -> None:
        async with self._semaphore:
            try:
                await factory()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats.failed += 1
                self.stats.errors.append(f"{name}: {e}")
                logger.error(f"Background task {name} failed: {e}", exc_info=True)
                if self._on_error is not None:
                    self._on_error(name, e)
            else:
                self.stats.succeeded += 1

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def join(self) -> None:
        """Wait until every submitted task (including ones submitted meanwhile) finishes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self, cancel: bool = False) -> None:
        """Drain (or cancel) outstanding tasks."""
        if cancel:
            for task in list(self._tasks):
                task.cancel()
        await self.join()

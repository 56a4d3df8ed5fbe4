"""Detached background work with its own error channel."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Deque, Set, Tuple

from ..constants import MAX_SENT_ERRORS
from ..errors import describe_error

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Track fire-and-forget coroutines so failures are logged, not lost.

    Callers never await the spawned work on their critical path; ``drain``
    exists for shutdown and tests.
    """

    def __init__(self, name: str = "background", max_errors: int = MAX_SENT_ERRORS) -> None:
        self.name = name
        self._tasks: Set[asyncio.Task] = set()
        self.errors: Deque[Tuple[str, str]] = deque(maxlen=max_errors)
        self.error_count = 0

    def spawn(self, coro: Awaitable, label: str = "task") -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finished(t, label))
        return task

    def _finished(self, task: asyncio.Task, label: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.error_count += 1
            self.errors.append((label, describe_error(exc)))
            logger.error(
                f"{self.name} task {label} failed: {describe_error(exc)}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every spawned task, including ones spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

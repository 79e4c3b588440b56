"""Cancellable delayed tasks for coalescing rapid navigation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Debouncer:
    """Runs only the most recent of a burst of scheduled coroutines.

    Each ``schedule()`` call cancels the previously scheduled task and starts
    a new one that waits ``delay_s`` before running.  A generation token is
    checked again after the coroutine finishes, so a result produced after a
    newer call was scheduled comes back as None instead of being published.
    """

    def __init__(self, delay_s: float) -> None:
        if delay_s < 0:
            raise ValueError("delay_s must be >= 0")
        self.delay_s = delay_s
        self._token = 0
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self, fn: Callable[[], Awaitable[T]]) -> asyncio.Task[T | None]:
        self._token += 1
        if self.pending:
            self._task.cancel()
        task = asyncio.create_task(self._run(self._token, fn), name=f"debounce-{self._token}")
        self._task = task
        return task

    def cancel(self) -> None:
        self._token += 1
        if self.pending:
            self._task.cancel()
        self._task = None

    async def _run(self, token: int, fn: Callable[[], Awaitable[T]]) -> T | None:
        await asyncio.sleep(self.delay_s)
        if token != self._token:
            return None
        result = await fn()
        if token != self._token:
            logger.debug("Debounced result %d superseded by %d", token, self._token)
            return None
        return result

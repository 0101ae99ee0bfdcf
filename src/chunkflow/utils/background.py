"""Fire-and-forget saves whose failures are logged, never raised."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

SaveFactory = Callable[[], Awaitable[None]]


class BackgroundSaver:
    """Runs save coroutines in the background, one after another.

    Inside a running event loop each save becomes a task that starts once
    the previous save has finished, so saves land in the order they were
    scheduled and the last snapshot is the one left on disk. Outside a
    loop, the latest save is kept and run by ``flush()``.
    """

    def __init__(self, label: str) -> None:
        self.label = label
        self._tasks: set[asyncio.Task] = set()
        self._last: asyncio.Task | None = None
        self._deferred: SaveFactory | None = None

    @property
    def pending(self) -> int:
        return len(self._tasks) + (1 if self._deferred is not None else 0)

    def schedule(self, factory: SaveFactory) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._deferred = factory
            return

        task = loop.create_task(self._run_after(self._last, factory))
        self._last = task
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    async def _run_after(self, previous: asyncio.Task | None, factory: SaveFactory) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        await factory()

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task is self._last:
            self._last = None
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Saving {self.label} failed: {error}")

    async def flush(self) -> None:
        """Wait for every scheduled save to finish."""
        if self._deferred is not None:
            factory, self._deferred = self._deferred, None
            self.schedule(factory)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger("uvicorn.error")


class BackgroundTaskGroup:
    """Fire-and-forget tasks that stay referenced until done.

    Tasks spawned with a ``key`` are deduplicated: while one is in flight,
    further spawns under the same key are dropped.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._tasks: set[asyncio.Task[Any]] = set()
        self._keyed: dict[str, asyncio.Task[Any]] = {}

    def spawn(
        self,
        coro: Coroutine[Any, Any, Any],
        *,
        key: str | None = None,
    ) -> asyncio.Task[Any] | None:
        if key is not None:
            running = self._keyed.get(key)
            if running is not None and not running.done():
                coro.close()
                return None
        task = asyncio.create_task(coro, name=f"{self._name}:{key or 'task'}")
        self._tasks.add(task)
        if key is not None:
            self._keyed[key] = task
        task.add_done_callback(lambda done: self._on_done(done, key))
        return task

    def in_flight(self, key: str) -> bool:
        task = self._keyed.get(key)
        return task is not None and not task.done()

    def __len__(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.drain()

    def _on_done(self, task: asyncio.Task[Any], key: str | None) -> None:
        self._tasks.discard(task)
        if key is not None and self._keyed.get(key) is task:
            del self._keyed[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "background_task_failed group=%s key=%s error=%r",
                self._name,
                key,
                exc,
            )

"""Request deduplication (stampede protection) for concurrent reads."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestDeduplicator:
    """Collapse concurrent calls for the same key into one in-flight load.

    The load runs as a task owned by the deduplicator, so cancelling any one
    caller (the first included) never cancels it: the others still receive
    its result or exception. The key is dropped as soon as the load settles,
    so a call made after settlement starts a fresh load.
    """

    def __init__(self) -> None:
        self._in_flight: dict[Hashable, asyncio.Future[Any]] = {}

    def __contains__(self, key: Hashable) -> bool:
        return key in self._in_flight

    def __len__(self) -> int:
        return len(self._in_flight)

    async def fetch(self, key: Hashable, loader: Callable[[], Awaitable[T]]) -> T:
        task = self._in_flight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(loader())
            self._in_flight[key] = task
            task.add_done_callback(lambda done: self._settle(key, done))
        else:
            logger.debug("Joining in-flight request for %r", key)

        # Shield so a cancelled caller doesn't cancel the shared load
        result: T = await asyncio.shield(task)
        return result

    def _settle(self, key: Hashable, task: asyncio.Future[Any]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        # Mark retrieved; callers still receive it
        if not task.cancelled():
            task.exception()

"""
Per-key request coalescing.

The first caller for a key starts the work as a task; callers that arrive
while it is running await the same task instead of starting their own.
The key is forgotten as soon as the task finishes.
"""

from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Callable, Hashable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight:
    """Coalesces concurrent calls that share a key into one computation."""

    def __init__(self, name: str = "single-flight"):
        self.name = name
        self._inflight: dict[Hashable, asyncio.Task] = {}

    async def do(self, key: Hashable, func: Callable[[], Awaitable[T]]) -> T:
        """Run func for key, or join the run already in progress."""
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(func())
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            logger.debug(f"{self.name}: joining in-flight call for {key!r}")

        # A cancelled caller must not cancel the work other callers are awaiting
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def in_flight(self, key: Hashable) -> bool:
        """True while a computation for key is running."""
        return key in self._inflight

    def __len__(self) -> int:
        return len(self._inflight)

"""Bounded worker pools for message preparation."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


class WorkerPool:
    """Caps how many coroutines of one kind run at once.

    Media preparation and text composition get separate pools so slow
    downloads never hold up text.
    """

    def __init__(self, name: str, size: int):
        self.name = name
        self.size = max(1, size)
        self._semaphore = asyncio.Semaphore(self.size)
        self.waiting = 0
        self.running = 0
        self.completed = 0
        self.failed = 0

    async def run(self, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        self.waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self.waiting -= 1
        self.running += 1
        try:
            result = await fn(*args)
        except Exception:
            self.failed += 1
            raise
        finally:
            self.running -= 1
            self._semaphore.release()
        self.completed += 1
        return result

    @property
    def depth(self) -> int:
        return self.waiting + self.running

    def stats(self) -> dict[str, int]:
        return {
            "size": self.size,
            "depth": self.depth,
            "waiting": self.waiting,
            "running": self.running,
            "completed": self.completed,
            "failed": self.failed,
        }

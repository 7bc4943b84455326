"""
latest_viewport.py — Single-slot mailbox for viewport updates.

A map being dragged can send viewports faster than we aggregate them. Only
the newest one matters: put() overwrites whatever is still unread, and get()
always hands out the most recent request.
"""

import asyncio
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class LatestViewport(Generic[T]):
    def __init__(self):
        self._item: Optional[T] = None
        self._ready = asyncio.Event()
        self.dropped = 0

    def put(self, item: T) -> None:
        if self._ready.is_set():
            self.dropped += 1
        self._item = item
        self._ready.set()

    def has_pending(self) -> bool:
        """True when a request newer than the last get() is waiting."""
        return self._ready.is_set()

    async def get(self) -> T:
        await self._ready.wait()
        item = self._item
        self._item = None
        self._ready.clear()
        return item

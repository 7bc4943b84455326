"""
test_latest_viewport.py — Single-slot mailbox used by the map stream.
"""

import asyncio

from pothole_map.services.latest_viewport import LatestViewport


class TestLatestViewport:
    async def test_get_returns_newest(self):
        box = LatestViewport()
        box.put(1)
        box.put(2)
        box.put(3)

        assert await box.get() == 3
        assert box.dropped == 2
        assert not box.has_pending()

    async def test_get_waits_for_put(self):
        box = LatestViewport()
        waiter = asyncio.create_task(box.get())
        await asyncio.sleep(0)
        assert not waiter.done()

        box.put("viewport")

        assert await asyncio.wait_for(waiter, timeout=1) == "viewport"

    async def test_pending_after_put_while_busy(self):
        box = LatestViewport()
        box.put("a")
        await box.get()
        assert not box.has_pending()

        box.put("b")
        assert box.has_pending()
        assert box.dropped == 0

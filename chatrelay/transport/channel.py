"""Per-socket frame channel.

Bounded FIFO with a blocking ``get``. Once the channel is closed and drained,
``get`` returns None instead of waiting forever, so a reader parked on a dead
socket is always released.
"""

from __future__ import annotations

import asyncio


class FrameChannel:
    def __init__(self, maxsize: int = 1024):
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def qsize(self) -> int:
        return self._queue.qsize()

    async def put(self, frame: str) -> None:
        if self.closed:
            return
        await self._queue.put(frame)

    def close(self) -> None:
        self._closed.set()

    async def get(self) -> str | None:
        if not self._queue.empty():
            return self._queue.get_nowait()
        if self.closed:
            return None

        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closer.cancel()
            if not getter.done():
                getter.cancel()

        if getter.done() and not getter.cancelled():
            return getter.result()
        if not self._queue.empty():
            return self._queue.get_nowait()
        return None

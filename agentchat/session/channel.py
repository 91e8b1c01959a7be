"""
Bounded byte channel between a streaming turn and its HTTP response.

The turn task writes, the response body iterates.  Writes block while the
buffer is full, so a slow reader stalls the upstream read instead of growing
memory.  Once the reader goes away the channel is *detached*: pending and
later writes are dropped so the turn can still finish its bookkeeping.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

logger = logging.getLogger(__name__)

_EOF = None


class StreamChannel:
    def __init__(self, maxsize: int = 16) -> None:
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=max(1, maxsize))
        self._closed = False
        self._detached = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def detached(self) -> bool:
        return self._detached

    async def write(self, text: str) -> None:
        if self._closed:
            raise RuntimeError("write to closed StreamChannel")
        if self._detached or not text:
            return
        await self._queue.put(text.encode("utf-8"))

    async def close(self) -> None:
        """Signal end of stream.  Idempotent; only the first call counts."""
        if self._closed:
            return
        self._closed = True
        if not self._detached:
            await self._queue.put(_EOF)

    def detach(self) -> None:
        """Reader is gone: drop buffered data and unblock the writer."""
        if self._detached:
            return
        self._detached = True
        while not self._queue.empty():
            self._queue.get_nowait()
        logger.info("Stream reader detached; remaining chunks will be dropped")

    async def __aiter__(self) -> AsyncIterator[bytes]:
        try:
            while True:
                item = await self._queue.get()
                if item is _EOF:
                    return
                yield item
        finally:
            if not self._closed:
                self.detach()

from __future__ import annotations

import asyncio
from typing import AsyncIterator

from searchrelay.config import settings
from searchrelay.errors import DeliveryWriteError


class QueueTransport:
    """Listener transport backed by a bounded queue drained by the HTTP response.

    A full queue means the client is not reading; the write fails and the
    hub drops the listener.
    """

    _CLOSED = object()

    def __init__(self, maxsize: int | None = None):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize or settings.listener_queue_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise DeliveryWriteError("Listener transport is closed")
        try:
            self._queue.put_nowait(data)
        except asyncio.QueueFull as e:
            raise DeliveryWriteError("Listener is not keeping up") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(self._CLOSED)

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._drain()

    async def _drain(self) -> AsyncIterator[bytes]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item

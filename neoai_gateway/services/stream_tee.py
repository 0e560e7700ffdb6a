"""Fan a single async byte stream out to independently paced readers."""

import asyncio
from collections.abc import AsyncIterator

_END = object()


class StreamTee:
    """Read ``source`` once and hand every chunk to each reader, in order.

    ``pump()`` is the only coroutine that touches the source.  Each reader
    has its own unbounded queue, so a slow reader never holds back the
    others or the upstream.  A reader that stops early is detached and
    receives nothing further.  When the source ends or fails every queue gets
    an end marker; ``error`` exposes the failure afterwards.
    """

    def __init__(self, source: AsyncIterator[bytes], consumers: int = 2) -> None:
        if consumers < 1:
            raise ValueError("StreamTee needs at least one consumer")
        self._source = source
        self._queues: list[asyncio.Queue[object]] = [asyncio.Queue() for _ in range(consumers)]
        self._detached = [False] * consumers
        self.error: BaseException | None = None
        self.chunk_count = 0

    def _broadcast(self, item: object) -> None:
        for index, queue in enumerate(self._queues):
            if not self._detached[index]:
                queue.put_nowait(item)

    async def pump(self) -> None:
        try:
            async for chunk in self._source:
                self.chunk_count += 1
                self._broadcast(chunk)
        except Exception as exc:
            self.error = exc
        finally:
            self._broadcast(_END)

    def detach(self, index: int) -> None:
        self._detached[index] = True
        queue = self._queues[index]
        while not queue.empty():
            queue.get_nowait()

    async def reader(self, index: int) -> AsyncIterator[bytes]:
        queue = self._queues[index]
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    return
                yield item  # type: ignore[misc]
        finally:
            self.detach(index)

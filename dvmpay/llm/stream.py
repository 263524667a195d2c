"""
ChunkStream: a cancellable, ordered, pull-based sequence of TextChunk with a
single error channel.

Producers (relay callbacks, HTTP readers) push into a bounded asyncio.Queue
with emit()/finish()/fail(); the consumer pulls with `async for`. The first
pull runs the optional `start` coroutine, so nothing touches the network
until someone reads.

    stream = model.stream_text("hi")
    async for chunk in stream:
        ...
    stream.cancel()   # synchronous, idempotent

After cancel() or any terminal item, nothing else is delivered: later
emit() calls return False and pending reads end.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from dvmpay.errors import NetworkError
from dvmpay.schema import TextChunk

logger = logging.getLogger(__name__)

DEFAULT_MAX_BUFFER = 256

_CHUNK = "chunk"
_END = "end"
_ERROR = "error"
_WAKE = "wake"


class ChunkStream:
    def __init__(
        self,
        start: Optional[Callable[["ChunkStream"], Awaitable[None]]] = None,
        max_buffer: int = DEFAULT_MAX_BUFFER,
    ):
        self._start = start
        self._max_buffer = max_buffer
        # One spare slot so the terminal item always fits.
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_buffer + 1)
        self._started = False
        self._closed = False
        self._cancelled = False
        self._exhausted = False
        self._on_close: List[Callable[[], None]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def add_close_callback(self, fn: Callable[[], None]) -> None:
        """Run fn exactly once when the stream ends by finish, fail or cancel."""
        if self._closed:
            fn()
        else:
            self._on_close.append(fn)

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        callbacks, self._on_close = self._on_close, []
        for fn in callbacks:
            fn()

    def emit(self, chunk: TextChunk) -> bool:
        if self._closed:
            return False
        if self._queue.qsize() >= self._max_buffer:
            self.fail(NetworkError(f"Consumer fell behind: more than {self._max_buffer} chunks buffered"))
            return False
        self._queue.put_nowait((_CHUNK, chunk))
        return True

    def finish(self) -> None:
        if self._closed:
            return
        self._queue.put_nowait((_END, None))
        self._close()

    def fail(self, error: BaseException) -> None:
        if self._closed:
            return
        self._queue.put_nowait((_ERROR, error))
        self._close()

    def cancel(self) -> None:
        if self._cancelled or self._exhausted:
            return
        self._cancelled = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait((_WAKE, None))
        self._close()

    async def aclose(self) -> None:
        self.cancel()

    def __aiter__(self) -> "ChunkStream":
        return self

    async def __anext__(self) -> TextChunk:
        if self._exhausted or self._cancelled:
            raise StopAsyncIteration
        if not self._started:
            self._started = True
            if self._start is not None:
                try:
                    await self._start(self)
                except BaseException:
                    self._exhausted = True
                    self._close()
                    raise
        tag, payload = await self._queue.get()
        if self._cancelled:
            raise StopAsyncIteration
        if tag == _CHUNK:
            return payload
        self._exhausted = True
        if tag == _ERROR:
            raise payload
        raise StopAsyncIteration

    async def __aenter__(self) -> "ChunkStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.cancel()


async def collect_text(stream: ChunkStream) -> str:
    """
    Drain a stream into the generated text. A final chunk (the provider's
    authoritative result) replaces anything streamed before it; info chunks
    are skipped.
    """
    parts: List[str] = []
    async with stream:
        async for chunk in stream:
            if chunk.is_info:
                continue
            if chunk.final:
                parts = [chunk.text]
            else:
                parts.append(chunk.text)
    return "".join(parts)


__all__ = ["ChunkStream", "DEFAULT_MAX_BUFFER", "collect_text"]

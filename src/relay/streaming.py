"""Bridge between an upstream chunk sequence and an outbound SSE byte stream.

The upstream sequence is consumed by a detached task that writes framed
records into a bounded :class:`StreamChannel`; the response body only ever
reads from the channel. Consumption and byte production therefore run as
independent tasks and the response transport never drives the upstream loop.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterable, Callable, Mapping
from typing import Any

from .errors import ChannelClosedError
from .normalize import ChunkTransform

logger = logging.getLogger(__name__)

SSE_DONE = b"data: [DONE]\n\n"
SSE_HEADERS: dict[str, str] = {
    "content-type": "text/event-stream; charset=utf-8",
    "cache-control": "no-cache",
    "connection": "keep-alive",
}


def encode_sse(payload: Mapping[str, Any]) -> bytes:
    data_text = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"data: {data_text}\n\n".encode("utf-8")


class StreamChannel:
    """Bounded single-reader, single-writer byte channel.

    ``write`` waits while ``maxsize`` records are pending, which gives the
    writer backpressure from a slow reader. ``abort`` makes the reader raise
    instead of finishing cleanly. Once the reader detaches, writes raise
    :class:`ChannelClosedError`.
    """

    def __init__(self, maxsize: int = 1) -> None:
        self._queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self._writer_closed = False
        self._reader_detached = False

    @property
    def reader_detached(self) -> bool:
        return self._reader_detached

    @property
    def writer_closed(self) -> bool:
        return self._writer_closed

    def _ensure_writable(self) -> None:
        if self._reader_detached:
            raise ChannelClosedError("stream reader went away")
        if self._writer_closed:
            raise ChannelClosedError("stream channel already closed")

    async def write(self, data: bytes) -> None:
        self._ensure_writable()
        await self._queue.put(("data", data))

    async def close(self) -> None:
        self._ensure_writable()
        self._writer_closed = True
        await self._queue.put(("close", None))

    async def abort(self, exc: BaseException) -> None:
        if self._writer_closed or self._reader_detached:
            return
        self._writer_closed = True
        await self._queue.put(("abort", exc))

    async def read(self) -> bytes | None:
        """Next record, ``None`` after a clean close; re-raises an abort."""
        kind, payload = await self._queue.get()
        if kind == "data":
            return payload
        if kind == "close":
            return None
        raise payload

    def detach_reader(self) -> None:
        self._reader_detached = True
        # unblock a writer parked on a full queue so it sees the detach
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break

    def readable(self, on_detach: Callable[[], None] | None = None) -> ChannelReader:
        return ChannelReader(self, on_detach)


class ChannelReader:
    """Async iterator over a channel's records.

    The reader detaches from the channel when it is exhausted, when a read
    fails or is cancelled, and on :meth:`aclose`, including an ``aclose``
    before the first read.
    """

    def __init__(
        self, channel: StreamChannel, on_detach: Callable[[], None] | None = None
    ) -> None:
        self._channel = channel
        self._on_detach = on_detach
        self._detached = False

    def __aiter__(self) -> ChannelReader:
        return self

    async def __anext__(self) -> bytes:
        if self._detached:
            raise StopAsyncIteration
        try:
            data = await self._channel.read()
        except BaseException:
            self._detach()
            raise
        if data is None:
            self._detach()
            raise StopAsyncIteration
        return data

    async def aclose(self) -> None:
        self._detach()

    def _detach(self) -> None:
        if self._detached:
            return
        self._detached = True
        self._channel.detach_reader()
        if self._on_detach is not None:
            self._on_detach()


async def _close_source(source: AsyncIterable[Any]) -> None:
    aclose = getattr(source, "aclose", None)
    if callable(aclose):
        await aclose()


class StreamBridge:
    def __init__(
        self,
        source: AsyncIterable[Mapping[str, Any]],
        transform: ChunkTransform | None = None,
        *,
        channel: StreamChannel | None = None,
    ) -> None:
        self._source = source
        self._transform = transform
        self.channel = channel or StreamChannel()
        self.done: asyncio.Future[BaseException | None] = (
            asyncio.get_running_loop().create_future()
        )
        self._task: asyncio.Task[None] | None = None
        self._running = False

    def start(self) -> ChannelReader:
        """Spawn the pump task and hand back the readable end."""
        if self._task is not None:
            raise RuntimeError("stream bridge already started")
        self._task = asyncio.create_task(self._pump())
        return self.channel.readable(on_detach=self._cancel_pump)

    def _cancel_pump(self) -> None:
        # a closed or aborted writer is already winding down on its own
        if self.channel.writer_closed:
            return
        # a pump that has not run yet sees the detached reader on entry
        if not self._running:
            return
        task = self._task
        if task is not None and not task.done():
            task.cancel()

    def _finish(self, error: BaseException | None) -> None:
        if not self.done.done():
            self.done.set_result(error)

    async def _pump(self) -> None:
        self._running = True
        error: BaseException | None = None
        try:
            if self.channel.reader_detached:
                raise ChannelClosedError("stream reader went away")
            async for chunk in self._source:
                out = self._transform(chunk) if self._transform is not None else chunk
                await self.channel.write(encode_sse(out))
            await self.channel.write(SSE_DONE)
            await self.channel.close()
        except asyncio.CancelledError:
            error = ChannelClosedError("stream reader went away")
            raise
        except ChannelClosedError as exc:
            error = exc
        except Exception as exc:
            error = exc
            logger.debug("stream.upstream_error detail=%s", exc)
            await self.channel.abort(exc)
        finally:
            try:
                await _close_source(self._source)
            except Exception as exc:
                logger.warning("stream.source_close_failed detail=%s", exc)
            finally:
                self._finish(error)

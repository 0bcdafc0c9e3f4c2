"""Server-sent event framing and per-stream delivery queue."""

import asyncio
import json
import logging
from typing import AsyncIterator, Awaitable, Union

from pydantic import BaseModel

from podlearn.schemas.schemas import ChunkEvent, ErrorEvent, SpeakerEvent

logger = logging.getLogger(__name__)

EVENT_CHUNK = "chunk"
EVENT_SPEAKER = "speaker"
EVENT_ERROR = "error"
EVENT_COMPLETE = "complete"

_CLOSED = object()


class StreamClosedError(Exception):
    """Raised when writing to an emitter whose client has gone away."""


def format_event(event: str, payload: Union[BaseModel, dict]) -> str:
    """Frame one event as ``event: <name>\\ndata: <compact json>\\n\\n``."""
    if isinstance(payload, BaseModel):
        data = payload.model_dump_json()
    else:
        data = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return f"event: {event}\ndata: {data}\n\n"


class SSEEmitter:
    """
    Ordered, single-consumer event sink for one client stream.

    Producers call ``send``; the HTTP response drains ``frames()``. Frames
    are delivered in the order they were sent. Once closed, further sends
    raise ``StreamClosedError``.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: str, payload: Union[BaseModel, dict]) -> None:
        if self._closed:
            raise StreamClosedError(f"stream closed, dropped {event} event")
        await self._queue.put(format_event(event, payload))

    async def send_chunk(self, chunk: ChunkEvent) -> None:
        await self.send(EVENT_CHUNK, chunk)

    async def send_speaker(self, index: int, name: str) -> None:
        await self.send(EVENT_SPEAKER, SpeakerEvent(index=index, name=name))

    async def send_error(self, message: str) -> None:
        # Single line so the frame stays one data field
        await self.send(EVENT_ERROR, ErrorEvent(error=" ".join(message.split())))

    async def send_complete(self) -> None:
        await self.send(EVENT_COMPLETE, {})

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    async def frames(self) -> AsyncIterator[str]:
        while True:
            frame = await self._queue.get()
            if frame is _CLOSED:
                return
            yield frame


async def stream_events(emitter: SSEEmitter, producer: Awaitable) -> AsyncIterator[str]:
    """
    Run ``producer`` as a task and yield the frames it emits.

    The stream ends when the producer finishes. If the consumer stops early
    (client disconnect), the producer task is cancelled.
    """
    task = asyncio.ensure_future(producer)

    def _on_done(t: asyncio.Task) -> None:
        emitter.close()
        if not t.cancelled() and t.exception() is not None:
            logger.error(f"Event producer failed: {t.exception()!r}")

    task.add_done_callback(_on_done)
    try:
        async for frame in emitter.frames():
            yield frame
    finally:
        emitter.close()
        if not task.done():
            logger.info("Client disconnected, cancelling event producer")
            task.cancel()

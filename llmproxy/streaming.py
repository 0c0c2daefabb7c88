"""Relay provider response streams to the caller as OpenAI-compatible server-sent events."""

import asyncio
import codecs
import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterable, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 15.0
# Frames buffered ahead of a slow client before the reader waits
QUEUE_SIZE = 16
HEARTBEAT = b": heartbeat\n\n"
DONE = b"data: [DONE]\n\n"

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_encode(obj: Dict[str, Any]) -> bytes:
    return f"data: {json.dumps(obj, ensure_ascii=False)}\n\n".encode("utf-8")


async def iter_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Split a decoded byte stream into text lines, tolerating UTF-8 sequences cut across chunks."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    async for chunk in chunks:
        pending += decoder.decode(chunk)
        *lines, pending = pending.split("\n")
        for line in lines:
            yield line.rstrip("\r")
    pending += decoder.decode(b"", final=True)
    if pending:
        yield pending.rstrip("\r")


async def iter_line_frames(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """One frame per non-blank line (NDJSON, or SSE read line by line)."""
    async for line in lines:
        if not line.strip():
            continue
        yield line.strip()


async def iter_sse_frames(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """
    One frame per complete SSE event: its ``data:`` lines joined with newlines.

    Comment lines (leading ':') and other fields are ignored.
    """
    data: List[str] = []
    async for line in lines:
        if not line.strip():
            if data:
                yield "\n".join(data)
                data = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field == "data":
            data.append(value[1:] if value.startswith(" ") else value)
    if data:
        yield "\n".join(data)


@dataclass
class StreamEvent:
    """A translated frame: ``chunk`` is sent (when present); ``final`` ends the relay."""
    chunk: Optional[Dict[str, Any]] = None
    final: bool = False


class StreamTranslator(Protocol):
    def translate(self, frame: str) -> Optional[StreamEvent]:
        """Translate one provider frame; ``None`` skips it. Raises ValueError on malformed frames."""
        ...


class RelayState(enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


_CLOSED = object()


class StreamRelay:
    """
    Turns a provider's frame stream into an SSE byte stream.

    Two tasks feed one queue: the reader translates frames, the heartbeat task
    enqueues a comment every ``heartbeat_interval`` seconds. ``events()`` drains
    the queue, so every write to the client happens in the consuming task. When
    the consumer stops (finish, EOF, error or cancellation on client
    disconnect) both tasks are cancelled and awaited before the relay is CLOSED,
    and ``on_close`` releases the upstream connection.
    """

    def __init__(
        self,
        frames: AsyncIterable[str],
        translator: StreamTranslator,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        request_id: str = "-",
        queue_size: int = QUEUE_SIZE,
    ):
        self.frames = frames
        self.translator = translator
        self.on_close = on_close
        self.heartbeat_interval = heartbeat_interval
        self.request_id = request_id
        self.queue_size = queue_size
        self.state = RelayState.OPEN
        self._closed = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    async def _read_loop(self, queue: asyncio.Queue) -> None:
        try:
            async for frame in self.frames:
                try:
                    event = self.translator.translate(frame)
                except ValueError as e:
                    logger.warning(f"[{self.request_id}] Skipping malformed stream frame: {e}")
                    continue
                if event is None:
                    continue
                if event.chunk is not None:
                    await queue.put(sse_encode(event.chunk))
                if event.final:
                    logger.debug(f"[{self.request_id}] Upstream signalled completion")
                    break
            else:
                logger.debug(f"[{self.request_id}] Upstream stream reached EOF")
            # No heartbeat may follow the terminator
            self._closed.set()
            await queue.put(DONE)
        except asyncio.CancelledError:
            logger.debug(f"[{self.request_id}] Stream reader cancelled")
            raise
        except Exception as e:
            # Headers are already sent, nothing left to do but stop
            logger.warning(f"[{self.request_id}] Error reading upstream stream: {type(e).__name__}: {e}")
        finally:
            self._closed.set()
            if self.on_close is not None:
                try:
                    await self.on_close()
                except Exception as e:
                    logger.debug(f"[{self.request_id}] Error closing upstream stream: {e}")
        # Only reached when not cancelled, so the consumer is still draining
        await queue.put(_CLOSED)

    async def _heartbeat_loop(self, queue: asyncio.Queue) -> None:
        while not self._closed.is_set():
            try:
                await asyncio.wait_for(self._closed.wait(), timeout=self.heartbeat_interval)
            except asyncio.TimeoutError:
                await queue.put(HEARTBEAT)

    async def events(self) -> AsyncGenerator[bytes, None]:
        # Bounded, so a slow client also slows the upstream read
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        reader = asyncio.create_task(self._read_loop(queue))
        heartbeat = asyncio.create_task(self._heartbeat_loop(queue))
        self._tasks = [reader, heartbeat]
        finished = False
        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    break
                if finished:
                    # A heartbeat that was already waiting for queue space
                    continue
                finished = item == DONE
                yield item
        except (GeneratorExit, asyncio.CancelledError):
            logger.info(f"[{self.request_id}] Client disconnected, closing stream")
            raise
        finally:
            self._closed.set()
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self.state = RelayState.CLOSED
            logger.debug(f"[{self.request_id}] Stream relay closed")

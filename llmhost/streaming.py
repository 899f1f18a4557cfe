"""
Streaming decode pipeline: raw HTTP chunks -> NDJSON records -> typed events.

A StreamSession runs two hops, each a bounded queue with one producer and
one consumer task:

    response.aiter_bytes() --[chunk reader]--> chunk queue
    chunk queue            --[decoder]-------> event queue --> caller

Record boundaries are independent of chunk boundaries. A record is emitted
only once its terminating newline has arrived. Every session ends with
exactly one StopEvent, whether the stream finished, the service sent garbage,
or the caller aborted.

Cancellation is cooperative: abort() sets a flag that both tasks check at the
top of every iteration. Pending reads and queue puts are raced against the
flag so an abort never waits for the next chunk to arrive.
"""

import asyncio
import codecs
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Generic, Optional, TypeVar, Union

import httpx
from pydantic import ValidationError

from llmhost.chat import ChatResponse
from llmhost.config import CHUNK_QUEUE_SIZE, EVENT_QUEUE_SIZE
from llmhost.errors import InternalError, LLMHostError, SerializationError, http_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

# NDJSON records are always delimited by U+000A
DELIMITER = "\n"


# ─────────────────────────────────────────────────────────────────────
# EVENTS
# ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MessageEvent(Generic[T]):
    """One decoded record."""
    data: T

    type = "message"
    is_stop = False

    def to_dict(self) -> dict:
        data = self.data.model_dump(mode="json") if hasattr(self.data, "model_dump") else self.data
        return {"type": self.type, "data": data}


@dataclass(frozen=True)
class StopEvent:
    """Terminal event of a session."""

    type = "stop"
    is_stop = True

    def to_dict(self) -> dict:
        return {"type": self.type}


PromptEvent = Union[MessageEvent[ChatResponse], StopEvent]

STOP = StopEvent()


# ─────────────────────────────────────────────────────────────────────
# DECODER
# ─────────────────────────────────────────────────────────────────────

class NdJsonDecoder:
    """
    Incremental newline-delimited text splitter.

    Bytes are decoded with a strict incremental UTF-8 decoder, so a
    multi-byte character split across two chunks is reassembled rather
    than rejected. Invalid UTF-8 raises SerializationError.
    """

    def __init__(self):
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="strict")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        """Append a chunk and return every line it completed, in order."""
        try:
            self._buffer += self._utf8.decode(chunk)
        except UnicodeDecodeError as e:
            raise SerializationError(f"Invalid UTF-8 in response stream: {e}") from e

        lines = []
        while True:
            line, sep, rest = self._buffer.partition(DELIMITER)
            if not sep:
                break
            self._buffer = rest
            if line.strip():
                lines.append(line)
        return lines

    def finish(self) -> str:
        """Flush the decoder and return the unterminated remainder (may be empty)."""
        try:
            self._buffer += self._utf8.decode(b"", final=True)
        except UnicodeDecodeError as e:
            raise SerializationError(f"Truncated UTF-8 at end of response stream: {e}") from e
        remainder, self._buffer = self._buffer, ""
        return remainder

    @property
    def pending(self) -> str:
        return self._buffer


# ─────────────────────────────────────────────────────────────────────
# SESSION
# ─────────────────────────────────────────────────────────────────────

_END = object()  # chunk queue sentinel


class StreamSession(Generic[T]):
    """
    Live handle to an in-flight NDJSON response.

    Exposes exactly two operations to callers: take_events() (at most once)
    and abort() (idempotent). The underlying response is always closed by
    the chunk reader, whichever way the session ends.
    """

    def __init__(
        self,
        response: httpx.Response,
        parse: Callable[[str], T],
        is_final: Optional[Callable[[T], bool]] = None,
        label: str = "stream",
    ):
        self._response = response
        self._parse = parse
        self._is_final = is_final
        self._label = label

        self._chunks: asyncio.Queue = asyncio.Queue(maxsize=CHUNK_QUEUE_SIZE)
        self._events: asyncio.Queue = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
        # _abort: the caller cancelled. _halt: the reader must stop (abort or decoder finished)
        self._abort = asyncio.Event()
        self._halt = asyncio.Event()
        self._stopped = False
        self._taken = False
        self._error: Optional[LLMHostError] = None

        self._reader = asyncio.create_task(self._read_chunks(), name=f"{label}-reader")
        self._decoder = asyncio.create_task(self._decode(), name=f"{label}-decoder")

    # ── caller API ─────────────────────────────────────────────────────

    def take_events(self) -> AsyncIterator[Union[MessageEvent[T], StopEvent]]:
        """
        Take the event stream. Can only be taken once.

        The returned iterator yields MessageEvents in arrival order and ends
        after yielding the StopEvent.

        Raises:
            InternalError: If the stream was already taken.
        """
        if self._taken:
            raise InternalError(f"Event stream of {self._label} was already taken")
        self._taken = True
        return self._iter_events()

    def abort(self) -> None:
        """Request cancellation. Safe to call repeatedly or after completion."""
        if self._abort.is_set():
            return
        if not self._stopped:
            logger.debug(f"Aborting {self._label}")
        self._abort.set()
        self._halt.set()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    @property
    def stopped(self) -> bool:
        """True once the StopEvent has been emitted."""
        return self._stopped

    @property
    def error(self) -> Optional[LLMHostError]:
        """Why the stream ended early, or None if it finished or was aborted."""
        return self._error

    @property
    def response(self) -> httpx.Response:
        return self._response

    async def wait_closed(self) -> None:
        """Wait until both pipeline tasks have finished."""
        await asyncio.gather(self._reader, self._decoder, return_exceptions=True)

    async def _iter_events(self) -> AsyncIterator[Union[MessageEvent[T], StopEvent]]:
        while True:
            event = await self._events.get()
            yield event
            if event.is_stop:
                return

    # ── hop 1: chunk reader ────────────────────────────────────────────

    async def _read_chunks(self) -> None:
        chunks = self._response.aiter_bytes().__aiter__()
        try:
            while True:
                if self._halt.is_set():
                    break

                read = asyncio.ensure_future(chunks.__anext__())
                if not await _race(read, self._halt):
                    # Dropping the pending read releases the in-flight request
                    break

                try:
                    chunk = read.result()
                except StopAsyncIteration:
                    break
                except httpx.HTTPError as e:
                    logger.warning(f"{self._label}: transport error while streaming: {e}")
                    self._error = http_error(e, self._label)
                    break

                if not await _race(self._chunks.put(chunk), self._halt):
                    break
        finally:
            await self._response.aclose()
            if not self._halt.is_set():
                await _race(self._chunks.put(_END), self._halt)

    # ── hop 2: decoder ─────────────────────────────────────────────────

    async def _decode(self) -> None:
        decoder = NdJsonDecoder()
        try:
            while True:
                if self._abort.is_set():
                    break

                get = asyncio.ensure_future(self._chunks.get())
                if not await _race(get, self._abort):
                    break

                chunk = get.result()
                if chunk is _END:
                    remainder = decoder.finish()
                    if remainder.strip():
                        logger.warning(
                            f"{self._label}: discarding unterminated record at end of stream: "
                            f"{remainder[:200]!r}"
                        )
                    break

                if not await self._publish(decoder.feed(chunk)):
                    break
        except SerializationError as e:
            logger.warning(f"{self._label}: {e}")
            self._error = e
        finally:
            self._halt.set()
            await self._emit_stop()

    async def _publish(self, lines: list[str]) -> bool:
        """Parse and emit complete lines. Returns False when the session must end."""
        for line in lines:
            try:
                record = self._parse(line)
            except (ValidationError, ValueError) as e:
                logger.warning(f"{self._label}: invalid record from backend: {e}; value: {line[:200]!r}")
                self._error = SerializationError(f"{self._label}: invalid record from backend: {e}")
                return False

            if not await _race(self._events.put(MessageEvent(record)), self._abort):
                return False

            if self._is_final is not None and self._is_final(record):
                return False
        return True

    async def _emit_stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        if await _race(self._events.put(STOP), self._abort):
            return
        # Aborted with nobody draining: make room so the terminal event is never lost
        while self._events.full():
            self._events.get_nowait()
        self._events.put_nowait(STOP)


async def _race(operation: Awaitable, flag: asyncio.Event) -> bool:
    """
    Await an operation unless the flag is set first.

    Returns True if the operation completed. Otherwise it is cancelled and
    False is returned.
    """
    op = asyncio.ensure_future(operation)
    waiter = asyncio.ensure_future(flag.wait())
    try:
        await asyncio.wait({op, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
    if op.done():
        return True
    op.cancel()
    await asyncio.gather(op, return_exceptions=True)
    return False


class CompletionSession(StreamSession[ChatResponse]):
    """StreamSession decoding a chat completion into PromptEvents."""

    def __init__(self, response: httpx.Response, label: str = "completion"):
        super().__init__(
            response,
            parse=ChatResponse.model_validate_json,
            is_final=lambda record: record.done,
            label=label,
        )


async def collect_text(session: StreamSession[ChatResponse]) -> str:
    """Drain a completion session and return the concatenated assistant text."""
    parts = []
    async for event in session.take_events():
        if not event.is_stop:
            parts.append(event.data.message.content)
    return "".join(parts)

"""Progress stream wire protocol.

Each event travels as one ``data: <json>`` line followed by a blank line.
A ``complete`` or ``error`` event ends the stream; nothing after it counts.
The consuming side enforces an idle timeout that is reset by every chunk
received, whether or not the chunk finished an event.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from contextlib import aclosing
from typing import Any, AsyncIterable, AsyncIterator, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from .constants import BATCH_IDLE_TIMEOUT_SECONDS, STREAM_MARKER
from .contracts import ProgressEvent
from .errors import (
    RemoteStreamError,
    StreamConnectionError,
    StreamTimeoutError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_MARKER = STREAM_MARKER.rstrip()
MEDIA_TYPE = "text/event-stream"


def encode_event(event: ProgressEvent) -> bytes:
    """Serialize one event as a self-contained stream frame."""
    payload = json.dumps(event.to_wire(), ensure_ascii=False, separators=(",", ":"))
    return f"{STREAM_MARKER}{payload}\n\n".encode("utf-8")


async def encode_stream(events: AsyncIterable[ProgressEvent]) -> AsyncIterator[bytes]:
    """Encode ``events`` up to and including the first terminal event."""
    async for event in events:
        yield encode_event(event)
        if event.is_terminal:
            break


class StreamDecoder:
    """Incrementally turn received chunks into events.

    Chunks may split lines and multi-byte characters anywhere. Lines that are
    not data frames, and data frames that do not parse, are skipped.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[ProgressEvent]:
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return [event for event in map(self._parse_line, lines) if event is not None]

    def close(self) -> List[ProgressEvent]:
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        event = self._parse_line(rest)
        return [event] if event is not None else []

    @staticmethod
    def _parse_line(line: str) -> Optional[ProgressEvent]:
        line = line.rstrip("\r")
        if not line.startswith(_MARKER):
            return None
        raw = line[len(_MARKER):].strip()
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return ProgressEvent.from_wire(data)
        except (json.JSONDecodeError, PydanticValidationError, TypeError) as e:
            logger.warning(f"Skipping unparseable progress line: {e}")
            return None


async def consume_stream(
    chunks: AsyncIterable[bytes], idle_timeout: float = BATCH_IDLE_TIMEOUT_SECONDS
) -> AsyncIterator[ProgressEvent]:
    """Yield events from ``chunks`` until a terminal event arrives.

    Raises:
        StreamTimeoutError: No chunk arrived within ``idle_timeout`` seconds.
        RemoteStreamError: The server sent a ``type: error`` event (it is
            yielded first).
        StreamConnectionError: The stream ended without a terminal event.
    """
    decoder = StreamDecoder()
    iterator = chunks.__aiter__()
    try:
        while True:
            try:
                chunk = await asyncio.wait_for(iterator.__anext__(), idle_timeout)
            except StopAsyncIteration:
                break
            except asyncio.TimeoutError:
                raise StreamTimeoutError(idle_timeout) from None

            for event in decoder.feed(chunk):
                yield event
                if event.type == "error":
                    raise RemoteStreamError(
                        event.message or "The server reported an error", event.metadata
                    )
                if event.is_terminal:
                    return

        for event in decoder.close():
            yield event
            if event.type == "error":
                raise RemoteStreamError(
                    event.message or "The server reported an error", event.metadata
                )
            if event.is_terminal:
                return
        raise StreamConnectionError(
            "The connection closed before the operation finished. Check your connection and try again."
        )
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


class ProgressStreamClient:
    """Client side of the bulk progress streams."""

    def __init__(
        self,
        base_url: str,
        idle_timeout: float = BATCH_IDLE_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self._idle_timeout = idle_timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(10.0, read=None),
        )

    async def __aenter__(self) -> "ProgressStreamClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def stream(
        self,
        path: str,
        payload: Dict[str, Any],
        idle_timeout: Optional[float] = None,
    ) -> AsyncIterator[ProgressEvent]:
        """POST ``payload`` to ``path`` and yield the streamed events."""
        timeout = idle_timeout or self._idle_timeout
        try:
            async with self._client.stream("POST", path, json=payload) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    message = f"HTTP {response.status_code}: {body or response.reason_phrase}"
                    if response.status_code < 500:
                        raise ValidationError(message)
                    raise StreamConnectionError(message)
                async for event in consume_stream(response.aiter_bytes(), timeout):
                    yield event
        except httpx.TransportError as e:
            raise StreamConnectionError(
                f"Connection error ({e}). Check your internet connection."
            ) from e

    async def collect(
        self,
        path: str,
        payload: Dict[str, Any],
        on_event: Optional[Callable[[ProgressEvent], None]] = None,
        idle_timeout: Optional[float] = None,
    ) -> ProgressEvent:
        """Drain a stream and return its ``complete`` event."""
        async with aclosing(self.stream(path, payload, idle_timeout)) as events:
            async for event in events:
                if on_event is not None:
                    on_event(event)
                if event.type == "complete":
                    return event
        raise StreamConnectionError("The stream ended without a completion event")

    async def enrich(
        self,
        item_ids: List[str],
        on_event: Optional[Callable[[ProgressEvent], None]] = None,
    ) -> ProgressEvent:
        return await self.collect("/bulk/enrich", {"itemIds": item_ids}, on_event)

    async def finalize(
        self,
        answers: List[Dict[str, str]],
        on_event: Optional[Callable[[ProgressEvent], None]] = None,
    ) -> ProgressEvent:
        return await self.collect("/bulk/finalize", {"answers": answers}, on_event)

"""Reassembly of server-sent event streams into protocol frames.

The upstream delivers line-delimited SSE records, but the network hands
them over in arbitrarily sized chunks: a chunk may hold several records,
one, or a fraction of one, and may even split a multi-byte character.
Some proxies go further and split a single JSON payload across two
``data:`` records. The ChunkReassembler absorbs both kinds of
fragmentation and yields complete StreamFrames in arrival order.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable
from typing import Any

from chatrelay.errors import MalformedFrameError
from chatrelay.schemas.streaming import DeltaContent, Done, ErrorFrame, StreamFrame

logger = logging.getLogger(__name__)

# Literal payload that ends an OpenAI-style stream
TERMINAL_MARKER = "[DONE]"

# SSE fields that carry no payload for us
_IGNORED_FIELDS = frozenset({"event", "id", "retry"})


class ChunkReassembler:
    """Stateful decoder for one upstream stream.

    feed() accepts raw chunks and returns the frames they complete.
    finish() flushes whatever the transport left behind. Once a Done or
    ErrorFrame has been produced, or a MalformedFrameError raised, the
    reassembler is terminated and produces nothing further.

    A reassembler must not be reused across streams; create one per
    request (iter_frames does this for you).
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._line_buffer = ""
        self._pending_fragment: str | None = None
        self._deferred_error: MalformedFrameError | None = None
        self._terminated = False

    @property
    def finished(self) -> bool:
        """True once the stream has produced its last frame."""
        return self._terminated

    def feed(self, chunk: bytes | str) -> list[StreamFrame]:
        """Consume one transport chunk and return the frames it completes.

        A MalformedFrameError found after other frames in the same chunk
        is held back so those frames are still delivered; it is raised by
        the next feed() or finish() call instead. This keeps the frame
        sequence independent of where the transport split the bytes.

        Raises:
            MalformedFrameError: If a payload cannot be decoded even after
                being joined with the payload that follows it.
        """
        self._raise_deferred()
        if self._terminated:
            return []

        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._line_buffer += text
        *lines, self._line_buffer = self._line_buffer.split("\n")
        return self._process_lines(lines)

    def finish(self) -> list[StreamFrame]:
        """Flush the trailing partial record at transport end.

        An unterminated last line is processed as a complete record. A
        payload fragment still waiting for its continuation is dropped
        with a warning, since the transport, not the payload, ended the
        stream.

        Safe to call repeatedly: later calls return nothing, except that
        an error held back behind the final frames is raised by the next
        call.
        """
        self._raise_deferred()
        if self._terminated:
            return []

        tail = self._line_buffer + self._decoder.decode(b"", final=True)
        self._line_buffer = ""
        frames = self._process_lines(tail.split("\n")) if tail else []

        if self._pending_fragment is not None and not self._terminated:
            logger.warning(
                "Stream ended with an incomplete payload (%d chars), discarding",
                len(self._pending_fragment),
            )
        self._terminate()
        return frames

    # ── Internals ─────────────────────────────────────────────────

    def _process_lines(self, lines: list[str]) -> list[StreamFrame]:
        frames: list[StreamFrame] = []
        for line in lines:
            try:
                frame = self._handle_line(line)
            except MalformedFrameError as e:
                if not frames:
                    raise
                self._deferred_error = e
                break
            if frame is not None:
                frames.append(frame)
            if self._terminated:
                break
        return frames

    def _handle_line(self, line: str) -> StreamFrame | None:
        line = line.rstrip("\r")
        if not line or line.startswith(":"):
            return None

        field, sep, value = line.partition(":")
        if sep and field == "data":
            payload = value[1:] if value.startswith(" ") else value
        elif sep and field in _IGNORED_FIELDS:
            return None
        else:
            # Some gateways strip the "data:" prefix
            payload = line

        return self._handle_payload(payload)

    def _handle_payload(self, payload: str) -> StreamFrame | None:
        if not payload.strip():
            return None

        if payload.strip() == TERMINAL_MARKER:
            if self._pending_fragment is not None:
                fragment = self._pending_fragment
                self._terminate()
                raise MalformedFrameError(
                    "Terminal marker arrived while a payload fragment was pending",
                    fragment=fragment,
                )
            self._terminate()
            return Done()

        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            if self._pending_fragment is None:
                logger.debug("Holding partial payload (%d chars) for the next record", len(payload))
                self._pending_fragment = payload
                return None
            data = self._rejoin(payload)
        else:
            if self._pending_fragment is not None:
                logger.warning(
                    "Discarding stale payload fragment (%d chars) before a complete record",
                    len(self._pending_fragment),
                )
                self._pending_fragment = None

        return self._interpret(data)

    def _rejoin(self, payload: str) -> Any:
        joined = self._pending_fragment + payload
        try:
            data = json.loads(joined)
        except json.JSONDecodeError as e:
            self._terminate()
            raise MalformedFrameError(
                f"Undecodable stream payload after rejoining fragments: {e.msg}",
                fragment=joined,
            ) from e
        logger.debug("Recovered payload split across two records")
        self._pending_fragment = None
        return data

    def _interpret(self, data: Any) -> StreamFrame | None:
        if not isinstance(data, dict):
            return None

        error = data.get("error")
        if error:
            self._terminate()
            return ErrorFrame(payload=error)

        content = _delta_content(data)
        if content:
            return DeltaContent(text=content)
        return None

    def _terminate(self) -> None:
        self._terminated = True
        self._line_buffer = ""
        self._pending_fragment = None

    def _raise_deferred(self) -> None:
        if self._deferred_error is not None:
            error, self._deferred_error = self._deferred_error, None
            raise error


def _delta_content(data: dict[str, Any]) -> str:
    """Extract choices[0].delta.content from a decoded stream payload."""
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    if not isinstance(first, dict):
        return ""
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""


async def iter_frames(
    chunks: AsyncIterable[bytes | str],
    *,
    should_stop: Callable[[], bool] | None = None,
) -> AsyncIterator[StreamFrame]:
    """Lazily reassemble an upstream chunk stream into frames.

    Owns a fresh ChunkReassembler for the stream. Iteration ends after
    Done or an ErrorFrame, when the transport is exhausted, or, checked
    at every chunk boundary, when should_stop() returns True.

    Raises:
        MalformedFrameError: Propagated from the reassembler.
    """
    reassembler = ChunkReassembler()
    async for chunk in chunks:
        if should_stop is not None and should_stop():
            return
        for frame in reassembler.feed(chunk):
            yield frame
        if reassembler.finished:
            break

    for frame in reassembler.finish():
        yield frame
    # Surfaces an error held back behind the final frames
    reassembler.finish()

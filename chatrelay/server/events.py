"""Outbound event forwarding for streamed completions.

An EventForwarder is the client-facing side of a streaming request: the
orchestrator pushes (kind, payload) events into it as content arrives.
Once the client goes away the forwarder reports itself closed and
silently drops anything written afterwards, so the orchestrator never
sees a disconnect as an error.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)

# Response metadata for a long-lived incremental SSE response
SSE_HEADERS: dict[str, str] = {
    "Content-Type": "text/event-stream; charset=utf-8",
    "Access-Control-Allow-Origin": "*",
    "X-Accel-Buffering": "no",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
}


class EventKind(StrEnum):
    """Event names pushed to the client."""

    ANSWER = "answer"
    ERROR = "error"


def adapt_text_response(text: str | None, finish_reason: str | None = None) -> dict[str, Any]:
    """Wrap a text delta in an OpenAI-style streaming chunk.

    A None text produces an empty delta, used for the final "stop" chunk.
    """
    return {
        "id": "",
        "object": "",
        "created": 0,
        "model": "",
        "choices": [
            {
                "delta": {} if text is None else {"content": text},
                "index": 0,
                "finish_reason": finish_reason,
            }
        ],
    }


def format_sse(kind: str, payload: Any) -> bytes:
    """Encode one event as an SSE record. String payloads are sent verbatim."""
    data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"event: {kind}\ndata: {data}\n\n".encode("utf-8")


class EventForwarder(ABC):
    """Push channel to one waiting client.

    Subclasses implement _write(). send() checks the closed flag first,
    so writes after close() never reach _write().
    """

    def __init__(self) -> None:
        self._closed = False

    @property
    def closed(self) -> bool:
        """True once the client side of the channel has gone away."""
        return self._closed

    @property
    def headers(self) -> dict[str, str]:
        """Response metadata to set once when the channel opens."""
        return dict(SSE_HEADERS)

    def close(self) -> None:
        """Mark the channel closed. Idempotent."""
        if not self._closed:
            logger.debug("%s closed", type(self).__name__)
        self._closed = True

    async def send(self, kind: EventKind | str, payload: Any) -> None:
        """Push one event, or drop it if the channel is closed."""
        if self._closed:
            return
        await self._write(str(kind), payload)

    @abstractmethod
    async def _write(self, kind: str, payload: Any) -> None:
        """Deliver one event over the open channel."""


_END_OF_STREAM = object()


class QueueEventForwarder(EventForwarder):
    """Forwarder backing a FastAPI StreamingResponse.

    The orchestrator writes into an unbounded queue, so a slow client
    never stalls upstream consumption. stream() drains the queue as SSE
    bytes until finish() is called; if the response is torn down first
    (client disconnect) the forwarder closes itself.
    """

    def __init__(self) -> None:
        super().__init__()
        self._queue: asyncio.Queue[Any] = asyncio.Queue()

    async def _write(self, kind: str, payload: Any) -> None:
        self._queue.put_nowait(format_sse(kind, payload))

    def finish(self) -> None:
        """Signal that no more events will be sent; stream() ends after draining."""
        self._queue.put_nowait(_END_OF_STREAM)

    async def stream(self) -> AsyncIterator[bytes]:
        """Yield encoded SSE records in the order they were sent."""
        try:
            while True:
                item = await self._queue.get()
                if item is _END_OF_STREAM:
                    return
                yield item
        finally:
            self.close()

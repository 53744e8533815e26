"""LiteLLM adapter implementing the CompletionBackend interface.

Routes completion requests to any provider LiteLLM supports through its
unified acompletion() API. Streaming replies arrive from LiteLLM as
parsed chunk objects; they are re-encoded as OpenAI-style SSE records so
that every streaming caller goes through the same ChunkReassembler.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
import litellm

# Suppress LiteLLM's "Give Feedback / Get Help" and "Provider List" banners
litellm.suppress_debug_info = True

from chatrelay.providers.base import CompletionBackend
from chatrelay.schemas.completion import UpstreamReply, UpstreamRequest, UpstreamSettings
from chatrelay.streaming.reassembler import TERMINAL_MARKER

logger = logging.getLogger(__name__)

# Provider failures LiteLLM raises while a stream is being iterated
_PROVIDER_ERRORS = (
    litellm.APIError,
    litellm.RateLimitError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
    litellm.BadRequestError,
    litellm.AuthenticationError,
)


class LiteLLMBackend(CompletionBackend):
    """Completion backend powered by litellm.acompletion().

    The upstream settings only contribute a default api_base; LiteLLM
    resolves the provider from the model identifier.
    """

    transport_errors = (litellm.APIConnectionError, litellm.Timeout, httpx.TransportError, OSError)

    def __init__(self, settings: UpstreamSettings | None = None) -> None:
        self._settings = settings

    async def complete(
        self,
        request: UpstreamRequest,
        credential: str,
        *,
        timeout: float,
    ) -> UpstreamReply:
        kwargs = self._build_completion_kwargs(request, credential, timeout)
        response = await litellm.acompletion(**kwargs)

        return UpstreamReply(
            text=self._extract_content(response),
            total_tokens=self._extract_total_tokens(response),
        )

    @asynccontextmanager
    async def open_stream(
        self,
        request: UpstreamRequest,
        credential: str,
        *,
        timeout: float,
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        kwargs = self._build_completion_kwargs(request, credential, timeout)
        kwargs["stream"] = True

        response = await litellm.acompletion(**kwargs)
        try:
            yield _encode_as_sse(response)
        finally:
            close = getattr(response, "aclose", None)
            if close is not None:
                await close()

    def _build_completion_kwargs(
        self,
        request: UpstreamRequest,
        credential: str,
        timeout: float,
    ) -> dict:
        """Build the kwargs dict for litellm.acompletion."""
        kwargs: dict = {
            "model": request.model,
            "messages": request.messages,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "frequency_penalty": request.frequency_penalty,
            "presence_penalty": request.presence_penalty,
            "timeout": float(timeout),
        }

        if credential:
            kwargs["api_key"] = credential

        api_base = request.api_base or (self._settings.base_url if self._settings else "")
        if api_base:
            kwargs["api_base"] = api_base

        return kwargs

    @staticmethod
    def _extract_content(response: Any) -> str:
        """Extract text content from a LiteLLM response."""
        if not response.choices:
            return ""
        message = response.choices[0].message
        return (message.content or "") if message else ""

    @staticmethod
    def _extract_total_tokens(response: Any) -> int:
        usage = getattr(response, "usage", None)
        return getattr(usage, "total_tokens", 0) or 0


async def _encode_as_sse(response: AsyncIterator[Any]) -> AsyncIterator[bytes]:
    """Re-encode LiteLLM stream chunks as ``data:`` records.

    The terminal marker is only emitted once a chunk reports a
    finish_reason, so a stream LiteLLM simply stops iterating is seen as
    interrupted. Provider errors raised mid-stream become an error record;
    transport errors propagate.
    """
    finished = False
    try:
        async for chunk in response:
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            if getattr(choice, "finish_reason", None):
                finished = True
            delta = (choice.delta.content or "") if choice.delta else ""
            if delta:
                record = {"choices": [{"index": 0, "delta": {"content": delta}}]}
                yield _sse_record(record)
    except LiteLLMBackend.transport_errors:
        raise
    except _PROVIDER_ERRORS as e:
        logger.warning("LiteLLM stream failed mid-response: %s", e)
        yield _sse_record({"error": {
            "message": getattr(e, "message", None) or str(e),
            "type": type(e).__name__,
            "code": getattr(e, "status_code", None),
        }})
        return

    if finished:
        yield f"data: {TERMINAL_MARKER}\n\n".encode("utf-8")
    else:
        logger.debug("LiteLLM stream ended without a finish_reason")


def _sse_record(payload: dict) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")

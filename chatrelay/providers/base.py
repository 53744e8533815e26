"""Abstract base class for completion backends.

Defines the CompletionBackend interface that every upstream family must
implement. The orchestrator interacts exclusively through this
interface; it never calls an HTTP client or provider SDK directly.
Backends are chosen by the caller and injected, one instance per
upstream family, and hold no per-request state.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager

from chatrelay.schemas.completion import UpstreamReply, UpstreamRequest


class CompletionBackend(ABC):
    """Abstract interface for an upstream chat completion service."""

    #: Exceptions that mean the transport dropped mid-stream. The
    #: orchestrator treats these as a normal end of the stream.
    transport_errors: tuple[type[BaseException], ...] = (OSError,)

    @abstractmethod
    async def complete(
        self,
        request: UpstreamRequest,
        credential: str,
        *,
        timeout: float,
    ) -> UpstreamReply:
        """Send a non-streaming request and return the reply envelope.

        Args:
            request: Model, wire messages, sampling options and output cap.
            credential: API key presented to the upstream.
            timeout: Deadline in seconds for the whole call.

        Returns:
            The reply text and the upstream-reported total token usage.

        Raises:
            Whatever the underlying client raises; no retry or recovery.
        """

    @abstractmethod
    def open_stream(
        self,
        request: UpstreamRequest,
        credential: str,
        *,
        timeout: float,
    ) -> AbstractAsyncContextManager[AsyncIterator[bytes]]:
        """Open a streaming request.

        The context manager yields the raw SSE byte chunks as the
        transport delivers them. Leaving the context closes the upstream
        response, whether or not the stream was read to the end.

        Args:
            request: Model, wire messages, sampling options and output cap.
            credential: API key presented to the upstream.
            timeout: Transport-level read timeout in seconds.
        """

    async def aclose(self) -> None:
        """Release pooled connections. Default: nothing to release."""


def short_error_reason(error: BaseException) -> str:
    """Extract a short, user-friendly reason from an upstream error.

    Maps error types and status codes to concise descriptions instead
    of dumping full JSON error payloads.
    """
    error_str = str(error).lower()
    if "401" in error_str or "auth" in error_str:
        return "authentication failed"
    if "rate" in error_str or "429" in error_str:
        return "rate limit"
    if "timeout" in error_str or isinstance(error, TimeoutError):
        return "timeout"
    if "503" in error_str or "unavailable" in error_str:
        return "service unavailable"
    if "500" in error_str or "internal" in error_str:
        return "server error"
    if "connection" in error_str:
        return "connection error"
    # Fallback: first 80 chars of the error
    return str(error)[:80]

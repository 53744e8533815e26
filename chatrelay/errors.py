"""Exception hierarchy for the completion relay.

Every error the relay raises on its own account derives from RelayError.
Upstream transport and HTTP failures on the non-streaming path are not
wrapped; they propagate as the client library raised them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from chatrelay.schemas.completion import CompletionResult


class RelayError(Exception):
    """Base exception for all application-specific errors."""


class BudgetExceededError(RelayError):
    """Raised when the prompt cannot be fitted into the model's context window.

    Covers two situations: truncation left no dialogue at all (the system
    messages alone consume the budget, or the most recent message alone
    does not fit), and the prompt leaves no room for any output tokens.
    """

    def __init__(self, message: str, *, budget: int = 0, prompt_tokens: int = 0) -> None:
        super().__init__(message)
        self.budget = budget
        self.prompt_tokens = prompt_tokens


class StreamError(RelayError):
    """Base for failures that end a stream after it has started.

    Carries the partial CompletionResult computed over whatever content
    arrived before the failure, once the orchestrator has attached it.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.result: CompletionResult | None = None


class MalformedFrameError(StreamError):
    """A stream payload could not be decoded, even after joining it with the next one."""

    def __init__(self, message: str, *, fragment: str = "") -> None:
        super().__init__(message)
        self.fragment = fragment


class UpstreamProtocolError(StreamError):
    """The upstream service embedded an explicit error object in the stream."""

    def __init__(self, payload: Any) -> None:
        super().__init__(f"Upstream reported an error: {_describe(payload)}")
        self.payload = payload


def _describe(payload: Any) -> str:
    """Pull a short human-readable reason out of an upstream error object."""
    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("code") or payload.get("type")
        if message:
            return str(message)
    return str(payload)[:200]

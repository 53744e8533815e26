"""Token counting for chat prompts.

A TokenCounter measures a message sequence for a given model. Counters
must be pure and monotonic: adding a message never lowers the count.
They hold no per-request state and are shared across concurrent requests.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod

import litellm

from chatrelay.schemas.completion import TokenCounterKind
from chatrelay.schemas.messages import Message, to_wire

logger = logging.getLogger(__name__)

# Rough estimate: 1 token ≈ 4 characters
_CHARS_PER_TOKEN = 4

# Per-message framing overhead (role markers) and reply priming
_TOKENS_PER_MESSAGE = 4
_REPLY_PRIMING_TOKENS = 3


class TokenCounter(ABC):
    """Abstract token measurement for a model and a message sequence."""

    @abstractmethod
    def count(self, model: str, messages: list[Message]) -> int:
        """Return the number of prompt tokens the messages cost for the model."""


class LiteLLMTokenCounter(TokenCounter):
    """Counts with litellm's tokenizer selection (tiktoken for OpenAI models)."""

    def count(self, model: str, messages: list[Message]) -> int:
        if not messages:
            return 0
        return int(litellm.token_counter(model=model, messages=to_wire(messages)))


class ApproximateTokenCounter(TokenCounter):
    """Character-ratio estimate that never touches a tokenizer.

    Each message costs a fixed framing overhead plus its text length
    divided by four, rounded up.
    """

    def count(self, model: str, messages: list[Message]) -> int:
        if not messages:
            return 0
        total = _REPLY_PRIMING_TOKENS
        for message in messages:
            total += _TOKENS_PER_MESSAGE + math.ceil(len(message.text) / _CHARS_PER_TOKEN)
        return total


def build_token_counter(kind: TokenCounterKind) -> TokenCounter:
    """Instantiate the counter named in the relay configuration."""
    if kind == TokenCounterKind.APPROXIMATE:
        return ApproximateTokenCounter()
    return LiteLLMTokenCounter()


def compute_budget(context_window: int, reserved_output: int = 0, safety_margin: int = 0) -> int:
    """Prompt token budget for a model: window minus headroom, never negative."""
    return max(0, context_window - reserved_output - safety_margin)

"""Prompt fitting: token counting and conversation truncation."""

from chatrelay.context.tokens import (
    ApproximateTokenCounter,
    LiteLLMTokenCounter,
    TokenCounter,
    build_token_counter,
    compute_budget,
)
from chatrelay.context.truncator import ContextTruncator, simplify_text

__all__ = [
    "ApproximateTokenCounter",
    "ContextTruncator",
    "LiteLLMTokenCounter",
    "TokenCounter",
    "build_token_counter",
    "compute_budget",
    "simplify_text",
]

"""Conversation truncation to a model's prompt token budget.

Keeps every system message and the most recent contiguous run of
dialogue that fits the budget. Short conversations skip token counting
entirely: when the normalized text is under half the budget in
characters it cannot exceed the budget in tokens for any tokenizer the
relay supports.
"""

from __future__ import annotations

import logging
import re

from chatrelay.context.tokens import TokenCounter
from chatrelay.schemas.messages import Message

logger = logging.getLogger(__name__)

_BLANK_LINES_RE = re.compile(r"\n+")
_HORIZONTAL_SPACE_RE = re.compile(r"[^\S\r\n]+")

# Fraction of the token budget, in characters, below which no counting happens
_FAST_PATH_RATIO = 0.5


def simplify_text(text: str) -> str:
    """Collapse blank-line and whitespace runs, then trim."""
    text = _BLANK_LINES_RE.sub("\n", text)
    text = _HORIZONTAL_SPACE_RE.sub(" ", text)
    return text.strip()


class ContextTruncator:
    """Trims a conversation window to fit a token budget.

    System messages are always kept, in their original relative order.
    Dialogue is kept as an order-preserving suffix: the scan walks from
    the newest message backwards and stops at the first message whose
    inclusion would make the dialogue cost reach the remaining budget.
    """

    def __init__(self, counter: TokenCounter) -> None:
        self._counter = counter

    def truncate(self, model: str, prompts: list[Message], max_tokens: int) -> list[Message]:
        """Return system messages followed by the surviving dialogue.

        Args:
            model: Model identifier passed through to the token counter.
            prompts: The full conversation, oldest first.
            max_tokens: Prompt token budget.

        Returns:
            New Message objects with normalized text. When the system
            messages alone use up the budget only they are returned; the
            caller decides whether that is fatal.
        """
        system_messages: list[Message] = []
        dialogue: list[Message] = []
        raw_length = 0

        for prompt in prompts:
            text = simplify_text(prompt.text)
            raw_length += len(text)
            normalized = prompt.model_copy(update={"text": text})
            if normalized.is_system:
                system_messages.append(normalized)
            else:
                dialogue.append(normalized)

        if raw_length < max_tokens * _FAST_PATH_RATIO:
            logger.debug(
                "Fast path for %s: %d chars under budget %d", model, raw_length, max_tokens,
            )
            return [*system_messages, *dialogue]

        remaining = max_tokens - self._counter.count(model, system_messages)

        kept: list[Message] = []
        for message in reversed(dialogue):
            kept.insert(0, message)
            if self._counter.count(model, kept) >= remaining:
                kept.pop(0)
                break

        logger.debug(
            "Truncated %s dialogue from %d to %d messages (remaining budget %d)",
            model, len(dialogue), len(kept), remaining,
        )
        return [*system_messages, *kept]

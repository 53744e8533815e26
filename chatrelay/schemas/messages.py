"""Message schemas for conversation history.

Defines the closed chat message record used everywhere in the relay and
its conversion to the OpenAI wire format sent upstream.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class Role(StrEnum):
    """Speaker of a chat message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    """A single chat message in a conversation window.

    Messages are immutable: truncation builds new instances rather than
    editing the caller's history.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default="", description="Caller-assigned message identifier")
    role: Role = Field(description="Who produced the message")
    text: str = Field(default="", description="The message content")

    @property
    def is_system(self) -> bool:
        """Whether this message is a system prompt."""
        return self.role == Role.SYSTEM

    def to_wire(self) -> dict[str, str]:
        """Return the OpenAI-format dict for this message (ids are not sent)."""
        return {"role": self.role.value, "content": self.text}


def to_wire(messages: list[Message]) -> list[dict[str, str]]:
    """Convert a message sequence to OpenAI wire format, preserving order."""
    return [m.to_wire() for m in messages]


def assistant_message(text: str) -> Message:
    """Build the assistant reply appended to a finished transcript."""
    return Message(role=Role.ASSISTANT, text=text)

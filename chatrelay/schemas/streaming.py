"""Streaming schemas for reassembled upstream frames.

A StreamFrame is one fully decoded protocol record pulled out of the
upstream byte stream by the ChunkReassembler. Frames are transient and
live only for the duration of a single request.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class DeltaContent(BaseModel):
    """An incremental content fragment of the assistant reply."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["delta"] = "delta"
    text: str = Field(description="New text in this frame")


class Done(BaseModel):
    """The terminal marker: the upstream finished the reply."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["done"] = "done"


class ErrorFrame(BaseModel):
    """An explicit error object embedded in the stream by the upstream."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["error"] = "error"
    payload: Any = Field(description="The upstream error object, as decoded")


StreamFrame = Annotated[DeltaContent | Done | ErrorFrame, Field(discriminator="kind")]

"""chatrelay schema definitions.

All Pydantic v2 models used across truncation, streaming and the backends.
"""

from chatrelay.schemas.completion import (
    BackendKind,
    CompletionRequest,
    CompletionResult,
    ModelConfig,
    PreparedCompletion,
    RelayConfig,
    RelaySettings,
    ServerSettings,
    TokenCounterKind,
    UpstreamReply,
    UpstreamRequest,
    UpstreamSettings,
)
from chatrelay.schemas.messages import Message, Role
from chatrelay.schemas.streaming import DeltaContent, Done, ErrorFrame, StreamFrame

__all__ = [
    "BackendKind",
    "CompletionRequest",
    "CompletionResult",
    "DeltaContent",
    "Done",
    "ErrorFrame",
    "Message",
    "ModelConfig",
    "PreparedCompletion",
    "RelayConfig",
    "RelaySettings",
    "Role",
    "ServerSettings",
    "StreamFrame",
    "TokenCounterKind",
    "UpstreamReply",
    "UpstreamRequest",
    "UpstreamSettings",
]

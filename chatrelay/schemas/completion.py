"""Completion configuration, request and result schemas.

Defines the model catalog entry, the relay configuration loaded from
defaults.toml, the explicit per-request option structure, and the
request/reply envelopes exchanged with completion backends.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from chatrelay.schemas.messages import Message

# Sampling penalties the relay always sends upstream
FREQUENCY_PENALTY = 0.5
PRESENCE_PENALTY = -0.5


class BackendKind(StrEnum):
    """Upstream family a CompletionBackend talks to."""

    OPENAI_HTTP = "openai_http"
    LITELLM = "litellm"


class TokenCounterKind(StrEnum):
    """Which TokenCounter implementation measures prompts."""

    LITELLM = "litellm"
    APPROXIMATE = "approximate"


class ModelConfig(BaseModel):
    """Configuration for a single chat model in the catalog.

    Loaded from models.toml. The context window is the only value the
    truncation and output-cap arithmetic depends on.
    """

    provider: str = Field(default="openai", description="Provider identifier (e.g. 'openai')")
    model: str = Field(description="Upstream model identifier sent in requests")
    display_name: str = Field(default="", description="Human-friendly model name for CLI output")
    context_window: int = Field(gt=0, description="Maximum context tokens (prompt + completion)")
    api_base: str = Field(default="", description="Custom API base URL (empty = relay default)")


class RelaySettings(BaseModel):
    """Behaviour of the truncation and completion pipeline."""

    backend: BackendKind = Field(
        default=BackendKind.OPENAI_HTTP, description="Backend used by the server and CLI"
    )
    token_counter: TokenCounterKind = Field(
        default=TokenCounterKind.LITELLM, description="Token counter implementation"
    )
    safety_margin: int = Field(
        default=300, ge=0, description="Tokens held back from the budget as slack"
    )
    reserved_output: int = Field(
        default=0, ge=0, description="Tokens held back from the budget for the reply"
    )
    default_max_output: int = Field(
        default=4000, gt=0, description="Output cap used when a request does not set one"
    )
    default_context_window: int = Field(
        default=4000, gt=0, description="Context window assumed for models missing from the catalog"
    )
    stream_timeout: float = Field(
        default=60.0, gt=0, description="Transport read timeout in seconds for streaming calls"
    )
    request_timeout: float = Field(
        default=480.0, gt=0, description="Deadline in seconds for non-streaming calls"
    )


class UpstreamSettings(BaseModel):
    """Where and how the relay reaches the completion service."""

    base_url: str = Field(
        default="https://api.openai.com/v1", description="OpenAI-compatible API base URL"
    )
    api_key_env: str = Field(
        default="OPENAI_API_KEY", description="Env var holding the default credential"
    )
    gateway_url: str = Field(
        default="", description="Alternate base URL used for the gateway credential"
    )
    gateway_key_env: str = Field(
        default="", description="Env var holding the credential routed to gateway_url"
    )


class ServerSettings(BaseModel):
    """HTTP server bind address."""

    host: str = Field(default="127.0.0.1", description="Interface to bind")
    port: int = Field(default=8080, gt=0, description="Port to listen on")


class RelayConfig(BaseModel):
    """Top-level configuration loaded from defaults.toml."""

    relay: RelaySettings = Field(default_factory=RelaySettings)
    upstream: UpstreamSettings = Field(default_factory=UpstreamSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)


class CompletionRequest(BaseModel):
    """Every option a caller may set for one completion.

    Closed on purpose: unknown options are rejected rather than passed
    through to the upstream.
    """

    model_config = ConfigDict(extra="forbid")

    model: str = Field(description="Model identifier, looked up in the catalog")
    temperature: float = Field(default=0.0, ge=0.0, le=2.0, description="Sampling temperature")
    max_output: int = Field(default=4000, gt=0, description="Requested maximum output tokens")
    budget: int | None = Field(
        default=None, ge=0,
        description="Prompt token budget for truncation (None = derive from the catalog)",
    )
    stream: bool = Field(default=False, description="Whether to stream the reply")


class UpstreamRequest(BaseModel):
    """The request a CompletionBackend sends to its upstream."""

    model: str
    messages: list[dict[str, str]]
    temperature: float = 0.0
    max_tokens: int = Field(gt=0)
    stream: bool = False
    frequency_penalty: float = FREQUENCY_PENALTY
    presence_penalty: float = PRESENCE_PENALTY
    api_base: str = ""

    def payload(self) -> dict:
        """JSON body for an OpenAI-compatible chat completions call."""
        return self.model_dump(exclude={"api_base"})


class UpstreamReply(BaseModel):
    """Envelope returned by a non-streaming upstream call."""

    text: str = Field(default="", description="Reply content")
    total_tokens: int = Field(default=0, ge=0, description="Usage reported by the upstream")


class CompletionResult(BaseModel):
    """Final outcome of one orchestrated completion."""

    response_text: str = Field(default="", description="The full assistant reply")
    total_tokens: int = Field(default=0, ge=0, description="Tokens for prompt plus reply")
    finished_transcript: list[Message] = Field(
        default_factory=list, description="Filtered prompts followed by the assistant reply"
    )
    prompt_tokens: int = Field(default=0, ge=0, description="Tokens in the filtered prompt")
    max_output: int = Field(default=0, ge=0, description="Effective output cap sent upstream")
    interrupted: bool = Field(
        default=False,
        description="True when the stream ended without a terminal marker",
    )


class PreparedCompletion(BaseModel):
    """A request that has passed truncation and the output-cap check.

    Built before any upstream call, so budget failures surface while the
    caller can still answer with a plain error response.
    """

    upstream: UpstreamRequest
    filtered: list[Message] = Field(description="Prompts that survived truncation")
    prompt_tokens: int = Field(ge=0, description="Tokens in the filtered prompt")

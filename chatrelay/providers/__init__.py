"""chatrelay backend layer.

Every upstream call goes through a CompletionBackend. The server and CLI
pick one implementation per upstream family from the relay
configuration and inject it into the orchestrator.
"""

from chatrelay.providers.base import CompletionBackend, short_error_reason
from chatrelay.providers.litellm_provider import LiteLLMBackend
from chatrelay.providers.openai_http import OpenAIHTTPBackend
from chatrelay.providers.registry import (
    ModelCatalog,
    load_models,
    load_relay_config,
)
from chatrelay.schemas.completion import BackendKind, UpstreamSettings


def build_backend(kind: BackendKind, settings: UpstreamSettings) -> CompletionBackend:
    """Instantiate the backend named in the relay configuration."""
    if kind == BackendKind.LITELLM:
        return LiteLLMBackend(settings)
    return OpenAIHTTPBackend(settings)


__all__ = [
    "CompletionBackend",
    "LiteLLMBackend",
    "ModelCatalog",
    "OpenAIHTTPBackend",
    "build_backend",
    "load_models",
    "load_relay_config",
    "short_error_reason",
]

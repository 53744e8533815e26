"""OpenAI-compatible HTTP backend.

Talks to any server exposing ``POST /chat/completions`` in the OpenAI
format, using httpx. Streaming responses are handed to the orchestrator
as the raw byte chunks the transport delivers, so the shared
ChunkReassembler sees exactly what the network produced.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx

from chatrelay.providers.base import CompletionBackend
from chatrelay.schemas.completion import UpstreamReply, UpstreamRequest, UpstreamSettings

logger = logging.getLogger(__name__)


class OpenAIHTTPBackend(CompletionBackend):
    """Completion backend for OpenAI-compatible REST endpoints.

    The base URL is resolved per call: a credential matching the
    configured gateway key goes to the gateway URL, a model with its own
    ``api_base`` goes there, and everything else goes to the default
    upstream base URL.
    """

    transport_errors = (httpx.TransportError, OSError)

    def __init__(
        self,
        settings: UpstreamSettings,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    def resolve_base_url(self, credential: str, api_base: str = "") -> str:
        """Pick the upstream base URL for a credential and model."""
        gateway_key = ""
        if self._settings.gateway_key_env:
            gateway_key = os.environ.get(self._settings.gateway_key_env, "")
        if self._settings.gateway_url and gateway_key and credential == gateway_key:
            return self._settings.gateway_url.rstrip("/")
        return (api_base or self._settings.base_url).rstrip("/")

    def _endpoint(self, request: UpstreamRequest, credential: str) -> str:
        return f"{self.resolve_base_url(credential, request.api_base)}/chat/completions"

    @staticmethod
    def _headers(credential: str) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if credential:
            headers["Authorization"] = f"Bearer {credential}"
        return headers

    async def complete(
        self,
        request: UpstreamRequest,
        credential: str,
        *,
        timeout: float,
    ) -> UpstreamReply:
        url = self._endpoint(request, credential)
        logger.debug("POST %s (model=%s, stream=False)", url, request.model)

        response = await self._client.post(
            url,
            json=request.model_copy(update={"stream": False}).payload(),
            headers=self._headers(credential),
            timeout=timeout,
        )
        response.raise_for_status()
        data = response.json()

        text = ""
        choices = data.get("choices") or []
        if choices:
            message = choices[0].get("message") or {}
            text = message.get("content") or ""
        usage = data.get("usage") or {}
        return UpstreamReply(text=text, total_tokens=usage.get("total_tokens") or 0)

    @asynccontextmanager
    async def open_stream(
        self,
        request: UpstreamRequest,
        credential: str,
        *,
        timeout: float,
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        url = self._endpoint(request, credential)
        logger.debug("POST %s (model=%s, stream=True)", url, request.model)

        async with self._client.stream(
            "POST",
            url,
            json=request.model_copy(update={"stream": True}).payload(),
            headers=self._headers(credential),
            timeout=httpx.Timeout(timeout),
        ) as response:
            if response.is_error:
                await response.aread()
                response.raise_for_status()
            yield response.aiter_bytes()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

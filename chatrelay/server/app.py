"""FastAPI application exposing the completion relay over HTTP.

Non-streaming completions return a JSON body. Streaming completions
return a long-lived SSE response fed by a QueueEventForwarder, with the
orchestrator running as a background task that stops consuming the
upstream as soon as the client disconnects.
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from chatrelay import __version__
from chatrelay.context.tokens import TokenCounter, build_token_counter
from chatrelay.errors import BudgetExceededError, StreamError
from chatrelay.orchestrator import CompletionOrchestrator
from chatrelay.providers import build_backend, short_error_reason
from chatrelay.providers.base import CompletionBackend
from chatrelay.providers.registry import ModelCatalog, load_relay_config
from chatrelay.schemas.completion import CompletionRequest, PreparedCompletion, RelayConfig
from chatrelay.schemas.messages import Message, Role
from chatrelay.server.events import EventKind, QueueEventForwarder

logger = logging.getLogger(__name__)


class ChatMessageBody(BaseModel):
    """One message in an inbound completion request."""

    role: Role
    content: str = ""
    id: str = ""


class ChatCompletionBody(BaseModel):
    """Inbound body for POST /api/v1/chat/completions."""

    model: str
    messages: list[ChatMessageBody] = Field(min_length=1)
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    budget: int | None = Field(default=None, ge=0)
    stream: bool = False

    def to_prompts(self) -> list[Message]:
        return [Message(id=m.id, role=m.role, text=m.content) for m in self.messages]


def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        return ""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def create_app(
    config: RelayConfig | None = None,
    *,
    backend: CompletionBackend | None = None,
    counter: TokenCounter | None = None,
    catalog: ModelCatalog | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Collaborators left as None are built from the relay configuration,
    which itself defaults to the packaged defaults.toml.
    """
    config = config or load_relay_config()
    relay = config.relay
    backend = backend or build_backend(relay.backend, config.upstream)
    counter = counter or build_token_counter(relay.token_counter)
    catalog = catalog or ModelCatalog.from_config(
        default_context_window=relay.default_context_window,
    )
    orchestrator = CompletionOrchestrator(backend, counter, catalog, relay)

    # Strong references to in-flight streaming tasks
    running: set[asyncio.Task] = set()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        for task in list(running):
            task.cancel()
        await backend.aclose()

    app = FastAPI(
        title="chatrelay",
        description="Context-window truncation and streaming completion relay",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _credential(authorization: str | None) -> str:
        return _bearer_token(authorization) or os.environ.get(config.upstream.api_key_env, "")

    # ── Health / catalog ─────────────────────────────────────────

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/api/v1/models")
    async def list_models() -> dict:
        """List the models in the catalog with their context windows."""
        return {
            "object": "list",
            "data": [
                {
                    "id": key,
                    "provider": cfg.provider,
                    "model": cfg.model,
                    "display_name": cfg.display_name,
                    "context_window": cfg.context_window,
                }
                for key, cfg in catalog.items()
            ],
        }

    # ── Completions ──────────────────────────────────────────────

    @app.post("/api/v1/chat/completions", response_model=None)
    async def chat_completions(
        body: ChatCompletionBody,
        authorization: str | None = Header(default=None),
    ) -> dict | StreamingResponse:
        """Run one completion, as JSON or as a server-sent event stream."""
        request = CompletionRequest(
            model=body.model,
            temperature=body.temperature,
            max_output=body.max_tokens or relay.default_max_output,
            budget=body.budget,
            stream=body.stream,
        )
        credential = _credential(authorization)
        prompts = body.to_prompts()

        try:
            prepared = orchestrator.prepare(request, prompts)
        except BudgetExceededError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

        if request.stream:
            return _start_stream(prepared, credential)

        try:
            result = await orchestrator.dispatch(prepared, credential)
        except Exception as e:
            logger.exception("Completion for %s failed", request.model)
            raise HTTPException(status_code=502, detail=short_error_reason(e)) from e

        return {
            "model": request.model,
            "text": result.response_text,
            "total_tokens": result.total_tokens,
            "prompt_tokens": result.prompt_tokens,
            "max_output": result.max_output,
            "messages": [m.to_wire() for m in result.finished_transcript],
        }

    def _start_stream(prepared: PreparedCompletion, credential: str) -> StreamingResponse:
        forwarder = QueueEventForwarder()
        model = prepared.upstream.model

        async def run() -> None:
            try:
                await orchestrator.dispatch(prepared, credential, forwarder)
            except StreamError as e:
                # Already forwarded to the client as an error event
                logger.warning("Stream for %s ended with error: %s", model, e)
            except Exception as e:
                logger.exception("Streaming completion for %s failed", model)
                await forwarder.send(EventKind.ERROR, {"message": short_error_reason(e)})
            finally:
                forwarder.finish()

        task = asyncio.create_task(run())
        running.add(task)
        task.add_done_callback(running.discard)

        return StreamingResponse(forwarder.stream(), headers=forwarder.headers)

    return app

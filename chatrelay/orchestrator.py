"""Completion engine for the chat relay.

Fits the conversation into the model's prompt budget, sends it to the
injected CompletionBackend, and produces the final CompletionResult.
Streaming replies are reassembled frame by frame, forwarded to the
client in arrival order, and accounted for by counting tokens over the
finished transcript, since streaming upstreams rarely report usage.
"""

from __future__ import annotations

import logging
from contextlib import aclosing

from chatrelay.context.tokens import TokenCounter, compute_budget
from chatrelay.context.truncator import ContextTruncator
from chatrelay.errors import BudgetExceededError, MalformedFrameError, UpstreamProtocolError
from chatrelay.providers.base import CompletionBackend
from chatrelay.providers.registry import ModelCatalog
from chatrelay.schemas.completion import (
    CompletionRequest,
    CompletionResult,
    PreparedCompletion,
    RelaySettings,
    UpstreamRequest,
)
from chatrelay.schemas.messages import Message, assistant_message, to_wire
from chatrelay.schemas.streaming import DeltaContent, Done, ErrorFrame
from chatrelay.server.events import EventForwarder, EventKind, adapt_text_response
from chatrelay.streaming.reassembler import TERMINAL_MARKER, iter_frames

logger = logging.getLogger(__name__)


class CompletionOrchestrator:
    """Runs one request/response cycle against a completion backend.

    Holds no per-request state, so one instance serves any number of
    concurrent requests. Each streaming request is consumed by a single
    sequential loop; the only suspension point is waiting for the next
    upstream chunk.
    """

    def __init__(
        self,
        backend: CompletionBackend,
        counter: TokenCounter,
        catalog: ModelCatalog,
        settings: RelaySettings | None = None,
    ) -> None:
        self._backend = backend
        self._counter = counter
        self._catalog = catalog
        self._settings = settings or RelaySettings()
        self._truncator = ContextTruncator(counter)

    @property
    def settings(self) -> RelaySettings:
        """Relay settings (budget headroom and timeouts) in effect."""
        return self._settings

    async def execute(
        self,
        request: CompletionRequest,
        credential: str,
        prompts: list[Message],
        forwarder: EventForwarder | None = None,
    ) -> CompletionResult:
        """Execute one completion, streaming or not.

        Args:
            request: Model and sampling options for this call.
            credential: API key presented to the upstream.
            prompts: The conversation window, oldest first.
            forwarder: Client channel for streamed events. Ignored for
                non-streaming requests; optional for streaming ones.

        Returns:
            The reply text, total token usage and finished transcript.

        Raises:
            BudgetExceededError: The conversation cannot be fitted, or no
                room is left for output. Raised before any upstream call.
            UpstreamProtocolError: The stream carried an explicit error.
            MalformedFrameError: A stream payload could not be decoded.
        """
        prepared = self.prepare(request, prompts)
        return await self.dispatch(prepared, credential, forwarder)

    def prepare(self, request: CompletionRequest, prompts: list[Message]) -> PreparedCompletion:
        """Truncate the conversation and fix the output cap for one request.

        Raises:
            BudgetExceededError: The conversation cannot be fitted, or no
                room is left for output.
        """
        model_cfg = self._catalog.lookup(request.model)
        model = model_cfg.model

        budget = request.budget
        if budget is None:
            budget = compute_budget(
                model_cfg.context_window,
                self._settings.reserved_output,
                self._settings.safety_margin,
            )

        filtered = self._truncator.truncate(model, prompts, budget)
        self._check_prompt_fits(model, prompts, filtered, budget)

        prompt_tokens = self._counter.count(model, filtered)
        max_output = min(request.max_output, model_cfg.context_window - prompt_tokens)
        if max_output <= 0:
            raise BudgetExceededError(
                f"Prompt uses {prompt_tokens} of {model_cfg.context_window} context tokens "
                f"for {model}, leaving no room for output",
                budget=budget,
                prompt_tokens=prompt_tokens,
            )

        upstream = UpstreamRequest(
            model=model,
            messages=to_wire(filtered),
            temperature=request.temperature,
            max_tokens=max_output,
            stream=request.stream,
            api_base=model_cfg.api_base,
        )
        logger.info(
            "Completion for %s: %d/%d messages, %d prompt tokens, max_output=%d, stream=%s",
            model, len(filtered), len(prompts), prompt_tokens, max_output, request.stream,
        )
        return PreparedCompletion(upstream=upstream, filtered=filtered, prompt_tokens=prompt_tokens)

    async def dispatch(
        self,
        prepared: PreparedCompletion,
        credential: str,
        forwarder: EventForwarder | None = None,
    ) -> CompletionResult:
        """Send a prepared request upstream and collect the result."""
        upstream = prepared.upstream
        if not upstream.stream:
            return await self._complete(
                upstream, credential, prepared.filtered, prepared.prompt_tokens,
            )
        return await self._stream(
            upstream, credential, prepared.filtered, prepared.prompt_tokens, forwarder,
        )

    def _check_prompt_fits(
        self,
        model: str,
        prompts: list[Message],
        filtered: list[Message],
        budget: int,
    ) -> None:
        """Refuse a truncation result that left no usable dialogue."""
        if any(not m.is_system for m in filtered):
            return

        if any(not m.is_system for m in prompts):
            raise BudgetExceededError(
                f"No dialogue message fits the {budget}-token budget for {model}",
                budget=budget,
            )

        system_tokens = self._counter.count(model, filtered)
        if system_tokens >= budget:
            raise BudgetExceededError(
                f"System messages use {system_tokens} tokens, "
                f"over the {budget}-token budget for {model}",
                budget=budget,
                prompt_tokens=system_tokens,
            )

    async def _complete(
        self,
        upstream: UpstreamRequest,
        credential: str,
        filtered: list[Message],
        prompt_tokens: int,
    ) -> CompletionResult:
        reply = await self._backend.complete(
            upstream, credential, timeout=self._settings.request_timeout,
        )
        logger.info("Completion for %s finished: %d tokens", upstream.model, reply.total_tokens)

        return CompletionResult(
            response_text=reply.text,
            total_tokens=reply.total_tokens,
            finished_transcript=[*filtered, assistant_message(reply.text)],
            prompt_tokens=prompt_tokens,
            max_output=upstream.max_tokens,
        )

    async def _stream(
        self,
        upstream: UpstreamRequest,
        credential: str,
        filtered: list[Message],
        prompt_tokens: int,
        forwarder: EventForwarder | None,
    ) -> CompletionResult:
        def client_gone() -> bool:
            return forwarder is not None and forwarder.closed

        async def forward(kind: EventKind, payload: object) -> None:
            if forwarder is not None:
                await forwarder.send(kind, payload)

        parts: list[str] = []
        saw_done = False
        opened = False
        upstream_error: UpstreamProtocolError | None = None
        malformed: MalformedFrameError | None = None

        try:
            async with self._backend.open_stream(
                upstream, credential, timeout=self._settings.stream_timeout,
            ) as chunks:
                opened = True
                frames = iter_frames(chunks, should_stop=client_gone)
                async with aclosing(frames):
                    async for frame in frames:
                        if client_gone():
                            break
                        if isinstance(frame, DeltaContent):
                            parts.append(frame.text)
                            await forward(EventKind.ANSWER, adapt_text_response(frame.text))
                        elif isinstance(frame, Done):
                            saw_done = True
                            await forward(
                                EventKind.ANSWER, adapt_text_response(None, finish_reason="stop"),
                            )
                            await forward(EventKind.ANSWER, TERMINAL_MARKER)
                            break
                        elif isinstance(frame, ErrorFrame):
                            upstream_error = UpstreamProtocolError(frame.payload)
                            await forward(
                                EventKind.ERROR,
                                {"message": str(upstream_error), "error": frame.payload},
                            )
                            break
        except MalformedFrameError as e:
            logger.warning("Malformed stream from %s: %s", upstream.model, e)
            malformed = e
            await forward(EventKind.ERROR, {"message": str(e)})
        except self._backend.transport_errors as e:
            if not opened:
                raise
            logger.warning("Upstream stream from %s interrupted: %s", upstream.model, e)

        if client_gone():
            logger.info("Client disconnected from %s stream, upstream closed", upstream.model)

        text = "".join(parts)
        transcript = [*filtered, assistant_message(text)]
        result = CompletionResult(
            response_text=text,
            total_tokens=self._counter.count(upstream.model, transcript),
            finished_transcript=transcript,
            prompt_tokens=prompt_tokens,
            max_output=upstream.max_tokens,
            interrupted=not saw_done,
        )

        if upstream_error is not None:
            upstream_error.result = result
            raise upstream_error
        if malformed is not None:
            malformed.result = result
            raise malformed

        logger.info(
            "Stream for %s finished: %d chars, %d tokens%s",
            upstream.model, len(text), result.total_tokens,
            "" if saw_done else " (no terminal marker)",
        )
        return result

"""Tests for chatrelay.orchestrator — the completion engine."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager

import pytest

from chatrelay.context.tokens import TokenCounter
from chatrelay.errors import BudgetExceededError, MalformedFrameError, UpstreamProtocolError
from chatrelay.orchestrator import CompletionOrchestrator
from chatrelay.providers.base import CompletionBackend
from chatrelay.providers.registry import ModelCatalog
from chatrelay.schemas.completion import (
    CompletionRequest,
    ModelConfig,
    RelaySettings,
    UpstreamReply,
)
from chatrelay.schemas.messages import Message, Role
from chatrelay.server.events import EventForwarder

_MODEL = "test-model"


# ── Fakes ─────────────────────────────────────────────────────


class _CharCounter(TokenCounter):
    """One token per character, no framing overhead."""

    def count(self, model, messages):
        return sum(len(m.text) for m in messages)


class _FakeBackend(CompletionBackend):
    """Replays canned chunks (or raises canned errors) for every call."""

    transport_errors = (OSError,)

    def __init__(self, chunks=(), *, reply=None, complete_error=None, open_error=None):
        self.chunks = list(chunks)
        self.reply = reply or UpstreamReply(text="ok", total_tokens=7)
        self.complete_error = complete_error
        self.open_error = open_error
        self.calls: list[tuple] = []
        self.pulled = 0
        self.stream_closed = False

    async def complete(self, request, credential, *, timeout):
        self.calls.append((request, credential, timeout))
        if self.complete_error is not None:
            raise self.complete_error
        return self.reply

    @asynccontextmanager
    async def open_stream(self, request, credential, *, timeout):
        self.calls.append((request, credential, timeout))
        if self.open_error is not None:
            raise self.open_error
        try:
            yield self._iterate()
        finally:
            self.stream_closed = True

    async def _iterate(self):
        for chunk in self.chunks:
            self.pulled += 1
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk


class _RecordingForwarder(EventForwarder):
    """Records events; optionally closes itself after N writes."""

    def __init__(self, close_after: int | None = None) -> None:
        super().__init__()
        self.events: list[tuple[str, object]] = []
        self._close_after = close_after

    async def _write(self, kind, payload):
        self.events.append((kind, payload))
        if self._close_after is not None and len(self.events) >= self._close_after:
            self.close()


# ── Helpers ───────────────────────────────────────────────────


def _record(content: str) -> bytes:
    payload = {"choices": [{"delta": {"content": content}}]}
    return f"data: {json.dumps(payload)}\n\n".encode()


_DONE = b"data: [DONE]\n\n"


def _make_orchestrator(
    backend: CompletionBackend,
    *,
    context_window: int = 1000,
    **settings,
) -> CompletionOrchestrator:
    catalog = ModelCatalog(
        {_MODEL: ModelConfig(model=_MODEL, context_window=context_window)},
        default_context_window=500,
    )
    settings.setdefault("safety_margin", 0)
    return CompletionOrchestrator(backend, _CharCounter(), catalog, RelaySettings(**settings))


def _make_request(**overrides) -> CompletionRequest:
    defaults = {"model": _MODEL, "stream": True}
    defaults.update(overrides)
    return CompletionRequest(**defaults)


def _prompts() -> list[Message]:
    return [Message(id="u1", role=Role.USER, text="hello")]


def _delta_of(event) -> str | None:
    kind, payload = event
    if not isinstance(payload, dict):
        return None
    return payload["choices"][0]["delta"].get("content")


# ── Streaming ─────────────────────────────────────────────────


class TestStreaming:
    @pytest.mark.asyncio
    async def test_accumulates_deltas(self):
        backend = _FakeBackend([_record("Hi"), _record(" there"), _DONE])
        forwarder = _RecordingForwarder()
        orchestrator = _make_orchestrator(backend)

        result = await orchestrator.execute(_make_request(), "sk", _prompts(), forwarder)

        assert result.response_text == "Hi there"
        assert result.interrupted is False
        assert result.finished_transcript[-1] == Message(role=Role.ASSISTANT, text="Hi there")
        assert result.total_tokens == _CharCounter().count(_MODEL, result.finished_transcript)
        assert result.total_tokens == len("hello") + len("Hi there")
        assert result.prompt_tokens == 5

    @pytest.mark.asyncio
    async def test_forwards_events_in_order(self):
        backend = _FakeBackend([_record("Hi"), _record(" there"), _DONE])
        forwarder = _RecordingForwarder()

        await _make_orchestrator(backend).execute(_make_request(), "sk", _prompts(), forwarder)

        kinds = [kind for kind, _ in forwarder.events]
        assert kinds == ["answer", "answer", "answer", "answer"]
        assert [_delta_of(e) for e in forwarder.events[:2]] == ["Hi", " there"]
        stop_chunk = forwarder.events[2][1]
        assert stop_chunk["choices"][0]["finish_reason"] == "stop"
        assert stop_chunk["choices"][0]["delta"] == {}
        assert forwarder.events[3] == ("answer", "[DONE]")

    @pytest.mark.asyncio
    async def test_oddly_split_chunks(self):
        data = _record("Hi") + _record(" there") + _DONE
        backend = _FakeBackend([data[:3], data[3:29], data[29:31], data[31:]])

        result = await _make_orchestrator(backend).execute(_make_request(), "sk", _prompts())

        assert result.response_text == "Hi there"

    @pytest.mark.asyncio
    async def test_without_forwarder(self):
        backend = _FakeBackend([_record("solo"), _DONE])
        result = await _make_orchestrator(backend).execute(_make_request(), "sk", _prompts())
        assert result.response_text == "solo"

    @pytest.mark.asyncio
    async def test_missing_terminal_marker_marks_interrupted(self):
        backend = _FakeBackend([_record("Hi")])
        result = await _make_orchestrator(backend).execute(_make_request(), "sk", _prompts())

        assert result.response_text == "Hi"
        assert result.interrupted is True

    @pytest.mark.asyncio
    async def test_upstream_closed_after_stream(self):
        backend = _FakeBackend([_record("Hi"), _DONE])
        await _make_orchestrator(backend).execute(_make_request(), "sk", _prompts())
        assert backend.stream_closed

    @pytest.mark.asyncio
    async def test_stream_timeout_passed(self):
        backend = _FakeBackend([_DONE])
        orchestrator = _make_orchestrator(backend, stream_timeout=12.5)

        await orchestrator.execute(_make_request(), "sk-abc", _prompts())

        request, credential, timeout = backend.calls[0]
        assert credential == "sk-abc"
        assert timeout == 12.5
        assert request.stream is True


# ── Client disconnect ─────────────────────────────────────────


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_stops_forwarding_and_returns(self):
        backend = _FakeBackend([_record("Hi"), _record(" there"), _record("!"), _DONE])
        forwarder = _RecordingForwarder(close_after=1)

        result = await _make_orchestrator(backend).execute(
            _make_request(), "sk", _prompts(), forwarder,
        )

        assert len(forwarder.events) == 1
        assert result.response_text == "Hi"
        assert result.total_tokens == len("hello") + len("Hi")
        assert backend.pulled < 4
        assert backend.stream_closed

    @pytest.mark.asyncio
    async def test_disconnect_mid_chunk(self):
        backend = _FakeBackend([_record("Hi") + _record(" there") + _DONE])
        forwarder = _RecordingForwarder(close_after=1)

        result = await _make_orchestrator(backend).execute(
            _make_request(), "sk", _prompts(), forwarder,
        )

        assert len(forwarder.events) == 1
        assert result.response_text == "Hi"


# ── Stream failures ───────────────────────────────────────────


class TestStreamFailures:
    @pytest.mark.asyncio
    async def test_error_frame_raises_protocol_error(self):
        backend = _FakeBackend([
            _record("Hi"),
            b'data: {"error":{"message":"quota exceeded"}}\n\n',
            _record("ignored"),
        ])
        forwarder = _RecordingForwarder()

        with pytest.raises(UpstreamProtocolError) as exc_info:
            await _make_orchestrator(backend).execute(
                _make_request(), "sk", _prompts(), forwarder,
            )

        error = exc_info.value
        assert error.payload == {"message": "quota exceeded"}
        assert "quota exceeded" in str(error)
        assert error.result.response_text == "Hi"
        assert forwarder.events[-1][0] == "error"
        assert [_delta_of(e) for e in forwarder.events[:-1]] == ["Hi"]

    @pytest.mark.asyncio
    async def test_malformed_payload(self):
        backend = _FakeBackend([_record("Hi"), b'data: {"x\n\ndata: y\n\n', _DONE])
        forwarder = _RecordingForwarder()

        with pytest.raises(MalformedFrameError) as exc_info:
            await _make_orchestrator(backend).execute(
                _make_request(), "sk", _prompts(), forwarder,
            )

        assert exc_info.value.result.response_text == "Hi"
        assert forwarder.events[-1][0] == "error"
        assert backend.stream_closed

    @pytest.mark.asyncio
    async def test_transport_drop_is_normal_end(self):
        backend = _FakeBackend([_record("Hi"), ConnectionResetError("peer reset")])

        result = await _make_orchestrator(backend).execute(_make_request(), "sk", _prompts())

        assert result.response_text == "Hi"
        assert result.interrupted is True

    @pytest.mark.asyncio
    async def test_transport_error_before_stream_opens_propagates(self):
        backend = _FakeBackend(open_error=ConnectionRefusedError("refused"))
        with pytest.raises(ConnectionRefusedError):
            await _make_orchestrator(backend).execute(_make_request(), "sk", _prompts())

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        backend = _FakeBackend([_record("Hi"), RuntimeError("boom")])
        with pytest.raises(RuntimeError):
            await _make_orchestrator(backend).execute(_make_request(), "sk", _prompts())


# ── Non-streaming ─────────────────────────────────────────────


class TestNonStreaming:
    @pytest.mark.asyncio
    async def test_returns_upstream_reply(self):
        backend = _FakeBackend(reply=UpstreamReply(text="answer", total_tokens=31))
        orchestrator = _make_orchestrator(backend, request_timeout=99.0)

        result = await orchestrator.execute(_make_request(stream=False), "sk", _prompts())

        assert result.response_text == "answer"
        assert result.total_tokens == 31
        assert result.finished_transcript == [
            Message(id="u1", role=Role.USER, text="hello"),
            Message(role=Role.ASSISTANT, text="answer"),
        ]
        request, _, timeout = backend.calls[0]
        assert timeout == 99.0
        assert request.stream is False

    @pytest.mark.asyncio
    async def test_forwarder_unused(self):
        forwarder = _RecordingForwarder()
        await _make_orchestrator(_FakeBackend()).execute(
            _make_request(stream=False), "sk", _prompts(), forwarder,
        )
        assert forwarder.events == []

    @pytest.mark.asyncio
    async def test_errors_propagate_without_retry(self):
        backend = _FakeBackend(complete_error=RuntimeError("HTTP 500"))

        with pytest.raises(RuntimeError):
            await _make_orchestrator(backend).execute(_make_request(stream=False), "sk", _prompts())

        assert len(backend.calls) == 1

    @pytest.mark.asyncio
    async def test_upstream_request_shape(self):
        backend = _FakeBackend()
        await _make_orchestrator(backend).execute(
            _make_request(stream=False, temperature=0.7),
            "sk",
            [Message(role=Role.SYSTEM, text="rules"), Message(role=Role.USER, text="q")],
        )

        request = backend.calls[0][0]
        assert request.model == _MODEL
        assert request.temperature == 0.7
        assert request.frequency_penalty == 0.5
        assert request.presence_penalty == -0.5
        assert request.messages == [
            {"role": "system", "content": "rules"},
            {"role": "user", "content": "q"},
        ]


# ── Budget and output cap ─────────────────────────────────────


class TestBudget:
    @pytest.mark.asyncio
    async def test_budget_from_catalog_truncates_history(self):
        backend = _FakeBackend()
        orchestrator = _make_orchestrator(backend, safety_margin=990)
        prompts = [
            Message(role=Role.USER, text="a" * 8),
            Message(role=Role.USER, text="b" * 8),
        ]

        await orchestrator.execute(_make_request(stream=False), "sk", prompts)

        assert backend.calls[0][0].messages == [{"role": "user", "content": "b" * 8}]

    @pytest.mark.asyncio
    async def test_explicit_budget_overrides_catalog(self):
        backend = _FakeBackend()
        prompts = [
            Message(role=Role.USER, text="a" * 8),
            Message(role=Role.USER, text="b" * 8),
        ]

        await _make_orchestrator(backend).execute(
            _make_request(stream=False, budget=10), "sk", prompts,
        )

        assert len(backend.calls[0][0].messages) == 1

    @pytest.mark.asyncio
    async def test_no_dialogue_fits(self):
        backend = _FakeBackend()
        prompts = [Message(role=Role.SYSTEM, text="s"), Message(role=Role.USER, text="u" * 50)]

        with pytest.raises(BudgetExceededError) as exc_info:
            await _make_orchestrator(backend).execute(_make_request(budget=20), "sk", prompts)

        assert exc_info.value.budget == 20
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_system_only_over_budget(self):
        backend = _FakeBackend()
        prompts = [Message(role=Role.SYSTEM, text="s" * 50)]

        with pytest.raises(BudgetExceededError):
            await _make_orchestrator(backend).execute(_make_request(budget=20), "sk", prompts)

        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_output_cap_limited_by_context_window(self):
        backend = _FakeBackend()
        await _make_orchestrator(backend).execute(_make_request(stream=False), "sk", _prompts())
        # min(4000, 1000 - 5)
        assert backend.calls[0][0].max_tokens == 995

    @pytest.mark.asyncio
    async def test_output_cap_limited_by_request(self):
        backend = _FakeBackend()
        result = await _make_orchestrator(backend).execute(
            _make_request(stream=False, max_output=100), "sk", _prompts(),
        )
        assert backend.calls[0][0].max_tokens == 100
        assert result.max_output == 100

    @pytest.mark.asyncio
    async def test_no_room_for_output(self):
        backend = _FakeBackend()
        prompts = [Message(role=Role.USER, text="x" * 20)]

        with pytest.raises(BudgetExceededError) as exc_info:
            await _make_orchestrator(backend, context_window=10).execute(
                _make_request(budget=100), "sk", prompts,
            )

        assert exc_info.value.prompt_tokens == 20
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_unknown_model_uses_default_window(self):
        backend = _FakeBackend()
        await _make_orchestrator(backend).execute(
            _make_request(model="mystery-model", stream=False), "sk", _prompts(),
        )

        request = backend.calls[0][0]
        assert request.model == "mystery-model"
        assert request.max_tokens == 500 - 5

    def test_prepare_rejects_before_any_upstream_call(self):
        backend = _FakeBackend()
        prompts = [Message(role=Role.USER, text="u" * 50)]

        with pytest.raises(BudgetExceededError):
            _make_orchestrator(backend).prepare(_make_request(budget=20), prompts)

        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_prepare_then_dispatch(self):
        backend = _FakeBackend([_record("Hi"), _DONE])
        orchestrator = _make_orchestrator(backend)

        prepared = orchestrator.prepare(_make_request(max_output=50), _prompts())
        assert prepared.upstream.max_tokens == 50
        assert prepared.prompt_tokens == 5
        assert backend.calls == []

        result = await orchestrator.dispatch(prepared, "sk")

        assert result.response_text == "Hi"
        assert not result.interrupted

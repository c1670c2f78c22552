"""Tests for the ProviderWrapper request facade."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Sequence

import httpx
import pytest

from llm_relay.backends import BackendHTTPError, ChatBackend, OpenAICompatBackend
from llm_relay.config import ProviderConfig, RelayConfig, RetrySettings
from llm_relay.errors import (
    ProviderConfigurationError,
    ProviderError,
    ProviderRequestError,
    ProviderStreamError,
)
from llm_relay.llm.retry import RetryConfig
from llm_relay.llm.wrapper import ProviderWrapper, SendChatOptions, get_provider_wrapper
from llm_relay.types import ChatMessage, ErrorCategory, StreamChunk, TokenUsage

# Zero delays keep retries instant.
FAST = RetryConfig(max_retries=3, initial_delay=0.0, max_delay=0.0)
USER = [ChatMessage(role="user", content="hi")]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

async def _aiter(items: list[Any]) -> AsyncIterator[Any]:
    for item in items:
        yield item


def _openai(content: str | None = None, **extra: Any) -> dict:
    delta = {"content": content} if content is not None else {}
    return {"choices": [{"delta": delta, "finish_reason": extra.pop("finish_reason", None)}], **extra}


class FakeBackend(ChatBackend):
    """Replays scripted outcomes: an exception to raise or a list of stream items."""

    def __init__(self, *outcomes: Any, provider: str = "openai") -> None:
        super().__init__("fake", provider)
        self.outcomes = list(outcomes)
        self.calls = 0
        self.closed = False

    async def get_completion_stream(
        self,
        messages: Sequence[ChatMessage],
        *,
        model: str,
        tools=None,
        tool_choice=None,
    ) -> AsyncIterator[Any]:
        self.calls += 1
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome()
        return _aiter(outcome)

    async def close(self) -> None:
        self.closed = True


HELLO = [
    _openai("Hel", model="gpt-4o"),
    _openai("lo"),
    _openai(finish_reason="stop"),
    {"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}},
]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidation:
    async def test_empty_messages(self):
        backend = FakeBackend(HELLO)
        wrapper = ProviderWrapper(backend, FAST)
        with pytest.raises(ProviderError) as exc_info:
            await wrapper.send_chat([], SendChatOptions(model="gpt-4o"))
        err = exc_info.value
        assert type(err) is ProviderError
        assert err.message == "Messages array cannot be empty"
        assert err.category is ErrorCategory.CLIENT_ERROR
        assert err.retryable is False
        assert backend.calls == 0

    @pytest.mark.parametrize("model", ["", "   "])
    async def test_blank_model(self, model):
        backend = FakeBackend(HELLO)
        wrapper = ProviderWrapper(backend, FAST)
        with pytest.raises(ProviderError, match="Model must be specified"):
            await wrapper.send_chat(USER, SendChatOptions(model=model))
        assert backend.calls == 0


# ---------------------------------------------------------------------------
# Success path
# ---------------------------------------------------------------------------

class TestSendChat:
    async def test_text_and_metadata(self):
        seen: list[str] = []
        wrapper = ProviderWrapper(FakeBackend(HELLO), FAST)
        result = await wrapper.send_chat(
            USER, SendChatOptions(model="gpt-4o", on_text=seen.append),
        )
        assert result.text == "Hello"
        assert seen == ["Hel", "lo"]
        assert result.tool_calls == ()
        assert result.metadata is not None
        assert result.metadata.model == "gpt-4o"
        assert result.metadata.finish_reason == "stop"
        assert result.metadata.usage == TokenUsage(prompt=3, completion=2, total=5)

    async def test_tool_calls_assembled(self):
        stream = [
            {"choices": [{"delta": {"tool_calls": [
                {"index": 0, "id": "c1", "function": {"name": "lookup", "arguments": '{"q":'}},
            ]}}]},
            {"choices": [{"delta": {"tool_calls": [
                {"index": 0, "function": {"arguments": "1}"}},
            ]}}]},
        ]
        wrapper = ProviderWrapper(FakeBackend(stream), FAST)
        result = await wrapper.send_chat(USER, SendChatOptions(model="m"))
        assert result.has_tool_calls
        assert result.tool_calls[0].parsed_arguments() == {"q": 1}

    async def test_no_metadata_when_backend_reports_none(self):
        backend = FakeBackend([StreamChunk(text="plain")], provider="custom")
        result = await ProviderWrapper(backend, FAST).send_chat(USER, SendChatOptions(model="m"))
        assert result.text == "plain"
        assert result.metadata is None

    async def test_concurrent_calls_do_not_share_state(self):
        class EchoBackend(FakeBackend):
            async def get_completion_stream(self, messages, *, model, tools=None, tool_choice=None):
                word = messages[-1].content

                async def gen():
                    for ch in word:
                        await asyncio.sleep(0)
                        yield _openai(ch)

                return gen()

        wrapper = ProviderWrapper(EchoBackend(None), FAST)
        a, b = await asyncio.gather(
            wrapper.send_chat([ChatMessage(role="user", content="alpha")], SendChatOptions(model="m")),
            wrapper.send_chat([ChatMessage(role="user", content="omega")], SendChatOptions(model="m")),
        )
        assert a.text == "alpha"
        assert b.text == "omega"

    async def test_provider_name(self):
        wrapper = ProviderWrapper(FakeBackend(HELLO))
        assert wrapper.provider_name == "fake"
        assert wrapper.get_provider_name() == "fake"

    async def test_context_manager_closes_backend(self):
        backend = FakeBackend(HELLO)
        async with ProviderWrapper(backend, FAST) as wrapper:
            await wrapper.send_chat(USER, SendChatOptions(model="m"))
        assert backend.closed


# ---------------------------------------------------------------------------
# Request failures and retries
# ---------------------------------------------------------------------------

class TestRequestRetry:
    async def test_network_failures_retried(self):
        backend = FakeBackend(
            ConnectionError("connection refused"),
            httpx.ConnectError("All connection attempts failed"),
            HELLO,
        )
        result = await ProviderWrapper(backend, FAST).send_chat(USER, SendChatOptions(model="m"))
        assert result.text == "Hello"
        assert backend.calls == 3

    async def test_rate_limit_exhausted(self):
        backend = FakeBackend(BackendHTTPError(429, "Too Many Requests"))
        wrapper = ProviderWrapper(backend, RetryConfig(max_retries=2, initial_delay=0.0, max_delay=0.0))
        with pytest.raises(ProviderRequestError) as exc_info:
            await wrapper.send_chat(USER, SendChatOptions(model="m"))
        err = exc_info.value
        assert backend.calls == 3
        assert err.category is ErrorCategory.RATE_LIMIT
        assert err.retryable is True
        assert err.message.startswith("Rate limit exceeded for fake: 429")
        assert isinstance(err.original_error, BackendHTTPError)

    async def test_server_error_then_success(self):
        backend = FakeBackend(BackendHTTPError(503, "Service Unavailable"), HELLO)
        result = await ProviderWrapper(backend, FAST).send_chat(USER, SendChatOptions(model="m"))
        assert result.text == "Hello"
        assert backend.calls == 2

    async def test_each_retry_logged_once(self, caplog):
        backend = FakeBackend(ConnectionError("connection refused"), HELLO)
        with caplog.at_level(logging.DEBUG, logger="llm_relay"):
            await ProviderWrapper(backend, FAST).send_chat(USER, SendChatOptions(model="m"))
        retry_logs = [r for r in caplog.records if "connection refused" in r.getMessage()]
        assert len(retry_logs) == 1
        assert retry_logs[0].levelno == logging.WARNING

    async def test_auth_failure_not_retried(self):
        backend = FakeBackend(BackendHTTPError(401, "Unauthorized", '{"error": "bad key"}'))
        with pytest.raises(ProviderConfigurationError) as exc_info:
            await ProviderWrapper(backend, FAST).send_chat(USER, SendChatOptions(model="m"))
        err = exc_info.value
        assert backend.calls == 1
        assert err.category is ErrorCategory.AUTHENTICATION
        assert err.retryable is False
        assert err.message.startswith("Authentication failed for fake: 401 Unauthorized")

    async def test_client_error_not_retried(self):
        backend = FakeBackend(ValueError("Invalid transcript: message 0: invalid role 'robot'"))
        with pytest.raises(ProviderRequestError) as exc_info:
            await ProviderWrapper(backend, FAST).send_chat(USER, SendChatOptions(model="m"))
        assert backend.calls == 1
        assert exc_info.value.category is ErrorCategory.CLIENT_ERROR
        assert exc_info.value.retryable is False

    async def test_unknown_not_retried(self):
        backend = FakeBackend(RuntimeError("something odd"))
        with pytest.raises(ProviderRequestError) as exc_info:
            await ProviderWrapper(backend, FAST).send_chat(USER, SendChatOptions(model="m"))
        assert backend.calls == 1
        assert exc_info.value.category is ErrorCategory.UNKNOWN
        assert exc_info.value.message == "Request to fake failed: something odd"

    async def test_provider_error_from_backend_passes_through(self):
        original = ProviderRequestError("backend refused", "fake", retryable=False)
        backend = FakeBackend(original)
        with pytest.raises(ProviderRequestError) as exc_info:
            await ProviderWrapper(backend, FAST).send_chat(USER, SendChatOptions(model="m"))
        assert exc_info.value is original
        assert backend.calls == 1

    async def test_end_to_end_over_http(self):
        calls = {"n": 0}
        body = "".join(
            f"data: {json.dumps(e)}\n\n" for e in (_openai("ok"),)
        ) + "data: [DONE]\n\n"

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] < 3:
                return httpx.Response(429, content=b"slow down")
            return httpx.Response(200, content=body.encode())

        backend = OpenAICompatBackend(
            "openai", "http://test/v1", "k", transport=httpx.MockTransport(handler),
        )
        async with ProviderWrapper(backend, FAST) as wrapper:
            result = await wrapper.send_chat(USER, SendChatOptions(model="gpt-4o"))
        assert result.text == "ok"
        assert calls["n"] == 3


# ---------------------------------------------------------------------------
# Stream failures
# ---------------------------------------------------------------------------

class TestStreamFailure:
    async def test_mid_stream_failure_not_retried(self):
        async def broken():
            yield _openai("partial")
            raise ConnectionError("connection reset by peer")

        seen: list[str] = []
        backend = FakeBackend(broken)
        with pytest.raises(ProviderStreamError) as exc_info:
            await ProviderWrapper(backend, FAST).send_chat(
                USER, SendChatOptions(model="m", on_text=seen.append),
            )
        err = exc_info.value
        assert backend.calls == 1
        assert seen == ["partial"]
        assert err.category is ErrorCategory.STREAM
        assert err.retryable is False
        assert "connection reset by peer" in err.message
        assert isinstance(err.original_error, ConnectionError)

    async def test_non_chunk_from_custom_backend(self):
        backend = FakeBackend([{"not": "a chunk"}], provider="custom")
        with pytest.raises(ProviderStreamError):
            await ProviderWrapper(backend, FAST).send_chat(USER, SendChatOptions(model="m"))

    async def test_stream_closed_after_failure(self):
        closed = {"flag": False}

        async def broken():
            try:
                yield _openai("a")
                raise RuntimeError("boom")
            finally:
                closed["flag"] = True

        with pytest.raises(ProviderStreamError):
            await ProviderWrapper(FakeBackend(broken), FAST).send_chat(
                USER, SendChatOptions(model="m"),
            )
        assert closed["flag"]

    async def test_retryable_provider_error_mid_stream_becomes_stream_error(self):
        upstream = ProviderRequestError(
            "upstream 503", "fake", category=ErrorCategory.SERVER_ERROR, retryable=True,
        )

        async def broken():
            yield _openai("partial")
            raise upstream

        seen: list[str] = []
        backend = FakeBackend(broken)
        with pytest.raises(ProviderStreamError) as exc_info:
            await ProviderWrapper(backend, FAST).send_chat(
                USER, SendChatOptions(model="m", on_text=seen.append),
            )
        err = exc_info.value
        assert seen == ["partial"]
        assert backend.calls == 1
        assert err.category is ErrorCategory.STREAM
        assert err.retryable is False
        assert err.original_error is upstream
        assert "upstream 503" in err.message

    async def test_close_failure_after_success_is_stream_error(self):
        backend = FakeBackend(lambda: _FailingClose([_openai("ok")]))
        with pytest.raises(ProviderStreamError) as exc_info:
            await ProviderWrapper(backend, FAST).send_chat(USER, SendChatOptions(model="m"))
        err = exc_info.value
        assert err.provider_name == "fake"
        assert err.retryable is False
        assert isinstance(err.original_error, ConnectionError)
        assert "connection reset while closing" in err.message

    async def test_close_failure_does_not_mask_stream_error(self, caplog):
        stream = _FailingClose([_openai("a")], fail_with=RuntimeError("decoder exploded"))
        backend = FakeBackend(lambda: stream)
        with caplog.at_level(logging.WARNING, logger="llm_relay"):
            with pytest.raises(ProviderStreamError) as exc_info:
                await ProviderWrapper(backend, FAST).send_chat(USER, SendChatOptions(model="m"))
        assert "decoder exploded" in exc_info.value.message
        assert stream.close_attempted
        assert any("connection reset while closing" in r.getMessage() for r in caplog.records)


class _FailingClose:
    """Async iterator whose ``aclose`` raises."""

    def __init__(self, items: list[Any], fail_with: BaseException | None = None) -> None:
        self._items = list(items)
        self._fail_with = fail_with
        self.close_attempted = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._items:
            return self._items.pop(0)
        if self._fail_with is not None:
            raise self._fail_with
        raise StopAsyncIteration

    async def aclose(self) -> None:
        self.close_attempted = True
        raise ConnectionError("connection reset while closing")


# ---------------------------------------------------------------------------
# Timeout
# ---------------------------------------------------------------------------

class TestTimeout:
    async def test_call_timeout(self):
        async def slow():
            await asyncio.sleep(10)
            yield _openai("never")

        wrapper = ProviderWrapper(FakeBackend(slow), FAST)
        with pytest.raises(ProviderRequestError, match="timed out") as exc_info:
            await wrapper.send_chat(USER, SendChatOptions(model="m", timeout=0.05))
        assert exc_info.value.category is ErrorCategory.NETWORK
        assert exc_info.value.retryable is False

    async def test_default_timeout_used(self):
        async def slow():
            await asyncio.sleep(10)
            yield _openai("never")

        wrapper = ProviderWrapper(FakeBackend(slow), FAST, default_timeout=0.05)
        with pytest.raises(ProviderRequestError, match="timed out"):
            await wrapper.send_chat(USER, SendChatOptions(model="m"))


# ---------------------------------------------------------------------------
# get_provider_wrapper
# ---------------------------------------------------------------------------

class TestGetProviderWrapper:
    def _config(self) -> RelayConfig:
        return RelayConfig(
            default_provider="local",
            providers={
                "local": ProviderConfig(base_url="http://localhost:1234/v1"),
                "ollama": ProviderConfig(api_type="ollama"),
            },
            retry=RetrySettings(max_retries=1),
            timeout=45,
        )

    async def test_default_provider(self):
        async with get_provider_wrapper(config=self._config()) as wrapper:
            assert wrapper.get_provider_name() == "local"
            assert wrapper._retry_config.max_retries == 1
            assert wrapper._default_timeout == 45

    async def test_named_provider(self):
        async with get_provider_wrapper("ollama", self._config()) as wrapper:
            assert wrapper.provider_name == "ollama"

    def test_unknown_provider(self):
        with pytest.raises(ProviderConfigurationError, match="'missing' is not configured"):
            get_provider_wrapper("missing", self._config())

    def test_blank_provider(self):
        config = self._config()
        config.default_provider = " "
        with pytest.raises(ProviderConfigurationError, match="non-empty"):
            get_provider_wrapper(config=config)

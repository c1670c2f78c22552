"""Translate backend-native stream elements into ``StreamChunk`` objects.

Each adapter is an async generator that pulls one native element at a time
and yields at most one chunk for it, so streaming is never broken by eager
buffering.  Elements that are already ``StreamChunk`` instances pass
through untouched, whatever the backend.

Unknown backend names fall back to an identity mapping.  This is a
best-effort default that lets custom backends take part if they already
emit ``StreamChunk`` objects; nothing validates that they do.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Callable

from llm_relay.types import StreamChunk, TokenUsage, ToolCallDelta

_logger = logging.getLogger(__name__)

Adapter = Callable[[AsyncIterable[Any]], AsyncIterator[Any]]


# ---------------------------------------------------------------------------
# OpenAI-compatible chat-completions deltas
# ---------------------------------------------------------------------------

def _openai_usage(raw: dict[str, Any] | None) -> TokenUsage | None:
    if not raw:
        return None
    return TokenUsage(
        prompt=raw.get("prompt_tokens"),
        completion=raw.get("completion_tokens"),
        total=raw.get("total_tokens"),
    )


def chunk_from_openai(data: dict[str, Any]) -> StreamChunk:
    """Convert one decoded ``chat.completion.chunk`` object."""
    choices = data.get("choices") or [{}]
    choice = choices[0] or {}
    delta = choice.get("delta") or {}

    deltas: list[ToolCallDelta] = []
    for tc in delta.get("tool_calls") or []:
        func = tc.get("function") or {}
        deltas.append(
            ToolCallDelta(
                position=tc.get("index", 0),
                id=tc.get("id"),
                function_name=func.get("name"),
                arguments=func.get("arguments"),
            )
        )

    return StreamChunk(
        text=delta.get("content") or None,
        tool_call_deltas=tuple(deltas),
        finish_reason=choice.get("finish_reason"),
        model=data.get("model"),
        usage=_openai_usage(data.get("usage")),
    )


def _as_dict(item: Any) -> Any:
    # SDK clients yield pydantic models rather than plain dicts.
    dump = getattr(item, "model_dump", None)
    if callable(dump):
        return dump()
    return item


async def _adapt_openai(stream: AsyncIterable[Any]) -> AsyncIterator[Any]:
    async for item in stream:
        if isinstance(item, StreamChunk):
            yield item
            continue
        chunk = chunk_from_openai(_as_dict(item))
        if not chunk.is_empty:
            yield chunk


async def _adapt_mistral(stream: AsyncIterable[Any]) -> AsyncIterator[Any]:
    # The Mistral SDK wraps each completion chunk as {"data": {...}}.
    async for item in stream:
        if isinstance(item, StreamChunk):
            yield item
            continue
        item = _as_dict(item)
        if isinstance(item, dict) and isinstance(item.get("data"), dict):
            item = item["data"]
        chunk = chunk_from_openai(item)
        if not chunk.is_empty:
            yield chunk


# ---------------------------------------------------------------------------
# Ollama native /api/chat
# ---------------------------------------------------------------------------

def _encode_arguments(args: Any) -> str:
    if args is None:
        return ""
    if isinstance(args, str):
        return args
    return json.dumps(args)


async def _adapt_ollama(stream: AsyncIterable[Any]) -> AsyncIterator[Any]:
    # Ollama sends each tool call whole and without an index, so positions
    # are assigned in arrival order for the lifetime of this stream.
    next_position = 0
    async for item in stream:
        if isinstance(item, StreamChunk):
            yield item
            continue

        item = _as_dict(item)
        msg = item.get("message") or {}
        deltas: list[ToolCallDelta] = []
        for tc in msg.get("tool_calls") or []:
            func = tc.get("function") or {}
            position = next_position
            next_position += 1
            deltas.append(
                ToolCallDelta(
                    position=position,
                    id=tc.get("id") or f"call_{position}",
                    function_name=func.get("name"),
                    arguments=_encode_arguments(func.get("arguments")),
                )
            )

        usage = None
        if item.get("done"):
            prompt = item.get("prompt_eval_count")
            completion = item.get("eval_count")
            if prompt is not None or completion is not None:
                usage = TokenUsage(
                    prompt=prompt,
                    completion=completion,
                    total=(prompt or 0) + (completion or 0),
                )

        chunk = StreamChunk(
            text=msg.get("content") or None,
            tool_call_deltas=tuple(deltas),
            finish_reason=item.get("done_reason") if item.get("done") else None,
            model=item.get("model"),
            usage=usage,
        )
        if not chunk.is_empty:
            yield chunk


# ---------------------------------------------------------------------------
# Gemini streamGenerateContent
# ---------------------------------------------------------------------------

async def _adapt_gemini(stream: AsyncIterable[Any]) -> AsyncIterator[Any]:
    next_position = 0
    async for item in stream:
        if isinstance(item, StreamChunk):
            yield item
            continue

        item = _as_dict(item)
        candidates = item.get("candidates") or [{}]
        candidate = candidates[0] or {}
        parts = (candidate.get("content") or {}).get("parts") or []

        text_parts: list[str] = []
        deltas: list[ToolCallDelta] = []
        for part in parts:
            if part.get("text"):
                text_parts.append(part["text"])
            call = part.get("functionCall")
            if call:
                position = next_position
                next_position += 1
                deltas.append(
                    ToolCallDelta(
                        position=position,
                        id=call.get("id") or f"call_{position}",
                        function_name=call.get("name"),
                        arguments=_encode_arguments(call.get("args") or {}),
                    )
                )

        usage = None
        meta = item.get("usageMetadata")
        if meta:
            usage = TokenUsage(
                prompt=meta.get("promptTokenCount"),
                completion=meta.get("candidatesTokenCount"),
                total=meta.get("totalTokenCount"),
            )

        chunk = StreamChunk(
            text="".join(text_parts) or None,
            tool_call_deltas=tuple(deltas),
            finish_reason=candidate.get("finishReason"),
            model=item.get("modelVersion"),
            usage=usage,
        )
        if not chunk.is_empty:
            yield chunk


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

async def _identity(stream: AsyncIterable[Any]) -> AsyncIterator[Any]:
    async for item in stream:
        yield item


_ADAPTERS: dict[str, Adapter] = {
    "openai": _adapt_openai,
    "azure": _adapt_openai,
    "groq": _adapt_openai,
    "openrouter": _adapt_openai,
    "lmstudio": _adapt_openai,
    "vllm": _adapt_openai,
    "mistral": _adapt_mistral,
    "ollama": _adapt_ollama,
    "gemini": _adapt_gemini,
    "google": _adapt_gemini,
}


def adapter_for(backend_name: str) -> Adapter:
    """Return the adapter for *backend_name*, or the identity adapter."""
    adapter = _ADAPTERS.get(backend_name.lower())
    if adapter is None:
        _logger.debug(
            "No stream adapter for backend %r; passing elements through",
            backend_name,
        )
        return _identity
    return adapter


def normalize_stream(
    backend_name: str,
    stream: AsyncIterable[Any],
) -> AsyncIterator[StreamChunk]:
    """Return a lazy ``StreamChunk`` iterator over a native *stream*."""
    return adapter_for(backend_name)(stream)

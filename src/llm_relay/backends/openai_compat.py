"""OpenAI-compatible streaming backend (OpenAI, Azure, Groq, LM Studio, ...)."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Sequence

import httpx

from llm_relay.types import ChatMessage, ToolSpec, validate_transcript

from .base import ChatBackend, ToolChoice, open_stream

_logger = logging.getLogger(__name__)


class OpenAICompatBackend(ChatBackend):
    """Streams ``/chat/completions`` over SSE and yields decoded chunk dicts."""

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str = "no-key",
        *,
        provider: str = "openai",
        timeout: float = 120,
        extra_params: dict[str, Any] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(name, provider)
        self.extra_params = dict(extra_params or {})
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout, connect=30, read=60),
            transport=transport,
        )

    def build_payload(
        self,
        messages: Sequence[ChatMessage],
        model: str,
        tools: Sequence[ToolSpec] | None,
        tool_choice: ToolChoice | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": [m.to_dict() for m in messages],
            "stream": True,
        }
        if tools:
            payload["tools"] = [t.to_openai() for t in tools]
            if tool_choice:
                payload["tool_choice"] = tool_choice
        if self.extra_params:
            payload.update(self.extra_params)
        return payload

    async def get_completion_stream(
        self,
        messages: Sequence[ChatMessage],
        *,
        model: str,
        tools: Sequence[ToolSpec] | None = None,
        tool_choice: ToolChoice | None = None,
    ) -> AsyncIterator[Any]:
        validate_transcript(messages)
        payload = self.build_payload(messages, model, tools, tool_choice)
        resp = await open_stream(self._client, "/chat/completions", payload)
        _logger.info("%s: stream opened (model=%s)", self.name, model)
        return self._iter_events(resp)

    async def _iter_events(self, resp: httpx.Response) -> AsyncIterator[Any]:
        try:
            async for raw_line in resp.aiter_lines():
                if not raw_line.startswith("data:"):
                    continue
                data_str = raw_line[5:].strip()
                if data_str == "[DONE]":
                    break
                try:
                    data = json.loads(data_str)
                except json.JSONDecodeError:
                    _logger.debug("%s: skipping undecodable SSE line", self.name)
                    continue
                if "error" in data and not data.get("choices"):
                    err = data["error"]
                    message = err.get("message", err) if isinstance(err, dict) else err
                    raise RuntimeError(f"{self.name} stream error: {message}")
                yield data
        finally:
            await resp.aclose()

    async def close(self) -> None:
        await self._client.aclose()

"""Ollama native ``/api/chat`` streaming backend."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Sequence

import httpx

from llm_relay.types import ChatMessage, ToolSpec, validate_transcript

from .base import ChatBackend, ToolChoice, open_stream

_logger = logging.getLogger(__name__)


def _ollama_message(msg: ChatMessage) -> dict[str, Any]:
    data: dict[str, Any] = {"role": msg.role, "content": msg.content or ""}
    if msg.tool_calls:
        calls = []
        for tc in msg.tool_calls:
            try:
                args = tc.parsed_arguments()
            except ValueError:
                args = {}
            calls.append({"function": {"name": tc.function_name, "arguments": args}})
        data["tool_calls"] = calls
    if msg.role == "tool" and msg.name:
        data["tool_name"] = msg.name
    return data


class OllamaBackend(ChatBackend):
    """Streams NDJSON from Ollama and yields decoded line dicts."""

    def __init__(
        self,
        name: str,
        base_url: str = "http://localhost:11434",
        *,
        context_length: int = 0,
        timeout: float = 120,
        extra_params: dict[str, Any] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(name, "ollama")
        self.context_length = context_length
        self.extra_params = dict(extra_params or {})
        # The native API lives beside the OpenAI-compatible /v1 prefix.
        base_url = base_url.rstrip("/").removesuffix("/v1")
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(timeout, connect=30, read=60),
            transport=transport,
        )

    def build_payload(
        self,
        messages: Sequence[ChatMessage],
        model: str,
        tools: Sequence[ToolSpec] | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": [_ollama_message(m) for m in messages],
            "stream": True,
        }
        if self.context_length > 0:
            payload["options"] = {"num_ctx": self.context_length}
        if tools:
            payload["tools"] = [t.to_openai() for t in tools]
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
        # Ollama has no tool_choice parameter; it is accepted and ignored.
        validate_transcript(messages)
        payload = self.build_payload(messages, model, tools)
        resp = await open_stream(self._client, "/api/chat", payload)
        _logger.info("%s: stream opened (model=%s)", self.name, model)
        return self._iter_lines(resp)

    async def _iter_lines(self, resp: httpx.Response) -> AsyncIterator[Any]:
        try:
            async for line in resp.aiter_lines():
                if not line.strip():
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    _logger.debug("%s: skipping undecodable line", self.name)
                    continue
                if data.get("error"):
                    raise RuntimeError(f"{self.name} stream error: {data['error']}")
                yield data
                if data.get("done"):
                    break
        finally:
            await resp.aclose()

    async def close(self) -> None:
        await self._client.aclose()

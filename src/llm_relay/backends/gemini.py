"""Gemini ``streamGenerateContent`` backend over SSE."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Sequence

import httpx

from llm_relay.types import ChatMessage, ToolSpec, validate_transcript

from .base import ChatBackend, ToolChoice, open_stream

_logger = logging.getLogger(__name__)

_DEFAULT_URL = "https://generativelanguage.googleapis.com/v1beta"


def _function_names(messages: Sequence[ChatMessage]) -> dict[str, str]:
    """Map tool-call ids to function names, for ``functionResponse`` parts."""
    names: dict[str, str] = {}
    for msg in messages:
        for tc in msg.tool_calls:
            names[tc.id] = tc.function_name
    return names


def build_contents(
    messages: Sequence[ChatMessage],
) -> tuple[list[dict[str, Any]], dict[str, Any] | None]:
    """Translate a transcript into Gemini ``contents`` + ``systemInstruction``."""
    system_parts: list[dict[str, Any]] = []
    contents: list[dict[str, Any]] = []
    call_names = _function_names(messages)

    for msg in messages:
        if msg.role == "system":
            system_parts.append({"text": msg.content or ""})
            continue

        if msg.role == "tool":
            name = msg.name or call_names.get(msg.tool_call_id or "", "")
            contents.append({
                "role": "user",
                "parts": [{
                    "functionResponse": {
                        "name": name,
                        "response": {"content": msg.content or ""},
                    },
                }],
            })
            continue

        parts: list[dict[str, Any]] = []
        if msg.content:
            parts.append({"text": msg.content})
        for tc in msg.tool_calls:
            try:
                args = tc.parsed_arguments()
            except ValueError:
                args = {}
            parts.append({"functionCall": {"name": tc.function_name, "args": args}})
        contents.append({
            "role": "model" if msg.role == "assistant" else "user",
            "parts": parts or [{"text": ""}],
        })

    system = {"parts": system_parts} if system_parts else None
    return contents, system


def _tool_config(tool_choice: ToolChoice | None) -> dict[str, Any] | None:
    if tool_choice is None:
        return None
    if tool_choice == "none":
        return {"functionCallingConfig": {"mode": "NONE"}}
    if tool_choice == "auto":
        return {"functionCallingConfig": {"mode": "AUTO"}}
    if isinstance(tool_choice, dict):
        name = (tool_choice.get("function") or {}).get("name")
        if name:
            return {
                "functionCallingConfig": {
                    "mode": "ANY",
                    "allowedFunctionNames": [name],
                },
            }
    return None


class GeminiBackend(ChatBackend):
    """Streams Gemini responses and yields decoded SSE payload dicts."""

    def __init__(
        self,
        name: str,
        api_key: str,
        base_url: str = _DEFAULT_URL,
        *,
        timeout: float = 120,
        extra_params: dict[str, Any] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(name, "gemini")
        self.extra_params = dict(extra_params or {})
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "x-goog-api-key": api_key,
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout, connect=30, read=60),
            transport=transport,
        )

    def build_payload(
        self,
        messages: Sequence[ChatMessage],
        tools: Sequence[ToolSpec] | None,
        tool_choice: ToolChoice | None,
    ) -> dict[str, Any]:
        contents, system = build_contents(messages)
        payload: dict[str, Any] = {"contents": contents}
        if system:
            payload["systemInstruction"] = system
        if tools:
            payload["tools"] = [{
                "functionDeclarations": [
                    {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters,
                    }
                    for t in tools
                ],
            }]
            tool_config = _tool_config(tool_choice)
            if tool_config:
                payload["toolConfig"] = tool_config
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
        payload = self.build_payload(messages, tools, tool_choice)
        resp = await open_stream(
            self._client,
            f"/models/{model}:streamGenerateContent",
            payload,
            params={"alt": "sse"},
        )
        _logger.info("%s: stream opened (model=%s)", self.name, model)
        return self._iter_events(resp)

    async def _iter_events(self, resp: httpx.Response) -> AsyncIterator[Any]:
        try:
            async for raw_line in resp.aiter_lines():
                if not raw_line.startswith("data:"):
                    continue
                try:
                    data = json.loads(raw_line[5:].strip())
                except json.JSONDecodeError:
                    _logger.debug("%s: skipping undecodable SSE line", self.name)
                    continue
                if "error" in data:
                    err = data["error"]
                    message = err.get("message", err) if isinstance(err, dict) else err
                    raise RuntimeError(f"{self.name} stream error: {message}")
                yield data
        finally:
            await resp.aclose()

    async def close(self) -> None:
        await self._client.aclose()

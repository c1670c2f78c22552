"""Base class for chat backends."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Sequence

import httpx

from llm_relay.types import ChatMessage, ToolSpec

_logger = logging.getLogger(__name__)

ToolChoice = str | dict[str, Any]


class BackendHTTPError(Exception):
    """Non-success HTTP status while opening a stream.

    The message starts with the numeric status so that keyword
    classification can recognise it (``"429 Too Many Requests: ..."``).
    """

    def __init__(self, status_code: int, reason: str, body: str = "") -> None:
        detail = f": {body.strip()[:500]}" if body.strip() else ""
        super().__init__(f"{status_code} {reason}{detail}")
        self.status_code = status_code
        self.body = body


class ChatBackend(ABC):
    """A provider reachable through its own HTTP API.

    Parameters
    ----------
    name:
        Configured name (used in error messages and logs).
    provider:
        Stream format key used to pick the stream adapter
        (``"openai"``, ``"ollama"``, ``"gemini"``, ...).
    """

    def __init__(self, name: str, provider: str) -> None:
        self.name = name
        self.provider = provider

    @abstractmethod
    async def get_completion_stream(
        self,
        messages: Sequence[ChatMessage],
        *,
        model: str,
        tools: Sequence[ToolSpec] | None = None,
        tool_choice: ToolChoice | None = None,
    ) -> AsyncIterator[Any]:
        """Open a streaming completion and return its native elements.

        Connection and status failures raise here.  Failures after the
        stream is open are raised while iterating.
        """

    async def close(self) -> None:
        """Release underlying connections."""


async def open_stream(
    client: httpx.AsyncClient,
    url: str,
    payload: dict[str, Any],
    params: dict[str, str] | None = None,
) -> httpx.Response:
    """POST *payload* and return the open streaming response.

    Raises ``BackendHTTPError`` for any non-2xx status, after closing the
    response.
    """
    request = client.build_request("POST", url, json=payload, params=params)
    resp = await client.send(request, stream=True)
    if resp.status_code >= 400:
        try:
            body = (await resp.aread()).decode(errors="replace")
        except httpx.HTTPError:
            body = ""
        finally:
            await resp.aclose()
        _logger.debug("Stream request to %s returned %d", url, resp.status_code)
        raise BackendHTTPError(resp.status_code, resp.reason_phrase, body)
    return resp

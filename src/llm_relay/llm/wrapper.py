"""Unified request facade over every chat backend.

``ProviderWrapper.send_chat`` runs one request through four stages:

  validating -> requesting -> streaming/assembling -> done | failed

Validation failures are raised immediately.  Only the *requesting* stage
(opening the backend stream) is retried: once content has started to flow,
a retry would duplicate or corrupt what the caller already displayed, so
streaming failures surface as ``ProviderStreamError`` without retry.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Callable, Sequence

from llm_relay.backends.base import ChatBackend, ToolChoice
from llm_relay.backends.registry import create_backend
from llm_relay.config import RelayConfig, load_config
from llm_relay.errors import (
    ProviderConfigurationError,
    ProviderError,
    ProviderRequestError,
    ProviderStreamError,
)
from llm_relay.types import (
    AssembledResponse,
    ChatMessage,
    ErrorCategory,
    ResponseMetadata,
    StreamChunk,
    TokenUsage,
    ToolSpec,
)

from .assembler import assemble_stream
from .classifier import (
    RETRYABLE_CATEGORIES,
    categorize_error,
    default_should_retry,
    error_message,
)
from .normalizer import normalize_stream
from .retry import RetryConfig, with_retry

_logger = logging.getLogger(__name__)


@dataclass
class SendChatOptions:
    """Per-call options for :meth:`ProviderWrapper.send_chat`."""

    model: str
    tools: Sequence[ToolSpec] | None = None
    tool_choice: ToolChoice | None = "auto"
    on_text: Callable[[str], Any] | None = None
    timeout: float | None = None  # seconds, whole call


def request_should_retry(error: BaseException, category: ErrorCategory) -> bool:
    """Retry policy for opening a stream.  ``unknown`` is not retried."""
    if isinstance(error, ProviderError):
        return error.retryable
    return default_should_retry(error, category)


_CATEGORY_PREFIX = {
    ErrorCategory.NETWORK: "Network error communicating with {name}",
    ErrorCategory.RATE_LIMIT: "Rate limit exceeded for {name}",
    ErrorCategory.SERVER_ERROR: "Server error from {name}",
    ErrorCategory.CLIENT_ERROR: "Request to {name} was rejected",
    ErrorCategory.UNKNOWN: "Request to {name} failed",
}


class _MetadataTap:
    """Pass chunks through while remembering the latest metadata seen."""

    def __init__(self) -> None:
        self.model: str | None = None
        self.finish_reason: str | None = None
        self.usage: TokenUsage | None = None

    async def wrap(self, chunks: AsyncIterable[StreamChunk]) -> AsyncIterator[StreamChunk]:
        async for chunk in chunks:
            if chunk.model:
                self.model = chunk.model
            if chunk.finish_reason:
                self.finish_reason = chunk.finish_reason
            if chunk.usage is not None:
                self.usage = chunk.usage
            yield chunk

    def metadata(self) -> ResponseMetadata | None:
        if self.model is None and self.finish_reason is None and self.usage is None:
            return None
        return ResponseMetadata(
            model=self.model,
            finish_reason=self.finish_reason,
            usage=self.usage,
        )


class ProviderWrapper:
    """Send chats to one backend and return normalized responses.

    Usage::

        wrapper = ProviderWrapper(OpenAICompatBackend("openai", url, key))
        response = await wrapper.send_chat(
            [ChatMessage(role="user", content="Hello!")],
            SendChatOptions(model="gpt-4o", on_text=print),
        )

    Each call keeps its own accumulator, so one wrapper may serve
    concurrent ``send_chat`` calls.
    """

    def __init__(
        self,
        backend: ChatBackend,
        retry_config: RetryConfig | None = None,
        *,
        default_timeout: float | None = None,
    ) -> None:
        self._backend = backend
        self._retry_config = retry_config or RetryConfig()
        self._default_timeout = default_timeout

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def provider_name(self) -> str:
        return self._backend.name

    def get_provider_name(self) -> str:
        """Name of the wrapped backend, for logging and error display."""
        return self._backend.name

    async def send_chat(
        self,
        messages: Sequence[ChatMessage],
        options: SendChatOptions,
    ) -> AssembledResponse:
        """Send *messages* and return the assembled response.

        Raises
        ------
        ProviderError
            Invalid input (never retried).
        ProviderConfigurationError
            Credentials were rejected.
        ProviderRequestError
            The stream could not be opened, after any retries.
        ProviderStreamError
            The stream failed part-way.
        """
        self._validate(messages, options)

        timeout = options.timeout if options.timeout is not None else self._default_timeout
        if timeout is None:
            return await self._send(messages, options)

        try:
            return await asyncio.wait_for(self._send(messages, options), timeout)
        except asyncio.TimeoutError as e:
            raise ProviderRequestError(
                f"Request to {self.provider_name} timed out after {timeout}s",
                self.provider_name,
                category=ErrorCategory.NETWORK,
                retryable=False,
                original_error=e,
            ) from e

    async def close(self) -> None:
        await self._backend.close()

    async def __aenter__(self) -> ProviderWrapper:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _validate(
        self,
        messages: Sequence[ChatMessage],
        options: SendChatOptions,
    ) -> None:
        if not messages:
            raise ProviderError(
                "Messages array cannot be empty",
                self.provider_name,
                category=ErrorCategory.CLIENT_ERROR,
            )
        if not isinstance(options.model, str) or not options.model.strip():
            raise ProviderError(
                "Model must be specified as a non-empty string",
                self.provider_name,
                category=ErrorCategory.CLIENT_ERROR,
            )

    async def _send(
        self,
        messages: Sequence[ChatMessage],
        options: SendChatOptions,
    ) -> AssembledResponse:
        _logger.info(
            "%s: sending %d messages (model=%s)",
            self.provider_name, len(messages), options.model,
        )
        stream = await self._request(messages, options)

        tap = _MetadataTap()
        failure: ProviderStreamError | None = None
        try:
            chunks = normalize_stream(self._backend.provider, stream)
            assembled = await assemble_stream(tap.wrap(chunks), options.on_text)
        except Exception as e:
            # Includes ProviderError: once text has flowed nothing is retryable.
            failure = self._stream_failure(e)
        except BaseException as e:
            await self._close_stream(stream, e)
            raise

        await self._close_stream(stream, failure)
        if failure is not None:
            raise failure

        _logger.info(
            "%s: response assembled (%d chars, %d tool calls)",
            self.provider_name, len(assembled.text), len(assembled.tool_calls),
        )
        return AssembledResponse(
            text=assembled.text,
            tool_calls=assembled.tool_calls,
            metadata=tap.metadata(),
        )

    async def _request(
        self,
        messages: Sequence[ChatMessage],
        options: SendChatOptions,
    ) -> Any:
        async def _open() -> Any:
            return await self._backend.get_completion_stream(
                messages,
                model=options.model,
                tools=options.tools,
                tool_choice=options.tool_choice,
            )

        try:
            return await with_retry(
                _open,
                self._retry_config,
                should_retry=request_should_retry,
            )
        except ProviderError:
            raise
        except Exception as e:
            raise self._request_failure(e) from e

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _stream_failure(self, error: BaseException) -> ProviderStreamError:
        return ProviderStreamError(
            f"Stream from {self.provider_name} failed: {error_message(error)}",
            self.provider_name,
            original_error=error,
        )

    async def _close_stream(self, stream: Any, pending: BaseException | None) -> None:
        """Close *stream*.  A close failure is logged if *pending* is already
        propagating, otherwise raised as ``ProviderStreamError``.
        """
        aclose = getattr(stream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            if pending is not None:
                _logger.warning(
                    "%s: failed to close stream after error: %s",
                    self.provider_name, error_message(e),
                )
                return
            raise self._stream_failure(e) from e

    def _request_failure(self, error: BaseException) -> ProviderError:
        """Map a failure to open the stream onto a typed error."""
        name = self.provider_name
        message = error_message(error)
        category = categorize_error(error)

        if category is ErrorCategory.AUTHENTICATION:
            return ProviderConfigurationError(
                f"Authentication failed for {name}: {message}",
                name,
                category=category,
                original_error=error,
            )
        prefix = _CATEGORY_PREFIX[category].format(name=name)
        return ProviderRequestError(
            f"{prefix}: {message}",
            name,
            category=category,
            retryable=category in RETRYABLE_CATEGORIES,
            original_error=error,
        )


def get_provider_wrapper(
    name: str | None = None,
    config: RelayConfig | None = None,
) -> ProviderWrapper:
    """Build a wrapper for the provider profile *name*.

    *config* defaults to :func:`~llm_relay.config.load_config`; *name*
    defaults to ``config.default_provider``.
    """
    if config is None:
        config, _ = load_config()
    provider = name or config.default_provider
    if not provider or not provider.strip():
        raise ProviderConfigurationError(
            "Provider name must be a non-empty string", provider or "",
        )

    profile = config.providers.get(provider)
    if profile is None:
        raise ProviderConfigurationError(
            f"Provider '{provider}' is not configured", provider,
        )

    backend = create_backend(provider, profile)
    return ProviderWrapper(
        backend,
        config.retry.to_retry_config(),
        default_timeout=config.timeout,
    )

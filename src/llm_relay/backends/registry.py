"""Build chat backends from configuration profiles."""

from __future__ import annotations

import logging

from llm_relay.config import ProviderConfig
from llm_relay.errors import ProviderConfigurationError

from .base import ChatBackend
from .gemini import GeminiBackend
from .ollama import OllamaBackend
from .openai_compat import OpenAICompatBackend

_logger = logging.getLogger(__name__)

# Profile names whose OpenAI-compatible stream has a dedicated adapter.
_OPENAI_FAMILY = ("openai", "azure", "groq", "openrouter", "lmstudio", "vllm", "mistral")


def create_backend(name: str, config: ProviderConfig) -> ChatBackend:
    """Instantiate the backend described by *config*.

    Raises ``ProviderConfigurationError`` for disabled profiles, unknown API
    types and missing credentials.
    """
    if not config.enabled:
        raise ProviderConfigurationError(
            f"Provider '{name}' is not enabled", name,
        )

    try:
        api_key = config.resolve_api_key()
    except ValueError as e:
        raise ProviderConfigurationError(
            f"Failed to initialize provider '{name}': {e}", name,
            original_error=e,
        ) from e

    api_type = config.api_type.lower()
    _logger.debug("Creating %s backend for provider %r", api_type, name)

    if api_type == "openai":
        if not config.base_url:
            raise ProviderConfigurationError(
                f"Provider '{name}' has no base_url", name,
            )
        # Named OpenAI-family profiles keep their own stream adapter;
        # everything else speaks the plain OpenAI delta format.
        provider = name.lower() if name.lower() in _OPENAI_FAMILY else "openai"
        return OpenAICompatBackend(
            name,
            config.base_url,
            api_key,
            provider=provider,
            extra_params=config.extra_params,
        )
    if api_type == "ollama":
        return OllamaBackend(
            name,
            config.base_url or "http://localhost:11434",
            context_length=config.context_length,
            extra_params=config.extra_params,
        )
    if api_type == "gemini":
        kwargs = {"base_url": config.base_url} if config.base_url else {}
        return GeminiBackend(
            name, api_key, extra_params=config.extra_params, **kwargs,
        )

    raise ProviderConfigurationError(
        f"Unknown or unsupported api_type '{config.api_type}' for provider '{name}'",
        name,
    )

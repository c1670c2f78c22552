"""Chat backends reached over each provider's HTTP API."""

from llm_relay.backends.base import BackendHTTPError, ChatBackend
from llm_relay.backends.gemini import GeminiBackend
from llm_relay.backends.ollama import OllamaBackend
from llm_relay.backends.openai_compat import OpenAICompatBackend
from llm_relay.backends.registry import create_backend

__all__ = [
    "BackendHTTPError",
    "ChatBackend",
    "GeminiBackend",
    "OllamaBackend",
    "OpenAICompatBackend",
    "create_backend",
]

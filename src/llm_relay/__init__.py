"""llm-relay: streaming chat across LLM backends with classified retries."""

from llm_relay.config import RelayConfig, load_config
from llm_relay.errors import (
    ProviderConfigurationError,
    ProviderError,
    ProviderRequestError,
    ProviderStreamError,
    is_provider_error,
    is_retryable_error,
)
from llm_relay.llm.wrapper import ProviderWrapper, SendChatOptions, get_provider_wrapper
from llm_relay.types import (
    AssembledResponse,
    ChatMessage,
    ErrorCategory,
    ResponseMetadata,
    StreamChunk,
    ToolCall,
    ToolCallDelta,
    ToolSpec,
)

__version__ = "0.1.0"

__all__ = [
    "AssembledResponse",
    "ChatMessage",
    "ErrorCategory",
    "ProviderConfigurationError",
    "ProviderError",
    "ProviderRequestError",
    "ProviderStreamError",
    "ProviderWrapper",
    "RelayConfig",
    "ResponseMetadata",
    "SendChatOptions",
    "StreamChunk",
    "ToolCall",
    "ToolCallDelta",
    "ToolSpec",
    "get_provider_wrapper",
    "is_provider_error",
    "is_retryable_error",
    "load_config",
]

"""Stream normalization, assembly and retry for llm-relay.

The request facade lives in :mod:`llm_relay.llm.wrapper` (it imports the
configuration layer, which imports :mod:`llm_relay.llm.retry`).
"""

from llm_relay.llm.assembler import StreamAssembler, assemble_stream
from llm_relay.llm.classifier import (
    ErrorCategory,
    categorize_error,
    command_should_retry,
    default_should_retry,
)
from llm_relay.llm.normalizer import chunk_from_openai, normalize_stream
from llm_relay.llm.retry import (
    RetryConfig,
    RetryResult,
    calculate_backoff_delay,
    retry_with_result,
    with_retry,
)

__all__ = [
    "ErrorCategory",
    "RetryConfig",
    "RetryResult",
    "StreamAssembler",
    "assemble_stream",
    "calculate_backoff_delay",
    "categorize_error",
    "chunk_from_openai",
    "command_should_retry",
    "default_should_retry",
    "normalize_stream",
    "retry_with_result",
    "with_retry",
]

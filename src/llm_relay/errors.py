"""Exception hierarchy for provider communication.

Every error raised out of ``ProviderWrapper.send_chat`` is a
``ProviderError`` carrying the backend name, a category, and whether a
retry could have helped.  A CLI uses those to decide between suggesting a
provider switch and failing hard.
"""

from __future__ import annotations

from llm_relay.types import ErrorCategory


class ProviderError(Exception):
    """Base error for provider-related failures."""

    def __init__(
        self,
        message: str,
        provider_name: str,
        *,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        retryable: bool = False,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.provider_name = provider_name
        self.category = category
        self.retryable = retryable
        self.original_error = original_error
        if original_error is not None:
            self.__cause__ = original_error

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.message!r}, "
            f"provider={self.provider_name!r}, category={self.category.value!r}, "
            f"retryable={self.retryable})"
        )


class ProviderConfigurationError(ProviderError):
    """Missing or invalid backend setup (including rejected credentials)."""

    def __init__(
        self,
        message: str,
        provider_name: str,
        *,
        category: ErrorCategory = ErrorCategory.CLIENT_ERROR,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(
            message,
            provider_name,
            category=category,
            retryable=False,
            original_error=original_error,
        )


class ProviderRequestError(ProviderError):
    """Failure while establishing a request to the backend."""


class ProviderStreamError(ProviderError):
    """Failure while consuming an already-open stream.  Never retryable."""

    def __init__(
        self,
        message: str,
        provider_name: str,
        *,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(
            message,
            provider_name,
            category=ErrorCategory.STREAM,
            retryable=False,
            original_error=original_error,
        )


def is_provider_error(error: object) -> bool:
    return isinstance(error, ProviderError)


def is_retryable_error(error: object) -> bool:
    """True if *error* is a ``ProviderError`` flagged as retryable."""
    return isinstance(error, ProviderError) and error.retryable

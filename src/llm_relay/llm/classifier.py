"""Keyword-based classification of backend failures.

The classifier looks only at the failure's message text.  It is a heuristic:
an unrelated message that happens to contain a keyword (for example a
``"connection"`` mentioned inside a 400 validation error) is classified by
the first keyword list it matches, not by the backend's real error code.
"""

from __future__ import annotations

from llm_relay.types import ErrorCategory


NETWORK_KEYWORDS = (
    "network",
    "connection",
    "timeout",
    "timed out",
    "econnrefused",
    "enotfound",
    "etimedout",
    "fetch failed",
    "socket",
    "dns",
)

RATE_LIMIT_KEYWORDS = (
    "rate limit",
    "too many requests",
    "quota exceeded",
    "429",
)

AUTHENTICATION_KEYWORDS = (
    "authentication",
    "unauthorized",
    "forbidden",
    "api key",
    "invalid key",
    "credential",
    "401",
    "403",
)

SERVER_ERROR_KEYWORDS = (
    "500",
    "502",
    "503",
    "504",
    "internal server error",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
)

CLIENT_ERROR_KEYWORDS = (
    "400",
    "bad request",
    "invalid",
    "validation",
)

# First match wins, in this order.
_RULES: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.NETWORK, NETWORK_KEYWORDS),
    (ErrorCategory.RATE_LIMIT, RATE_LIMIT_KEYWORDS),
    (ErrorCategory.AUTHENTICATION, AUTHENTICATION_KEYWORDS),
    (ErrorCategory.SERVER_ERROR, SERVER_ERROR_KEYWORDS),
    (ErrorCategory.CLIENT_ERROR, CLIENT_ERROR_KEYWORDS),
)

RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.NETWORK,
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.SERVER_ERROR,
})


def error_message(error: BaseException | str) -> str:
    """Best-effort message text for *error*.

    Exceptions with an empty ``str()`` (``httpx.ReadTimeout()`` for one)
    fall back to the exception class name.
    """
    if isinstance(error, str):
        return error
    return str(error) or type(error).__name__


def classify_message(message: str) -> ErrorCategory:
    """Return the category for a raw message string."""
    lower = message.lower()
    for category, keywords in _RULES:
        if any(kw in lower for kw in keywords):
            return category
    return ErrorCategory.UNKNOWN


def categorize_error(error: BaseException | str) -> ErrorCategory:
    """Return the category for an exception (or message)."""
    return classify_message(error_message(error))


def default_should_retry(error: BaseException, category: ErrorCategory) -> bool:
    """Request policy: retry network, rate-limit and server errors only."""
    return category in RETRYABLE_CATEGORIES


def command_should_retry(error: BaseException, category: ErrorCategory) -> bool:
    """Command-execution policy: like the default, but ``unknown`` is retried too."""
    return category in RETRYABLE_CATEGORIES or category is ErrorCategory.UNKNOWN

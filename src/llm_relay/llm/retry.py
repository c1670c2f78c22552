"""Exponential backoff with jitter for fallible async operations.

Delay for attempt ``n`` (0-based) is
``min(initial_delay * backoff_multiplier ** n, max_delay)`` perturbed by a
uniform jitter of ``+/- delay * jitter_factor`` and floored at zero.  All
delays are in seconds.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from .classifier import ErrorCategory, categorize_error, default_should_retry

_logger = logging.getLogger(__name__)

T = TypeVar("T")

ShouldRetryFn = Callable[[BaseException, ErrorCategory], bool]
OnRetryFn = Callable[[int, float, BaseException], Any]
SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryConfig:
    """Backoff schedule.  Invalid combinations are rejected at construction."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be non-negative")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be greater than or equal to initial_delay")
        if self.backoff_multiplier <= 1:
            raise ValueError("backoff_multiplier must be greater than 1")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("jitter_factor must be between 0 and 1")

    def upper_bound(self, attempt: int) -> float:
        """Largest delay :func:`calculate_backoff_delay` can return for *attempt*."""
        return _capped_delay(attempt, self) * (1 + self.jitter_factor)


def _capped_delay(attempt: int, config: RetryConfig) -> float:
    try:
        exponential = config.initial_delay * config.backoff_multiplier ** attempt
    except OverflowError:
        exponential = config.max_delay
    return min(exponential, config.max_delay)


def calculate_backoff_delay(
    attempt: int,
    config: RetryConfig,
    rand: Callable[[], float] = random.random,
) -> float:
    """Return the delay in seconds before retry number ``attempt + 1``."""
    capped = _capped_delay(attempt, config)
    jitter_range = capped * config.jitter_factor
    jitter = rand() * 2 * jitter_range - jitter_range
    return max(0.0, capped + jitter)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    *,
    should_retry: ShouldRetryFn | None = None,
    on_retry: OnRetryFn | None = None,
    sleep: SleepFn = asyncio.sleep,
) -> T:
    """Run *operation*, retrying eligible failures with backoff.

    Parameters
    ----------
    operation:
        Zero-argument coroutine function.  Called once per attempt.
    config:
        Backoff schedule; defaults to ``RetryConfig()``.
    should_retry:
        ``(error, category) -> bool``.  Defaults to
        :func:`~llm_relay.llm.classifier.default_should_retry`.
    on_retry:
        ``(attempt_number, delay, error)`` called before each wait.
        ``attempt_number`` is 1 for the first retry.

    Raises
    ------
    The last error, unchanged, once attempts are exhausted or the failure is
    not eligible for retry.
    """
    cfg = config or RetryConfig()
    decide = should_retry or default_should_retry

    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            category = categorize_error(e)
            if attempt >= cfg.max_retries or not decide(e, category):
                raise

            delay = calculate_backoff_delay(attempt, cfg)
            _logger.warning(
                "Attempt %d/%d failed (%s): %s -- retrying in %.2fs",
                attempt + 1, cfg.max_retries + 1, category.value, e, delay,
            )
            if on_retry is not None:
                on_retry(attempt + 1, delay, e)
            await sleep(delay)
            attempt += 1


@dataclass
class RetryResult(Generic[T]):
    """Outcome of :func:`retry_with_result`."""

    success: bool
    value: T | None = None
    error: BaseException | None = None
    attempts: int = 0
    total_time: float = 0.0


async def retry_with_result(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    *,
    should_retry: ShouldRetryFn | None = None,
    on_retry: OnRetryFn | None = None,
    sleep: SleepFn = asyncio.sleep,
) -> RetryResult[T]:
    """Like :func:`with_retry`, but reports failure instead of raising."""
    start = time.monotonic()
    attempts = 0

    async def _counted() -> T:
        nonlocal attempts
        attempts += 1
        return await operation()

    try:
        value = await with_retry(
            _counted, config,
            should_retry=should_retry, on_retry=on_retry, sleep=sleep,
        )
    except Exception as e:
        return RetryResult(
            success=False,
            error=e,
            attempts=attempts,
            total_time=time.monotonic() - start,
        )
    return RetryResult(
        success=True,
        value=value,
        attempts=attempts,
        total_time=time.monotonic() - start,
    )

"""
Retry Logic: resilience against transient service failures.

Completion and embedding calls fail: networks drop, rate limits hit, servers
return 5xx. Calls are wrapped in ``with_retries`` which applies exponential
backoff with jitter to errors worth retrying and re-raises the rest. When
retries run out the last error is wrapped in TransientServiceFailure, which
the session's error gate turns into an "ignore this?" question.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

import anthropic
import openai
import structlog

from aide.errors import TransientServiceFailure

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_RETRYABLE_STATUS = (408, 409, 429, 500, 502, 503, 504, 529)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        exponential_base: float = 2.0,
        jitter_range: float = 0.25,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter_range = jitter_range

    @classmethod
    def from_model_config(cls, config: Any) -> "RetryConfig":
        return cls(
            max_retries=config.retry_max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            exponential_base=config.retry_exponential_base,
            jitter_range=config.retry_jitter_range,
        )


def is_retryable_error(error: BaseException) -> bool:
    """
    Determine if an error is transient and worth retrying.

    Retryable: rate limits, 5xx/529 overload, connection errors and timeouts
    from either SDK, and plain network errors. Everything else (bad request,
    auth, not found) is a caller problem that retrying won't fix.
    """
    if isinstance(error, (anthropic.RateLimitError, openai.RateLimitError)):
        return True
    if isinstance(error, (anthropic.InternalServerError, openai.InternalServerError)):
        return True
    if isinstance(error, (anthropic.APIConnectionError, openai.APIConnectionError)):
        # Covers the SDKs' APITimeoutError subclasses as well
        return True
    if isinstance(error, (anthropic.APIStatusError, openai.APIStatusError)):
        return error.status_code in _RETRYABLE_STATUS
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    return False


def compute_delay(
    attempt: int,
    config: RetryConfig,
    retry_after: Optional[float] = None,
) -> float:
    """
    Compute the delay before the next retry attempt.

        delay = min(max_delay, base_delay * (exponential_base ^ attempt))
        delay += random jitter in [-jitter_range * delay, +jitter_range * delay]

    A server-provided Retry-After wins, but never less than 1 second.
    """
    if retry_after is not None and retry_after > 0:
        return max(1.0, retry_after)

    delay = config.base_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)

    jitter = delay * config.jitter_range * (2 * random.random() - 1)
    return max(0.05, delay + jitter)


def _retry_after_seconds(error: BaseException) -> Optional[float]:
    response = getattr(error, "response", None)
    if response is None:
        return None
    try:
        value = response.headers.get("retry-after")
        return float(value) if value is not None else None
    except (ValueError, AttributeError, TypeError):
        return None


async def with_retries(
    func: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    operation: str = "request",
) -> T:
    """
    Execute an async callable with retry logic.

    Args:
        func: Zero-argument async callable (use a lambda/closure).
        config: Retry configuration; defaults when omitted.
        on_retry: Called with (attempt, error, delay) before each sleep.
        operation: Label used in logs and in the final error message.

    Raises:
        The original error if it is not retryable, or TransientServiceFailure
        chained to the last error once retries are exhausted.
    """
    if config is None:
        config = RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            return await func()
        except Exception as e:
            if not is_retryable_error(e):
                logger.error(
                    "retry.non_retryable_error",
                    operation=operation,
                    error_type=type(e).__name__,
                    error=str(e),
                    attempt=attempt,
                )
                raise

            if attempt >= config.max_retries:
                logger.error(
                    "retry.exhausted",
                    operation=operation,
                    error_type=type(e).__name__,
                    error=str(e),
                    total_attempts=attempt + 1,
                )
                raise TransientServiceFailure(
                    f"{operation} failed after {attempt + 1} attempts: {type(e).__name__}: {e}"
                ) from e

            delay = compute_delay(attempt, config, _retry_after_seconds(e))
            logger.warning(
                "retry.attempt",
                operation=operation,
                error_type=type(e).__name__,
                error=str(e)[:200],
                attempt=attempt + 1,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 2),
            )
            if on_retry:
                on_retry(attempt + 1, e, delay)

            await asyncio.sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover

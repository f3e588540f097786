"""Bounded retry with backoff and deadline budgeting for outbound provider calls.

Rules:
- Only TransientError (rate limit, 5xx, busy, network) is retried
- The first rate-limit error waits ``rate_limit_initial_delay`` (quotas are per minute)
- Every other retry backs off exponentially from ``base_delay``
- If elapsed time plus the next delay would pass the deadline, the last error
  is surfaced immediately instead of sleeping
- Each attempt's own timeout is clamped to the remaining budget
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
import structlog

from retouch.services.exceptions import (
    InvalidRequestError,
    NetworkError,
    PermanentError,
    ProviderUnavailableError,
    RateLimitError,
    ServiceError,
    TransientError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Minimum per-attempt timeout; below this an attempt is not worth starting
MIN_ATTEMPT_TIMEOUT = 1.0

RetryHook = Callable[[int, float, ServiceError], Awaitable[None]]
ResumeHook = Callable[[int], Awaitable[None]]


@dataclass
class RetryHooks:
    """Callbacks reporting backoff sleeps to the caller."""

    on_retry: Optional[RetryHook] = None
    on_resume: Optional[ResumeHook] = None


@dataclass
class RetryPolicy:
    """Retry/backoff parameters for one generation attempt."""

    max_attempts: int = 5
    base_delay: float = 2.0
    rate_limit_initial_delay: float = 30.0
    max_delay: float = 60.0
    deadline_seconds: float = 240.0
    attempt_timeout: float = 180.0

    def next_delay(self, retry_number: int, error: ServiceError, rate_limit_waited: bool) -> float:
        """Delay before retry number ``retry_number`` (1-based).

        Args:
            retry_number: How many retries will have happened after this delay
            error: The error that triggered the retry
            rate_limit_waited: Whether the long rate-limit delay was already used
        """
        if isinstance(error, RateLimitError) and not rate_limit_waited:
            return self.rate_limit_initial_delay
        return min(self.base_delay * (2 ** (retry_number - 1)), self.max_delay)


def classify_error(exception: Exception) -> ServiceError:
    """Classify an exception into the retry hierarchy.

    Classification rules:
        - Already classified ServiceError → unchanged
        - Missing scheme or malformed URL → InvalidRequestError
        - httpx timeouts / connection errors → NetworkError (retryable)
        - 429, RESOURCE_EXHAUSTED, quota, rate limit → RateLimitError (retryable)
        - 5xx, unavailable, overloaded, busy → TransientError (retryable)
        - 400/404 → InvalidRequestError
        - Anything else → PermanentError
    """
    if isinstance(exception, ServiceError):
        return exception

    if isinstance(exception, (httpx.UnsupportedProtocol, httpx.InvalidURL)):
        return InvalidRequestError(f"Invalid URL: {exception}")

    if isinstance(exception, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return NetworkError(f"Network timeout: {exception}")

    if isinstance(exception, (httpx.TransportError, ConnectionError)):
        return NetworkError(f"Connection error: {exception}")

    return classify_message(str(exception))


def classify_message(message: str, status_code: Optional[int] = None, raw=None) -> ServiceError:
    """Classify an upstream error from its HTTP status and message text."""
    lower = message.lower()

    if (
        status_code == 429
        or "429" in message
        or "resource_exhausted" in lower
        or "resource exhausted" in lower
        or "quota" in lower
        or "rate limit" in lower
        or "too many requests" in lower
    ):
        return RateLimitError(f"Rate limit exceeded: {message}", raw=raw)

    if (
        (status_code is not None and status_code >= 500)
        or "503" in message
        or "unavailable" in lower
        or "overloaded" in lower
        or "busy" in lower
    ):
        return ProviderUnavailableError(f"Service unavailable: {message}", raw=raw)

    if status_code in (400, 404):
        return InvalidRequestError(message, raw=raw)

    return PermanentError(message, raw=raw)


async def call_with_retry(
    operation: Callable[[float], Awaitable[T]],
    policy: RetryPolicy,
    started_at: float,
    *,
    label: str = "provider.call",
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Optional[RetryHook] = None,
    on_resume: Optional[ResumeHook] = None,
) -> T:
    """Run ``operation(timeout)`` until it succeeds or the retry budget runs out.

    Args:
        operation: Coroutine factory receiving the per-attempt timeout in seconds
        policy: Retry parameters
        started_at: ``clock()`` reading when the overall generation began
        label: Log event prefix
        clock: Monotonic clock (injectable for tests)
        sleep: Async sleep (injectable for tests)
        on_retry: Awaited before each backoff sleep with (retry_number, delay, error)
        on_resume: Awaited after each backoff sleep with the retry_number, right
            before the next attempt starts

    Returns:
        The operation's result

    Raises:
        ServiceError: The last error when it is non-retryable, attempts are
            exhausted, or the deadline would be exceeded
    """
    attempt = 0
    rate_limit_waited = False

    while True:
        attempt += 1
        remaining = policy.deadline_seconds - (clock() - started_at)
        timeout = max(min(policy.attempt_timeout, remaining), MIN_ATTEMPT_TIMEOUT)

        try:
            return await operation(timeout)
        except Exception as raw_error:
            error = classify_error(raw_error)
            if error is not raw_error:
                error.__cause__ = raw_error

            if not isinstance(error, TransientError):
                raise error

            if attempt >= policy.max_attempts:
                logger.warning(
                    f"{label}.retries_exhausted",
                    attempt=attempt,
                    error_message=str(error),
                )
                raise error

            delay = policy.next_delay(attempt, error, rate_limit_waited)
            elapsed = clock() - started_at
            if elapsed + delay > policy.deadline_seconds:
                logger.warning(
                    f"{label}.deadline_exceeded",
                    attempt=attempt,
                    elapsed_seconds=round(elapsed, 2),
                    next_delay=delay,
                    deadline_seconds=policy.deadline_seconds,
                    error_message=str(error),
                )
                raise error

            if isinstance(error, RateLimitError):
                rate_limit_waited = True

            logger.warning(
                f"{label}.retry",
                attempt=attempt,
                delay_seconds=delay,
                error_type=type(error).__name__,
                error_message=str(error),
            )
            if on_retry is not None:
                await on_retry(attempt, delay, error)
            await sleep(delay)
            if on_resume is not None:
                await on_resume(attempt)

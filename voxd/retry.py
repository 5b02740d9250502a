"""
Bounded retry with fixed backoff for outbound calls.

Usage:
    text = with_retry(lambda: client.transcribe(...), name="Groq transcription")
"""

import time
from typing import Callable, Sequence, TypeVar

from .errors import AppError, NON_RETRYABLE_CODES, NON_RETRYABLE_STATUSES, http_status_of


T = TypeVar("T")

DEFAULT_MAX_RETRIES = 2
DEFAULT_BACKOFFS = (0.1, 0.2)


def is_retryable(exc: BaseException) -> bool:
    """Transport errors, timeouts and 5xx retry; auth and rate limits do not."""
    if isinstance(exc, AppError):
        return exc.code not in NON_RETRYABLE_CODES
    return http_status_of(exc) not in NON_RETRYABLE_STATUSES


def with_retry(
    operation: Callable[[], T],
    name: str = "Operation",
    max_retries: int = DEFAULT_MAX_RETRIES,
    backoffs: Sequence[float] = DEFAULT_BACKOFFS,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run `operation`, retrying up to `max_retries` times.

    Args:
        operation: Zero-argument callable doing the actual call
        name: Human-readable name for log lines
        max_retries: Retries after the first attempt
        backoffs: Delay before each retry (last value repeats)
        should_retry: Predicate deciding whether an error is transient
        sleep: Injectable sleep for tests

    Returns:
        The operation's result

    Raises:
        The last error once attempts are exhausted, or immediately when
        `should_retry` rejects it.
    """
    total_attempts = max_retries + 1

    for attempt in range(total_attempts):
        try:
            return operation()
        except Exception as e:
            if not should_retry(e) or attempt == max_retries:
                if attempt > 0:
                    print(f"[Retry] {name} failed after {attempt + 1} attempts: {e}")
                raise

            delay = backoffs[min(attempt, len(backoffs) - 1)] if backoffs else 0.2
            print(f"[Retry] {name} attempt {attempt + 1}/{total_attempts} failed: {e}")
            sleep(delay)

    raise RuntimeError("unreachable")

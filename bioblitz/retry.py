"""
Retry logic with exponential backoff for handling transient failures.

One policy object drives every retry loop in the pipeline: upstream page
fetches, the deletion feed, and store writes. Waits are cancellable so a
run can be stopped cleanly while it is backing off.
"""

import functools
import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Optional, Tuple, Type


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""
    pass


class RunCancelled(Exception):
    """Raised at a suspension point once the run's cancel event is set."""
    pass


def should_retry_http_status(status_code: int) -> bool:
    """
    Check if HTTP status code indicates a retryable error.

    Args:
        status_code: HTTP status code

    Returns:
        True for rate limiting, request timeout and any 5xx
    """
    return status_code in (408, 429) or 500 <= status_code < 600


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff schedule shared by fetch and write paths.

    The delay for attempt ``n`` (0-based) is ``min(base_delay * 2**n, max_delay)``
    plus a uniform jitter of up to ``jitter`` times that delay. A server
    retry-after hint raises the wait but never lowers it.
    """

    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 0.25
    retryable_status: Callable[[int], bool] = field(
        default=should_retry_http_status, compare=False
    )
    rng: Callable[[], float] = field(default=random.random, compare=False, repr=False)

    def backoff(self, attempt: int) -> float:
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        return delay + delay * self.jitter * self.rng()

    def compute_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        delay = self.backoff(attempt)
        if retry_after is not None:
            return max(delay, retry_after)
        return delay

    def is_retryable_status(self, status_code: int) -> bool:
        return self.retryable_status(status_code)

    def sleep(self, seconds: float, cancel_event: Optional[threading.Event] = None) -> None:
        """Wait ``seconds``; raise RunCancelled if the event fires first."""
        if seconds <= 0:
            check_cancelled(cancel_event)
            return
        if cancel_event is None:
            time.sleep(seconds)
            return
        if cancel_event.wait(seconds):
            raise RunCancelled("Run cancelled while backing off")


def check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise RunCancelled("Run cancelled")


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a Retry-After header.

    Accepts delta-seconds or an HTTP-date. Returns None when the header is
    missing or unreadable.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def exponential_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable] = None,
    retry_if: Optional[Callable[[Exception], bool]] = None,
    policy: Optional[RetryPolicy] = None,
    cancel_event: Optional[threading.Event] = None,
):
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts (0 = no retries)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay between retries in seconds
        exceptions: Tuple of exceptions to catch and retry
        on_retry: Optional callback function(attempt, exception, delay)
        retry_if: Optional predicate; caught exceptions it rejects are re-raised as is
        policy: Schedule to use instead of the three numeric arguments
        cancel_event: Makes each wait a cancellation point (raises RunCancelled)

    Example:
        @exponential_backoff(policy=policy, cancel_event=event, exceptions=(StoreWriteError,))
        def write_entries(run_id, entries):
            return store.replace_score_entries(run_id, entries)
    """
    if policy is None:
        policy = RetryPolicy(max_retries=max_retries, base_delay=base_delay, max_delay=max_delay, jitter=0.0)

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(policy.max_retries + 1):
                check_cancelled(cancel_event)
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if retry_if is not None and not retry_if(e):
                        raise
                    if attempt >= policy.max_retries:
                        raise RetryError(
                            f"Failed after {policy.max_retries + 1} attempts: {str(e)}"
                        ) from e

                    delay = policy.compute_delay(attempt)
                    if on_retry:
                        on_retry(attempt + 1, e, delay)

                    policy.sleep(delay, cancel_event)

        return wrapper
    return decorator


def is_transient_error(exception: Exception) -> bool:
    """
    Determine if an exception is likely transient and should be retried.

    Args:
        exception: Exception to check

    Returns:
        True if error is likely transient (timeout, connection, lock, 5xx)
    """
    error_str = str(exception).lower()

    transient_keywords = [
        'timeout',
        'timed out',
        'connection',
        'temporary failure',
        'service unavailable',
        'database is locked',
        'could not serialize',
        '503',
        '502',
        '500',
        '429',
    ]

    return any(keyword in error_str for keyword in transient_keywords)

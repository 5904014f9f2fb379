"""Retry logic with exponential backoff.

This module provides:
- retry_with_backoff: Run a callable, retrying retryable UploadErrors
- next_retry_at: Schedule of the retry sweep for persisted failures
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from docsync.core.config import RetryPolicy
from docsync.core.errors import UploadError, UploadErrorKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_delay(policy: RetryPolicy, error: UploadError, retry_number: int) -> float:
    """Delay before the next attempt after `error`.

    Rate-limited responses honor the server's retry-after hint when present;
    everything else follows the exponential schedule of the policy.
    """
    if error.kind == UploadErrorKind.RATE_LIMITED and error.retry_after is not None:
        return max(error.retry_after, 0.0)
    return policy.delay(retry_number)


def retry_with_backoff(
    func: Callable[[], T],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    should_continue: Callable[[], bool] | None = None,
    description: str = "operation",
) -> T:
    """Execute a function, retrying transient and rate-limited UploadErrors.

    Permanent errors are raised immediately. A retry-after hint longer than
    `policy.max_delay` is not waited out in-process: the error is raised so
    the caller can schedule a later attempt instead of blocking a worker.

    Args:
        func: Function to execute.
        policy: Attempt budget and backoff schedule.
        sleep: Sleep function (injectable for tests).
        should_continue: Optional check before each retry; returning False
            stops retrying and re-raises the last error.
        description: Used in log messages.

    Returns:
        Result of the function.

    Raises:
        UploadError: The last error if all attempts fail.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return func()
        except UploadError as e:
            if not e.is_retryable:
                raise
            if attempt >= policy.max_attempts:
                logger.error(
                    "All %d attempts failed for %s: %s", policy.max_attempts, description, e
                )
                raise
            delay = retry_delay(policy, e, attempt)
            if delay > policy.max_delay:
                logger.warning(
                    "Server asked to wait %.0fs for %s, deferring", delay, description
                )
                raise
            if should_continue is not None and not should_continue():
                raise

            logger.warning(
                "Attempt %d/%d for %s failed: %s. Retrying in %.1fs...",
                attempt,
                policy.max_attempts,
                description,
                e,
                delay,
            )
            sleep(delay)


def next_retry_at(
    policy: RetryPolicy,
    attempt_count: int,
    now: float,
    error: UploadError | None = None,
) -> float | None:
    """When the retry sweep may try a failed file again.

    Args:
        policy: Retry policy.
        attempt_count: Attempts already made for the current content.
        now: Current Unix time.
        error: The failure, if it came from the upload client.

    Returns:
        Unix time of the next attempt, or None if the file must not be retried
        (permanent failure or attempt budget exhausted).
    """
    if error is not None and not error.is_retryable:
        return None
    if attempt_count >= policy.max_total_attempts:
        return None
    delay = policy.delay(attempt_count)
    if error is not None and error.retry_after is not None:
        delay = max(delay, error.retry_after)
    return now + delay

"""Caller-level retry policy for chunk processing.

Exponential backoff with jitter, bounded attempts, and only for errors
flagged ``retryable``. Everything else is re-raised on the first failure.
"""

import logging

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from encounterscope.errors import InferenceError

logger = logging.getLogger(__name__)


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, InferenceError) and exc.retryable


def chunk_retrying(
    max_attempts: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 60.0,
) -> AsyncRetrying:
    """Build the retry controller used around one chunk."""
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_random_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception(is_retryable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )

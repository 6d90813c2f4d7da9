"""
Retry helper with exponential backoff for flaky external calls (browser, HTTP).
"""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def retry_operation(
    operation: Callable[[], T],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_total_delay: float | None = None,
    description: str | None = None,
) -> T:
    """Run ``operation`` and retry it on failure, doubling the delay each time.

    Args:
        operation: Zero-argument callable performing the fallible work.
        max_retries: Number of retries after the first attempt.
        initial_delay: Seconds to wait before the first retry.
        max_total_delay: Optional cap on the cumulative wait. A retry whose sleep
            would exceed the cap is not attempted.
        description: Label used in log messages (defaults to the callable name).

    Returns:
        Whatever ``operation`` returns on its first successful attempt.

    Raises:
        Exception: The last error raised by ``operation`` once retries run out.
    """
    label = description or getattr(operation, "__name__", "operation")
    delay = initial_delay
    waited = 0.0
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as exc:
            over_cap = max_total_delay is not None and waited + delay > max_total_delay
            if attempt >= max_retries or over_cap:
                LOGGER.error("'%s' failed after %s retries: %s", label, attempt, exc)
                raise
            attempt += 1
            LOGGER.warning(
                "'%s' failed (attempt %s/%s): %s. Retrying in %.1fs...",
                label,
                attempt,
                max_retries,
                exc,
                delay,
            )
            time.sleep(delay)
            waited += delay
            delay *= 2

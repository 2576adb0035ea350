"""Retry with exponential backoff for the RPC node and the price oracle."""
from __future__ import annotations

import time
from typing import Any, Callable, Tuple, Type

from .logging import get_logger

LOGGER = get_logger(__name__)


def retry_call(
    fn: Callable[[], Any],
    retries: int = 3,
    backoff: float = 1.5,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    label: str = "call",
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """Call fn() until it succeeds or `retries` attempts are used.

    Args:
        fn: Function to call (no arguments)
        retries: Max attempts (total calls = retries)
        backoff: Multiplier for delay between retries
        base_delay: Initial delay in seconds
        max_delay: Upper bound on a single delay
        retry_on: Exception types to retry on
        label: Name used in log lines
        sleep: Sleep function (injectable for tests)

    Raises:
        The last exception once attempts are exhausted.
    """
    attempt = 0
    delay = base_delay
    while True:
        try:
            return fn()
        except retry_on as e:
            attempt += 1
            if attempt >= retries:
                if retries > 1:
                    LOGGER.error(f"{label}: failed after {retries} attempts: {e}")
                raise
            LOGGER.warning(f"{label}: attempt {attempt}/{retries} failed: {e}. Retrying in {delay:.1f}s")
            sleep(delay)
            delay = min(delay * backoff, max_delay)

"""
Retry with exponential backoff for calls to external collaborators.
"""

import logging
import time
from typing import Any, Callable, Tuple, Type

logger = logging.getLogger(__name__)


def call_with_retry(
    func: Callable,
    *args,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    **kwargs,
) -> Any:
    """
    Run ``func`` and retry it with exponential backoff.

    Args:
        func: Callable to run
        max_retries: Total attempts, including the first one
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound for any single delay
        retry_on: Exception types that trigger another attempt
        sleep: Sleep function, replaceable in tests

    Returns:
        Whatever ``func`` returns

    Raises:
        The last exception once every attempt has failed
    """
    attempts = max(1, int(max_retries))
    for attempt in range(attempts):
        try:
            return func(*args, **kwargs)
        except retry_on as e:
            if attempt >= attempts - 1:
                logger.error(f"[Retry] All {attempts} attempts failed: {e}")
                raise
            delay = min(base_delay * (2 ** attempt), max_delay)
            logger.warning(f"[Retry] Attempt {attempt + 1}/{attempts} failed: {e}. Waiting {delay}s...")
            if delay > 0:
                sleep(delay)

"""
Backoff and retry for calls over a connection that may drop

Used around ServerQuery commands: a lost connection is re-opened by the
wrapped call itself, this module only decides how long to wait before the
next attempt and when to give up.
"""

import asyncio
import logging
import random
from functools import wraps
from typing import Tuple, Type


logger = logging.getLogger(__name__)


def calculate_delay(attempt: int, base_delay: float, max_delay: float,
                    exponential_base: float = 2.0, jitter: bool = True) -> float:
    """Seconds to wait after failed attempt number ``attempt`` (0-based)."""
    delay = min(base_delay * (exponential_base ** attempt), max_delay)
    if jitter:
        delay *= 0.5 + random.random()
    return delay


def retry_async(retry_exceptions: Tuple[Type[Exception], ...], max_attempts: int = 3,
                base_delay: float = 1.0, max_delay: float = 10.0, jitter: bool = True):
    """
    Retry an async call that raises one of ``retry_exceptions``.

    Any other exception goes straight to the caller. After the last attempt
    the last error is raised.
    """

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except retry_exceptions as e:
                    if attempt == max_attempts - 1:
                        logger.error(f"{func.__name__} failed after {max_attempts} attempts: {e}")
                        raise
                    delay = calculate_delay(attempt, base_delay, max_delay, jitter=jitter)
                    logger.warning(f"{func.__name__} failed ({e}), attempt {attempt + 1}/{max_attempts}, "
                                   f"retrying in {delay:.1f}s")
                    await asyncio.sleep(delay)

        return wrapper

    return decorator

"""Retry utilities for transient Kubernetes API failures."""

import asyncio
import logging
from collections.abc import Callable
from functools import wraps
from typing import Any

logger = logging.getLogger(__name__)


def async_retry(
    max_attempts: int = 3,
    backoff_base: float = 2.0,
    backoff_max: float = 30.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
):
    """Decorator for retrying async calls with exponential backoff.

    Waits ``backoff_base ** (attempt - 1)`` seconds (capped at ``backoff_max``)
    between attempts and re-raises the last exception once attempts run out.

    Args:
        max_attempts: Maximum number of attempts
        backoff_base: Base for exponential backoff (seconds)
        backoff_max: Maximum backoff time (seconds)
        exceptions: Tuple of exception types to retry on

    Example:
        @async_retry(max_attempts=3, exceptions=(urllib3.exceptions.HTTPError,))
        async def list_nodes(core_api):
            return await asyncio.to_thread(core_api.list_node)
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        logger.error(
                            f"{func.__name__} failed after {max_attempts} attempts: {e}"
                        )
                        raise

                    backoff = min(backoff_base ** (attempt - 1), backoff_max)
                    logger.warning(
                        f"{func.__name__} attempt {attempt}/{max_attempts} failed: {e}. "
                        f"Retrying in {backoff:.1f}s..."
                    )
                    await asyncio.sleep(backoff)

        return wrapper

    return decorator

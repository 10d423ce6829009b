import asyncio
import functools
import random
from typing import Any, Callable, Optional, Tuple, Type

from position_guard.monitoring.logger import get_logger

logger = get_logger(__name__)


def retry_on_transient_errors(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_backoff: float = 10.0,
    transient_errors: Optional[Tuple[Type[Exception], ...]] = None,
):
    """
    Decorator to retry async exchange reads on transient errors.

    Implements exponential backoff with jitter. Programming errors
    (ValueError, TypeError) and anything outside transient_errors are
    raised immediately.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial wait time in seconds
        max_backoff: Maximum wait time in seconds
        transient_errors: Exception types to retry on (None = any other exception)
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            retry_count = 0
            backoff = base_delay

            while True:
                try:
                    return await func(*args, **kwargs)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    is_transient = not isinstance(e, (ValueError, TypeError))
                    if transient_errors and not isinstance(e, transient_errors):
                        is_transient = False
                    if not is_transient:
                        raise

                    if retry_count >= max_retries:
                        logger.warning(
                            "RETRIES_EXHAUSTED",
                            func=func.__name__,
                            max_retries=max_retries,
                            error=str(e),
                        )
                        raise

                    logger.warning(
                        "TRANSIENT_ERROR_RETRY",
                        func=func.__name__,
                        attempt=retry_count + 1,
                        max_retries=max_retries,
                        error=str(e),
                        wait=f"{backoff:.2f}s",
                    )
                    await asyncio.sleep(backoff)

                    retry_count += 1
                    backoff = min(backoff * 2, max_backoff)
                    backoff += random.uniform(0, 0.5)  # jitter

        return wrapper
    return decorator

from __future__ import annotations
import asyncio
import random
from typing import Awaitable, Callable, Optional, TypeVar
from functools import wraps
import httpx
from stlbridge.obs.logging_setup import get_logger
from stlbridge.config import MAX_RETRIES

logger = get_logger(__name__)
T = TypeVar('T')

def _is_retryable_status(error: Exception) -> bool:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code >= 500 or error.response.status_code == 429
    return True

class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_retries: int = MAX_RETRIES,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retry_on_exceptions: tuple = (httpx.TransportError, httpx.HTTPStatusError),
        retry_if: Callable[[Exception], bool] = _is_retryable_status
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retry_on_exceptions = retry_on_exceptions
        self.retry_if = retry_if

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for given attempt number."""
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)

        if self.jitter:
            # Up to 20% jitter
            delay += delay * 0.2 * random.random()

        return delay

def retry_with_backoff(
    config: Optional[RetryConfig] = None,
    operation_name: Optional[str] = None
):
    """
    Decorator for retrying a coroutine function with exponential backoff.

    Args:
        config: RetryConfig instance, uses default if None
        operation_name: Name for logging, uses function name if None
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        op_name = operation_name or func.__name__

        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            for attempt in range(config.max_retries + 1):
                if attempt > 0:
                    delay = config.calculate_delay(attempt - 1)
                    logger.info(f"Retrying {op_name}",
                                attempt=attempt,
                                delay_seconds=round(delay, 2))
                    await asyncio.sleep(delay)

                try:
                    result = await func(*args, **kwargs)
                except config.retry_on_exceptions as e:
                    if not config.retry_if(e) or attempt >= config.max_retries:
                        logger.error(f"Giving up on {op_name}",
                                     error=str(e),
                                     attempts=attempt + 1)
                        raise
                    logger.warning(f"Attempt {attempt + 1} failed for {op_name}",
                                   error=str(e),
                                   will_retry=True)
                    continue

                if attempt > 0:
                    logger.info(f"Retry successful for {op_name}",
                                total_attempts=attempt + 1)
                return result

        return wrapper

    return decorator

DEFAULT_HTTP_RETRY = RetryConfig(max_retries=MAX_RETRIES, base_delay=1.0, max_delay=30.0)

CHANNEL_RECONNECT_RETRY = RetryConfig(
    max_retries=5,
    base_delay=1.0,
    max_delay=20.0,
    retry_on_exceptions=(httpx.TransportError, httpx.HTTPStatusError)
)

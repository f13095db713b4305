import asyncio
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

import httpx

from utils.logger import get_logger

logger = get_logger("retry")


class RetryConfig:
    """Configuration for retry behavior"""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 15.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Tuple[Type[Exception], ...] = (
            httpx.TimeoutException,
            httpx.NetworkError,
            httpx.ConnectError,
            ConnectionError,
            asyncio.TimeoutError,
        ),
        retryable_status_codes: Tuple[int, ...] = (429, 500, 502, 503, 504),
        give_up_on: Tuple[Type[Exception], ...] = (),
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions
        self.retryable_status_codes = retryable_status_codes
        # Checked before retryable_exceptions so terminal subclasses win.
        self.give_up_on = give_up_on


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay with exponential backoff and optional jitter"""
    delay = min(config.base_delay * (config.exponential_base**attempt), config.max_delay)
    if config.jitter:
        delay = delay * (0.5 + random.random())
    return delay


def is_retryable_error(error: Exception, config: RetryConfig) -> bool:
    """Check if an error should be retried"""
    if config.give_up_on and isinstance(error, config.give_up_on):
        return False

    if isinstance(error, config.retryable_exceptions):
        return True

    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in config.retryable_status_codes

    return False


def _retry_after_seconds(error: Exception) -> Optional[float]:
    if isinstance(error, httpx.HTTPStatusError) and error.response.status_code == 429:
        retry_after = error.response.headers.get("Retry-After")
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                return None
    return None


async def retry_async(
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    operation: Optional[str] = None,
    **kwargs: Any,
) -> Any:
    """Await ``func(*args, **kwargs)`` with bounded exponential backoff."""
    config = config or RetryConfig()
    name = operation or getattr(func, "__name__", "call")
    last_error: Optional[Exception] = None

    for attempt in range(config.max_attempts):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            last_error = e

            if not is_retryable_error(e, config):
                raise

            if attempt < config.max_attempts - 1:
                delay = calculate_delay(attempt, config)
                hinted = _retry_after_seconds(e)
                if hinted is not None:
                    delay = max(delay, hinted)
                logger.warning(
                    "Retrying after error",
                    operation=name,
                    attempt=attempt + 1,
                    max_attempts=config.max_attempts,
                    delay=round(delay, 3),
                    error=str(e),
                )
                await asyncio.sleep(delay)
            else:
                logger.error(
                    "All retry attempts exhausted",
                    operation=name,
                    attempts=config.max_attempts,
                    error=str(e),
                )

    raise last_error

"""
Retry and backoff helpers for ledger polling, notifications and store writes
"""
import asyncio
import random
from typing import Callable, Any, Optional, List
import logging

from common.error_handling import StorageError

logger = logging.getLogger(__name__)

class RetryConfig:
    """Configuration for retry behavior"""
    def __init__(
        self,
        max_attempts: Optional[int] = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[type]] = None
    ):
        # max_attempts=None retries until the caller's stop event is set
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = tuple(retryable_exceptions or [Exception])

def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Exponential backoff for the given 1-based attempt, capped at max_delay"""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)

    if config.jitter:
        delay *= (0.5 + random.random() * 0.5)

    return delay

async def _call(func: Callable, *args, **kwargs) -> Any:
    if asyncio.iscoroutinefunction(func):
        return await func(*args, **kwargs)
    return func(*args, **kwargs)

async def retry_async(
    func: Callable,
    config: RetryConfig,
    *args,
    stop_event: Optional[asyncio.Event] = None,
    **kwargs
) -> Any:
    """Async retry wrapper with exponential backoff.

    When ``config.max_attempts`` is None the call is retried until it succeeds
    or ``stop_event`` is set; the last exception is re-raised in that case.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await _call(func, *args, **kwargs)
        except config.retryable_exceptions as e:
            name = getattr(func, "__name__", repr(func))
            exhausted = config.max_attempts is not None and attempt >= config.max_attempts
            if exhausted or (stop_event is not None and stop_event.is_set()):
                logger.error(f"Giving up on {name} after {attempt} attempt(s): {e}")
                raise

            delay = calculate_delay(attempt, config)
            limit = config.max_attempts if config.max_attempts is not None else "inf"
            logger.warning(f"Attempt {attempt}/{limit} failed for {name}: {e}. Retrying in {delay:.2f}s")
            if stop_event is None:
                await asyncio.sleep(delay)
            else:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass

# Terminal payment transitions must not be lost: retry until shutdown
STORE_WRITE_RETRY_CONFIG = RetryConfig(
    max_attempts=None,
    base_delay=0.5,
    max_delay=30.0,
    retryable_exceptions=[StorageError],
)

NOTIFY_RETRY_CONFIG = RetryConfig(
    max_attempts=5,
    base_delay=1.0,
    max_delay=60.0,
)

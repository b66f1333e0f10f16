"""
Resilience Patterns

Deadline and bounded-retry primitives for browser and SMTP calls. Both are plain
parameters of the caller so the timeout/retry policy stays visible and
testable instead of living inside ad hoc control flow.
"""

import asyncio
import logging
from dataclasses import dataclass
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DeadlineExceeded(Exception):
    """Raised when an operation does not finish within its deadline."""

    def __init__(self, operation: str, seconds: float):
        self.operation = operation
        self.seconds = seconds
        super().__init__(f"{operation} did not finish within {seconds:.0f}s")


async def run_with_deadline(
    operation: Callable[[], Awaitable[T]],
    seconds: float,
    name: str = "operation",
) -> T:
    """
    Await operation() and abandon it once the deadline passes.

    Raises:
        DeadlineExceeded: If the deadline passes first
    """
    try:
        return await asyncio.wait_for(operation(), timeout=seconds)
    except asyncio.TimeoutError:
        raise DeadlineExceeded(name, seconds)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with a fixed delay between attempts."""

    attempts: int = 2
    delay: float = 1.0
    exceptions: tuple = (Exception,)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    on_retry: Optional[Callable[[Exception, int], None]] = None,
) -> T:
    """
    Run operation() up to policy.attempts times.

    The last exception is re-raised once attempts are exhausted.
    """
    last_exception: Optional[Exception] = None

    for attempt in range(1, policy.attempts + 1):
        try:
            return await operation()
        except policy.exceptions as e:
            last_exception = e

            if attempt == policy.attempts:
                logger.error(f"All {policy.attempts} attempts failed: {e}")
                raise

            logger.warning(
                f"Attempt {attempt}/{policy.attempts} failed: {e}. "
                f"Retrying in {policy.delay:.1f}s..."
            )

            if on_retry:
                on_retry(e, attempt)

            await asyncio.sleep(policy.delay)

    # Unreachable with attempts >= 1
    raise last_exception  # type: ignore[misc]


def retry_with_backoff(
    attempts: int = 2,
    delay: float = 1.0,
    exceptions: tuple = (Exception,),
    on_retry: Optional[Callable[[Exception, int], None]] = None,
):
    """
    Decorator form of call_with_retry for async functions.

    Usage:
        @retry_with_backoff(attempts=2, delay=1.0, exceptions=(DeadlineExceeded,))
        async def navigate():
            ...
    """
    policy = RetryPolicy(attempts=attempts, delay=delay, exceptions=exceptions)

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            return await call_with_retry(lambda: func(*args, **kwargs), policy, on_retry)

        return wrapper

    return decorator

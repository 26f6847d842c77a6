"""
Bounded exponential backoff for calls to external collaborators.

Clients make a single attempt and raise typed errors; the engine decides
whether to retry. Only TransientExternalError subclasses are retried.
Everything else propagates on the first failure.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

import structlog

from src.core.config import RetryConfig
from src.core.exceptions import TransientExternalError

log = structlog.get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(policy: RetryConfig, attempt: int) -> float:
    """Delay before retry number ``attempt`` (0-indexed), capped at max_delay."""
    return min(policy.base_delay * (2**attempt), policy.max_delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryConfig,
    operation_name: str,
    retry_on: Tuple[Type[BaseException], ...] = (TransientExternalError,),
    sleep: Optional[Sleep] = None,
) -> T:
    """
    Run ``operation`` with up to ``policy.max_attempts`` attempts.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Attempt ceiling and delay bounds
        operation_name: Name used in retry log events
        retry_on: Exception types that trigger another attempt
        sleep: Sleep function (injectable for tests)

    Returns:
        Result of the first successful attempt

    Raises:
        The last retryable error once attempts are exhausted, or any
        non-retryable error immediately.
    """
    sleep = sleep or asyncio.sleep

    for attempt in range(policy.max_attempts):
        try:
            return await operation()
        except retry_on as e:
            if attempt + 1 >= policy.max_attempts:
                log.warning(
                    "retry_exhausted",
                    operation=operation_name,
                    attempts=attempt + 1,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise
            delay = backoff_delay(policy, attempt)
            log.info(
                "retry_scheduled",
                operation=operation_name,
                attempt=attempt + 1,
                max_attempts=policy.max_attempts,
                delay_seconds=delay,
                error_type=type(e).__name__,
            )
            await sleep(delay)

    raise RuntimeError(f"{operation_name}: retry policy allowed no attempts")

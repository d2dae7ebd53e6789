"""
Retry Policy

Exponential backoff around document store calls. Only transient store
conditions (unavailable, deadline exceeded) are retried; everything else
propagates on the first failure.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from milo_nudges.services.store.base import StoreError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def is_transient_error(error: BaseException) -> bool:
    """True for store failures worth retrying."""
    return isinstance(error, StoreError) and error.is_transient


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    initial_delay: float = 0.2,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    operation_name: Optional[str] = None
) -> T:
    """
    Run `operation`, retrying transient failures with doubling delays.

    At most `max_retries` attempts are made (0.2s, 0.4s, 0.8s ... between
    them). When the last attempt fails transiently, that exception is
    re-raised unchanged so callers still see the underlying failure kind.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        max_retries: Total attempts
        initial_delay: Seconds to wait after the first failure
        sleep: Awaitable sleep, injectable for tests
        operation_name: Used in retry log events

    Returns:
        The operation's result
    """
    attempts = 0
    delay = initial_delay

    while True:
        try:
            return await operation()
        except Exception as e:
            if not is_transient_error(e):
                raise

            attempts += 1
            if attempts >= max_retries:
                logger.warning(
                    "store_retries_exhausted",
                    operation=operation_name,
                    attempts=attempts,
                    code=e.code.value,
                )
                raise

            logger.warning(
                "store_operation_retry",
                operation=operation_name,
                attempt=attempts,
                max_retries=max_retries,
                code=e.code.value,
                delay_seconds=delay,
            )
            await sleep(delay)
            delay *= 2

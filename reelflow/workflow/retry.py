"""
Retry Wrapper
=============

Bounded exponential-backoff retry for submission calls.

Delay before attempt ``n + 1`` is ``base_delay * 2 ** (n - 1)``. When the
budget is spent the last exception propagates unchanged. Definitive outcomes
(provider-reported failures, provider busy, validation) are never retried.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from ..core.exceptions import (
    ConfigurationError,
    GenerationError,
    InvalidTransitionError,
    PollTimeoutError,
    ProviderBusyError,
    ResourceNotFoundError,
    ScriptParseError,
    StoppedError,
    ValidationError,
)
from ..core.security import redact_api_key

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 2.0

NON_RETRYABLE = (
    GenerationError,
    ProviderBusyError,
    PollTimeoutError,
    StoppedError,
    ScriptParseError,
    ValidationError,
    ConfigurationError,
    InvalidTransitionError,
    ResourceNotFoundError,
)


def is_retryable(error: BaseException) -> bool:
    """Transient failures are retried; definitive ones are not."""
    return isinstance(error, Exception) and not isinstance(error, NON_RETRYABLE)


def backoff_delay(attempt: int, base_delay: float = DEFAULT_BASE_DELAY) -> float:
    """Delay after failed attempt number ``attempt`` (1-based)."""
    return base_delay * (2 ** (attempt - 1))


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    retryable: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    cancel_event: Optional[asyncio.Event] = None,
    description: str = "operation",
) -> T:
    """
    Run ``operation`` with retry.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        max_attempts: Total attempts including the first
        base_delay: Delay in seconds after the first failure
        retryable: Predicate deciding whether an error is worth another attempt
        sleep: Awaitable sleep (injected by tests)
        cancel_event: When set during a backoff, abandon with ``StoppedError``
        description: Label used in log messages

    Returns:
        The operation's result

    Raises:
        The last error raised by ``operation``
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= max_attempts or not retryable(e):
                if attempt > 1:
                    logger.error(f"{description} failed after {attempt} attempts: {redact_api_key(str(e))}")
                raise

            delay = backoff_delay(attempt, base_delay)
            logger.warning(
                f"{description} attempt {attempt}/{max_attempts} failed: {redact_api_key(str(e))}; "
                f"retrying in {delay:.1f}s"
            )
            await sleep(delay)

            if cancel_event is not None and cancel_event.is_set():
                raise StoppedError(f"{description} stopped by user")
            attempt += 1

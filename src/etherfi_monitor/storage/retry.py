"""Exponential-backoff retry for coroutine operations.

Only wrap operations that are safe to repeat: reconnects, reads, and writes
that are upserts keyed by a natural key. The last failure always propagates
unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import wraps
from typing import ParamSpec, TypeVar

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY = 1.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0

OnRetry = Callable[[BaseException, int], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry parameters.

    Attributes:
        max_attempts: Total number of attempts, including the first one.
        initial_delay: Delay in seconds after the first failed attempt.
        backoff_multiplier: Factor applied to the delay after every failure.
        retry_on: Exception types that trigger a retry. Anything else
            propagates immediately.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    initial_delay: float = DEFAULT_INITIAL_DELAY
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    retry_on: tuple[type[BaseException], ...] = (Exception,)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        return self.initial_delay * (self.backoff_multiplier ** (attempt - 1))


async def with_retry(
    op: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    on_retry: OnRetry | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``op`` until it succeeds or the policy's attempts are exhausted.

    Args:
        op: Zero-argument coroutine factory. Called once per attempt.
        policy: Retry parameters (defaults to ``RetryPolicy()``).
        on_retry: Called with the failing error and attempt number before
            each retry. Not called after the final attempt.
        sleep: Awaitable used for the backoff delay.

    Returns:
        The first successful result of ``op``.

    Raises:
        The exception raised by the final attempt, unchanged.
    """
    policy = policy or RetryPolicy()

    attempt = 1
    while True:
        try:
            return await op()
        except policy.retry_on as e:
            if attempt >= policy.max_attempts:
                raise

            delay = policy.delay_for(attempt)
            if on_retry is not None:
                on_retry(e, attempt)
            logger.warning(
                "Attempt %d/%d failed: %s. Retrying in %.2f seconds...",
                attempt,
                policy.max_attempts,
                str(e),
                delay,
            )
            await sleep(delay)
            attempt += 1


def retrying(
    policy: RetryPolicy | None = None,
    *,
    on_retry: OnRetry | None = None,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator form of :func:`with_retry` for coroutine functions."""

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await with_retry(lambda: func(*args, **kwargs), policy, on_retry=on_retry)

        return wrapper

    return decorator

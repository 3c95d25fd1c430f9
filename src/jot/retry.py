"""Bounded exponential backoff for fallible remote calls.

Only wrap idempotent or safely repeatable operations: GETs, or POSTs the
remote side deduplicates on its own.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import anyio

from .errors import is_transient
from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How many times to try, and how long to wait in between."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")


DEFAULT_POLICY = RetryPolicy()
SINGLE_ATTEMPT = RetryPolicy(max_attempts=1)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_POLICY,
    *,
    should_retry: Callable[[Exception], bool] | None = None,
    sleep: Sleep = anyio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the policy is exhausted.

    Args:
        operation: Zero-argument coroutine function to invoke.
        policy: Attempt cap and delay schedule.
        should_retry: If given, errors it rejects propagate immediately.
        sleep: Sleep function, replaced in tests.

    Returns:
        The first successful result.

    Raises:
        The last error once attempts are exhausted, or the first error
        ``should_retry`` rejects.
    """
    delay = policy.initial_delay
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            if should_retry is not None and not should_retry(exc):
                raise
            if attempt >= policy.max_attempts:
                raise
            wait = min(delay, policy.max_delay)
            # honour a server-supplied retry hint (Telegram 429)
            hint = getattr(exc, "retry_after", None)
            if hint is not None:
                wait = max(wait, float(hint))
            logger.info(
                "retry.attempt_failed",
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_s=wait,
                error=str(exc),
            )
            await sleep(wait)
            delay *= policy.multiplier


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_POLICY,
    *,
    sleep: Sleep = anyio.sleep,
) -> T:
    """Retry only network, timeout, 5xx and 429 failures."""
    return await retry_with_backoff(
        operation, policy, should_retry=is_transient, sleep=sleep
    )

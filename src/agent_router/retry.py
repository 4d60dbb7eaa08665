"""Async retry with exponential backoff and explicit error contracts.

Design goals:
- Retry decisions come from error types and HTTP status, never message text
- A server-supplied ``Retry-After`` wins over the computed backoff
- Cancellation is never retried
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
from typing import TYPE_CHECKING, TypeVar

from agent_router.errors import ProviderError, ProviderTimeoutError, RateLimitError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy with exponential backoff and symmetric jitter."""

    max_attempts: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        if self.max_attempts < 1:
            raise ValueError("RetryPolicy.max_attempts must be >= 1")
        if self.initial_delay_ms < 0:
            raise ValueError("RetryPolicy.initial_delay_ms must be >= 0")
        if self.max_delay_ms < 0:
            raise ValueError("RetryPolicy.max_delay_ms must be >= 0")
        if self.backoff_multiplier <= 0:
            raise ValueError("RetryPolicy.backoff_multiplier must be > 0")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("RetryPolicy.jitter_factor must be between 0 and 1")


def is_retryable_error(exc: BaseException) -> bool:
    """Return True when *exc* is worth another attempt.

    Contract:
    - Rate limits and client-side timeouts are always retried.
    - Other provider errors are retried only with a 5xx status.
    - Everything else, including cancellation, is not.
    """
    if isinstance(exc, (RateLimitError, ProviderTimeoutError)):
        return True
    if isinstance(exc, ProviderError):
        return exc.retryable
    return False


def calculate_delay(attempt: int, policy: RetryPolicy) -> int:
    """Backoff in milliseconds before retry number ``attempt + 1`` (0-indexed).

    ``min(initial * multiplier**attempt, max)`` with uniform jitter of
    ``± jitter_factor`` of that value, floored and never negative.
    """
    base = policy.initial_delay_ms * policy.backoff_multiplier**attempt
    capped = min(base, policy.max_delay_ms)
    jitter = (random.random() * 2 - 1) * capped * policy.jitter_factor  # noqa: S311
    return max(0, int(capped + jitter))


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    should_retry: Callable[[BaseException, int], bool] | None = None,
    on_retry: Callable[[BaseException, int, int], None] | None = None,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Run an async factory with bounded retries.

    ``should_retry(exc, attempt)`` is consulted for every failed attempt but
    the last. ``on_retry(exc, attempt, delay_ms)`` fires before each sleep.
    Exhaustion re-raises the last error unchanged.
    """
    policy = policy or RetryPolicy()
    last_exc: BaseException | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await factory()
        except Exception as exc:
            last_exc = exc
            if attempt >= policy.max_attempts:
                raise
            retryable = (
                should_retry(exc, attempt)
                if should_retry is not None
                else is_retryable_error(exc)
            )
            if not retryable:
                raise

            if isinstance(exc, RateLimitError) and exc.retry_after_ms is not None:
                delay_ms = exc.retry_after_ms
            else:
                delay_ms = calculate_delay(attempt - 1, policy)

            log.debug(
                "Attempt %d/%d failed (%s); retrying in %dms",
                attempt,
                policy.max_attempts,
                type(exc).__name__,
                delay_ms,
            )
            if on_retry is not None:
                on_retry(exc, attempt, delay_ms)
            await sleep(delay_ms / 1000)

    # Unreachable: the loop always returns or raises.
    if last_exc is None:  # pragma: no cover
        raise RuntimeError("retry_async exhausted without an exception")
    raise last_exc


def with_retry(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    should_retry: Callable[[BaseException, int], bool] | None = None,
    on_retry: Callable[[BaseException, int, int], None] | None = None,
) -> Callable[[], Awaitable[T]]:
    """Wrap *factory* so every call runs under :func:`retry_async`."""

    async def wrapped() -> T:
        return await retry_async(
            factory, policy=policy, should_retry=should_retry, on_retry=on_retry
        )

    return wrapped

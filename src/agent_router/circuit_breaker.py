"""Per-provider circuit breaker.

States move ``CLOSED -> OPEN -> HALF_OPEN -> CLOSED``. OPEN rejects calls
without dispatching them; the move to HALF_OPEN is lazy, checked whenever
the breaker is used or inspected. HALF_OPEN admits every caller, so
concurrent calls during the probe window may all reach the provider.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
import logging
import time
from typing import TYPE_CHECKING, TypeVar

from agent_router.errors import CircuitOpenError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

log = logging.getLogger(__name__)

DEFAULT_MAX_LISTENERS = 32


def monotonic_ms() -> int:
    """Monotonic clock in whole milliseconds."""
    return time.monotonic_ns() // 1_000_000


class CircuitState(StrEnum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitBreakerOptions:
    """Thresholds and cooldowns; durations in milliseconds."""

    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_ms: int = 30_000
    reset_timeout_ms: int | None = 60_000

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("CircuitBreakerOptions.failure_threshold must be >= 1")
        if self.success_threshold < 1:
            raise ValueError("CircuitBreakerOptions.success_threshold must be >= 1")
        if self.timeout_ms < 0:
            raise ValueError("CircuitBreakerOptions.timeout_ms must be >= 0")
        if self.reset_timeout_ms is not None and self.reset_timeout_ms < 0:
            raise ValueError("CircuitBreakerOptions.reset_timeout_ms must be >= 0 or None")


@dataclass(frozen=True)
class CircuitBreakerStats:
    """Point-in-time view of a breaker; times are clock readings in milliseconds."""

    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_time: float | None
    first_failure_time: float | None


@dataclass(frozen=True)
class StateChange:
    """Passed to listeners on every transition."""

    name: str | None
    previous: CircuitState
    current: CircuitState
    failure_count: int
    success_count: int
    timestamp: float
    error: BaseException | None = None


class CircuitBreaker:
    """Stops calling a provider after repeated failures, then probes it.

    Example:
        >>> breaker = CircuitBreaker(CircuitBreakerOptions(failure_threshold=2))
        >>> result = await breaker.execute(lambda: provider.complete(request))
    """

    def __init__(
        self,
        options: CircuitBreakerOptions | None = None,
        *,
        name: str | None = None,
        clock: Callable[[], float] = monotonic_ms,
        max_listeners: int = DEFAULT_MAX_LISTENERS,
    ) -> None:
        self.options = options or CircuitBreakerOptions()
        self.name = name
        self._clock = clock
        self._max_listeners = max_listeners
        self._listeners: dict[int, Callable[[StateChange], None]] = {}
        self._next_token = 0
        self._clear(CircuitState.CLOSED)

    def _clear(self, state: CircuitState) -> None:
        self._state = state
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: float | None = None
        self._first_failure_time: float | None = None

    def _elapsed_ms(self, since: float) -> float:
        return self._clock() - since

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run *fn* under breaker protection.

        Raises:
            CircuitOpenError: When OPEN; *fn* is not called.
        """
        self._check_state_transition()
        if self._state is CircuitState.OPEN:
            raise CircuitOpenError(self._retry_after_ms(), provider=self.name)

        try:
            result = await fn()
        except BaseException as e:
            # Cancellation is not a provider failure.
            if isinstance(e, Exception):
                self._record_failure(e)
            raise
        self._record_success()
        return result

    @property
    def state(self) -> CircuitState:
        self._check_state_transition()
        return self._state

    def stats(self) -> CircuitBreakerStats:
        self._check_state_transition()
        return CircuitBreakerStats(
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            last_failure_time=self._last_failure_time,
            first_failure_time=self._first_failure_time,
        )

    def reset(self) -> None:
        """Force CLOSED and clear all counters."""
        previous = self._state
        self._clear(CircuitState.CLOSED)
        if previous is not CircuitState.CLOSED:
            self._notify(previous, CircuitState.CLOSED)

    def on_state_change(
        self, listener: Callable[[StateChange], None]
    ) -> Callable[[], None]:
        """Subscribe to transitions; returns a callable that unsubscribes.

        Raises:
            ValueError: When ``max_listeners`` are already subscribed.
        """
        if len(self._listeners) >= self._max_listeners:
            raise ValueError(
                f"CircuitBreaker listener limit reached ({self._max_listeners})"
            )
        token = self._next_token
        self._next_token += 1
        self._listeners[token] = listener

        def unsubscribe() -> None:
            self._listeners.pop(token, None)

        return unsubscribe

    def _retry_after_ms(self) -> int:
        if self._last_failure_time is None:
            return 0
        remaining = self.options.timeout_ms - self._elapsed_ms(self._last_failure_time)
        return max(0, int(remaining))

    def _check_state_transition(self) -> None:
        if (
            self._state is CircuitState.OPEN
            and self._last_failure_time is not None
            and self._elapsed_ms(self._last_failure_time) >= self.options.timeout_ms
        ):
            self._transition(CircuitState.HALF_OPEN)

        reset_ms = self.options.reset_timeout_ms
        if (
            self._state is CircuitState.CLOSED
            and self._first_failure_time is not None
            and reset_ms
            and self._elapsed_ms(self._first_failure_time) >= reset_ms
        ):
            # A stale failure streak decays without an intervening success.
            self._failure_count = 0
            self._first_failure_time = None

    def _record_success(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.options.success_threshold:
                self._clear(CircuitState.HALF_OPEN)
                self._transition(CircuitState.CLOSED)
        elif self._state is CircuitState.CLOSED:
            self._failure_count = 0
            self._first_failure_time = None

    def _record_failure(self, error: BaseException) -> None:
        now = self._clock()
        if self._state is CircuitState.HALF_OPEN:
            self._last_failure_time = now
            self._success_count = 0
            self._transition(CircuitState.OPEN, error)
        elif self._state is CircuitState.CLOSED:
            if self._first_failure_time is None:
                self._first_failure_time = now
            self._failure_count += 1
            self._last_failure_time = now
            if self._failure_count >= self.options.failure_threshold:
                self._transition(CircuitState.OPEN, error)

    def _transition(
        self, new_state: CircuitState, error: BaseException | None = None
    ) -> None:
        previous = self._state
        if previous is new_state:
            return
        self._state = new_state
        if new_state is CircuitState.HALF_OPEN:
            self._success_count = 0
        log.info(
            "Circuit breaker %s: %s -> %s",
            self.name or "<unnamed>",
            previous,
            new_state,
            extra={"provider": self.name, "failure_count": self._failure_count},
        )
        self._notify(previous, new_state, error)

    def _notify(
        self,
        previous: CircuitState,
        current: CircuitState,
        error: BaseException | None = None,
    ) -> None:
        change = StateChange(
            name=self.name,
            previous=previous,
            current=current,
            failure_count=self._failure_count,
            success_count=self._success_count,
            timestamp=time.time(),
            error=error,
        )
        for listener in list(self._listeners.values()):
            try:
                listener(change)
            except Exception:
                log.warning(
                    "Circuit breaker listener failed",
                    exc_info=True,
                    extra={"provider": self.name},
                )


class CircuitBreakerRegistry:
    """One breaker per provider name, created on first use.

    Breakers outlive configuration reloads and adapter replacement.
    """

    def __init__(
        self,
        options: CircuitBreakerOptions | None = None,
        *,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        self.options = options or CircuitBreakerOptions()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._listeners: dict[int, Callable[[StateChange], None]] = {}
        self._unsubscribers: dict[int, list[Callable[[], None]]] = {}
        self._next_token = 0

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(self.options, name=name, clock=self._clock)
            for token, listener in self._listeners.items():
                self._unsubscribers[token].append(breaker.on_state_change(listener))
            self._breakers[name] = breaker
        return breaker

    def __contains__(self, name: object) -> bool:
        return name in self._breakers

    def snapshot(self) -> dict[str, CircuitBreakerStats]:
        return {name: b.stats() for name, b in self._breakers.items()}

    def reset(self, name: str | None = None) -> None:
        """Reset one breaker, or all of them when *name* is None."""
        if name is None:
            for breaker in self._breakers.values():
                breaker.reset()
        elif name in self._breakers:
            self._breakers[name].reset()

    def on_state_change(
        self, listener: Callable[[StateChange], None]
    ) -> Callable[[], None]:
        """Subscribe to transitions of every current and future breaker."""
        token = self._next_token
        self._next_token += 1
        self._listeners[token] = listener
        self._unsubscribers[token] = [
            b.on_state_change(listener) for b in self._breakers.values()
        ]

        def unsubscribe() -> None:
            self._listeners.pop(token, None)
            for undo in self._unsubscribers.pop(token, []):
                undo()

        return unsubscribe

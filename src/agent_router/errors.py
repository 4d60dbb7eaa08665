"""Exception hierarchy for agent-router."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class AgentRouterError(Exception):
    """Base exception for all agent-router errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(AgentRouterError):
    """Configuration validation or resolution failed."""


class UnknownRoleError(ConfigurationError):
    """A role name was not found in the current configuration."""

    def __init__(
        self, role: str, available: list[str], *, hint: str | None = None
    ) -> None:
        role_list = ", ".join(available) if available else "(none configured)"
        super().__init__(
            f'Unknown role: "{role}". Available roles: {role_list}', hint=hint
        )
        self.role = role
        self.available = list(available)


class ProviderError(AgentRouterError):
    """A provider call failed.

    ``status_code`` is the upstream HTTP status when one was received. Retry
    decisions are made from the error type and this status, never from the
    message text.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.provider = provider
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        """Whether the failure is a server-side (5xx) error."""
        return isinstance(self.status_code, int) and 500 <= self.status_code < 600


class RateLimitError(ProviderError):
    """Rate limit exceeded (HTTP 429)."""

    def __init__(
        self,
        provider: str | None = None,
        *,
        retry_after_ms: int | None = None,
        message: str | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(
            message or f"Rate limit exceeded for provider: {provider}",
            provider=provider,
            status_code=429,
            hint=hint,
        )
        self.retry_after_ms = retry_after_ms

    @property
    def retryable(self) -> bool:
        """Rate limits are always worth retrying."""
        return True


class AuthenticationError(ProviderError):
    """Credentials were rejected (HTTP 401/403)."""

    def __init__(
        self,
        provider: str | None = None,
        *,
        status_code: int = 401,
        message: str | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(
            message or f"Authentication failed for provider: {provider}",
            provider=provider,
            status_code=status_code,
            hint=hint,
        )


class ProviderTimeoutError(ProviderError):
    """The client gave up waiting for the provider."""

    def __init__(
        self,
        provider: str | None = None,
        timeout_ms: int | None = None,
        *,
        hint: str | None = None,
    ) -> None:
        super().__init__(
            f"Request to {provider} timed out after {timeout_ms}ms",
            provider=provider,
            hint=hint,
        )
        self.timeout_ms = timeout_ms

    @property
    def retryable(self) -> bool:
        """Timeouts are always worth retrying."""
        return True


class CircuitOpenError(AgentRouterError):
    """The circuit breaker refused to dispatch a call."""

    def __init__(self, retry_after_ms: int, *, provider: str | None = None) -> None:
        target = f" for provider: {provider}" if provider else ""
        super().__init__(
            f"Circuit breaker is open{target}. Retry after {retry_after_ms}ms",
            hint="The provider failed repeatedly; calls resume after the cooldown.",
        )
        self.retry_after_ms = retry_after_ms
        self.provider = provider


class TranslationError(AgentRouterError):
    """A payload could not be translated between wire formats."""

    def __init__(
        self,
        message: str,
        *,
        source_format: str,
        target_format: str,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.source_format = source_format
        self.target_format = target_format


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)

"""Shared provider-side error helpers.

Adapters classify failures here so retry and circuit-breaker logic can act on
error types and HTTP status codes without brittle substring matching.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
import math
from typing import Any

import httpx

from agent_router.config import API_KEY_ENV_VARS
from agent_router.errors import (
    AgentRouterError,
    AuthenticationError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitError,
    _walk_exception_chain,
)


def parse_retry_after_ms(value: str | None, *, now: datetime | None = None) -> int | None:
    """Parse a ``Retry-After`` header into milliseconds.

    Accepts delta-seconds (integer or decimal) and HTTP dates. Returns
    ``None`` when the header is absent or unparseable.
    """
    if value is None:
        return None
    raw = value.strip()
    if not raw:
        return None
    try:
        seconds = float(raw)
    except ValueError:
        seconds = None
    if seconds is not None:
        if seconds < 0 or math.isnan(seconds) or math.isinf(seconds):
            return None
        return int(seconds * 1000)

    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    current = now or datetime.now(UTC)
    return max(0, int((when - current).total_seconds() * 1000))


def extract_error_message(response: httpx.Response) -> str:
    """Pull a human-readable message out of a provider error body."""
    default = f"HTTP {response.status_code}: {response.reason_phrase}"
    try:
        body: Any = response.json()
    except ValueError:
        return default
    if not isinstance(body, dict):
        return default
    error = body.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
    elif isinstance(error, str) and error:
        return error
    message = body.get("message")
    if isinstance(message, str) and message:
        return message
    return default


def _auth_hint(provider_type: str) -> str:
    env_var = API_KEY_ENV_VARS.get(provider_type, "the provider's api_key")
    return f"Check credentials/permissions (try setting {env_var} or providers.<name>.api_key)."


def error_from_response(
    response: httpx.Response, *, provider: str, provider_type: str | None = None
) -> ProviderError:
    """Map a non-2xx response into the error taxonomy.

    The response body must already be read.
    """
    status = response.status_code
    if status in (401, 403):
        return AuthenticationError(
            provider,
            status_code=status,
            hint=_auth_hint(provider_type or provider),
        )
    if status == 429:
        return RateLimitError(
            provider,
            retry_after_ms=parse_retry_after_ms(response.headers.get("retry-after")),
        )
    return ProviderError(
        extract_error_message(response),
        provider=provider,
        status_code=status,
    )


def wrap_transport_error(
    exc: BaseException, *, provider: str, timeout_ms: int | None
) -> AgentRouterError:
    """Map transport-level exceptions (httpx, asyncio) into the taxonomy."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    if isinstance(exc, AgentRouterError):
        return exc

    for e in _walk_exception_chain(exc):
        if isinstance(e, (httpx.TimeoutException, TimeoutError)):
            return ProviderTimeoutError(provider, timeout_ms)

    message = str(exc) or type(exc).__name__
    return ProviderError(f"{provider} request failed: {message}", provider=provider)

"""agent-router: route named agent roles to LLM providers.

Public API:
    - create_router(): Build a RouterEngine from a config mapping or file
    - RouterEngine: invoke_agent(), compare_agents(), update_config()
    - Config / load_config(): Validated configuration
    - CircuitBreaker, RetryPolicy: Resilience primitives
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from agent_router.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOptions,
    CircuitBreakerRegistry,
    CircuitState,
)
from agent_router.config import Config, load_config
from agent_router.errors import (
    AgentRouterError,
    AuthenticationError,
    CircuitOpenError,
    ConfigurationError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitError,
    TranslationError,
    UnknownRoleError,
)
from agent_router.providers.manager import ProviderManager, create_provider_manager
from agent_router.retry import RetryPolicy, retry_async
from agent_router.router import AgentConfig, AgentResponse, RouterEngine
from agent_router.telemetry import InMemoryMetrics, MetricsRecorder

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("agent-router")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("agent_router").addHandler(logging.NullHandler())


def create_router(
    config: Config | Mapping[str, Any] | str | Path,
    *,
    providers: ProviderManager | None = None,
    breaker_options: CircuitBreakerOptions | None = None,
    retry_policy: RetryPolicy | None = None,
    metrics: MetricsRecorder | None = None,
    logger: logging.Logger | None = None,
) -> RouterEngine:
    """Build a :class:`RouterEngine` with the built-in provider adapters.

    *config* may be a validated :class:`Config`, a raw mapping, or a path to
    a YAML/TOML file.
    """
    if not isinstance(config, Config):
        config = load_config(config)
    return RouterEngine(
        config,
        providers or create_provider_manager(logger=logger),
        breakers=CircuitBreakerRegistry(breaker_options),
        retry_policy=retry_policy,
        metrics=metrics,
        logger=logger,
    )


__all__ = [
    "AgentConfig",
    "AgentResponse",
    "AgentRouterError",
    "AuthenticationError",
    "CircuitBreaker",
    "CircuitBreakerOptions",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CircuitState",
    "Config",
    "ConfigurationError",
    "InMemoryMetrics",
    "MetricsRecorder",
    "ProviderError",
    "ProviderManager",
    "ProviderTimeoutError",
    "RateLimitError",
    "RetryPolicy",
    "RouterEngine",
    "TranslationError",
    "UnknownRoleError",
    "create_provider_manager",
    "create_router",
    "load_config",
    "retry_async",
]

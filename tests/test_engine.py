"""Router engine: request building, fallback, breakers and metrics."""

from __future__ import annotations

from typing import Any

import pytest

from agent_router import create_router
from agent_router.circuit_breaker import (
    CircuitBreakerOptions,
    CircuitBreakerRegistry,
    CircuitState,
)
from agent_router.config import Config
from agent_router.errors import (
    AuthenticationError,
    CircuitOpenError,
    ProviderError,
    ProviderTimeoutError,
    UnknownRoleError,
)
from agent_router.providers import ProviderManager, create_provider_manager
from agent_router.providers.models import TextBlock, Tool
from agent_router.retry import RetryPolicy
from agent_router.router import RouterEngine
from agent_router.telemetry import InMemoryMetrics
from tests.conftest import FakeProvider
from tests.helpers import FailingProvider, ScriptedProvider

pytestmark = pytest.mark.unit

_NO_RETRY = RetryPolicy(max_attempts=1)


def _engine(
    config: Config,
    *,
    primary: Any = None,
    backup: Any = None,
    retry_policy: RetryPolicy = _NO_RETRY,
    **kwargs: Any,
) -> RouterEngine:
    manager = ProviderManager()
    engine = RouterEngine(config, manager, retry_policy=retry_policy, **kwargs)
    manager.register("primary", primary or FakeProvider(name="primary"))
    manager.register("backup", backup or FakeProvider(name="backup"))
    return engine


@pytest.mark.asyncio
async def test_invoke_builds_request_from_role_and_defaults(basic_config: Config) -> None:
    primary = FakeProvider(name="primary")
    engine = _engine(basic_config, primary=primary)
    tool = Tool("search", "Search the code")

    response = await engine.invoke_agent(
        "coder", "Fix the bug", context="main.py line 3", tools=[tool]
    )

    request = primary.requests[0]
    assert request.model == "model-a"
    assert request.system == "You write code."
    assert (request.temperature, request.max_tokens, request.timeout_ms) == (
        0.7,
        4096,
        60_000,
    )
    assert request.tools == (tool,)
    assert request.messages[0].role == "user"
    assert request.messages[0].content == (
        TextBlock("<context>\nmain.py line 3\n</context>"),
        TextBlock("Fix the bug"),
    )

    assert response.role == "coder"
    assert response.provider == "primary"
    assert response.model == "model-a"
    assert response.text == "ok:Fix the bug"
    assert response.fallback_used is False
    assert response.usage is not None
    assert response.usage.total_tokens == 8
    assert response.duration_ms >= 0
    assert response.trace_id


@pytest.mark.asyncio
async def test_task_without_context_is_a_single_block(basic_config: Config) -> None:
    backup = FakeProvider(name="backup")
    engine = _engine(basic_config, backup=backup)

    await engine.invoke_agent("critic", "Review this")

    request = backup.requests[0]
    assert request.messages[0].content == (TextBlock("Review this"),)
    assert request.system is None
    assert request.temperature == 0.2


@pytest.mark.asyncio
async def test_unknown_role_raises(basic_config: Config) -> None:
    engine = _engine(basic_config)

    with pytest.raises(UnknownRoleError, match="coder, critic"):
        await engine.invoke_agent("designer", "anything")


@pytest.mark.asyncio
async def test_fallback_is_attributed_to_fallback_provider(basic_config: Config) -> None:
    primary = FailingProvider(name="primary", error=AuthenticationError("primary"))
    backup = FakeProvider(name="backup")
    engine = _engine(basic_config, primary=primary, backup=backup)

    response = await engine.invoke_agent("coder", "Write it")

    assert primary.calls == 1
    assert backup.requests[0].model == "model-b"
    assert backup.requests[0].system == "You write code."
    assert response.provider == "backup"
    assert response.model == "model-b"
    assert response.fallback_used is True
    assert response.text == "ok:Write it"


@pytest.mark.asyncio
async def test_fallback_failure_surfaces_original_error(basic_config: Config) -> None:
    primary_error = AuthenticationError("primary")
    fallback_error = ProviderError("backup down", status_code=500)
    engine = _engine(
        basic_config,
        primary=FailingProvider(name="primary", error=primary_error),
        backup=FailingProvider(name="backup", error=fallback_error),
    )

    with pytest.raises(AuthenticationError) as exc_info:
        await engine.invoke_agent("coder", "Write it")

    assert exc_info.value is primary_error
    assert exc_info.value.__cause__ is fallback_error


@pytest.mark.asyncio
async def test_fallback_can_be_disabled(basic_config: Config) -> None:
    backup = FakeProvider(name="backup")
    engine = _engine(
        basic_config,
        primary=FailingProvider(name="primary", error=AuthenticationError("primary")),
        backup=backup,
        enable_fallback=False,
    )

    with pytest.raises(AuthenticationError):
        await engine.invoke_agent("coder", "Write it")

    assert backup.requests == []


@pytest.mark.asyncio
async def test_retryable_failures_are_retried_before_fallback(basic_config: Config) -> None:
    primary = ScriptedProvider(
        name="primary",
        script=[ProviderTimeoutError("primary", 10), ProviderTimeoutError("primary", 10)],
    )
    backup = FakeProvider(name="backup")
    engine = _engine(
        basic_config,
        primary=primary,
        backup=backup,
        retry_policy=RetryPolicy(max_attempts=3, initial_delay_ms=0, jitter_factor=0),
    )

    response = await engine.invoke_agent("coder", "Write it")

    assert primary.calls == 3
    assert response.provider == "primary"
    assert backup.requests == []


@pytest.mark.asyncio
async def test_repeated_failures_open_the_providers_circuit(basic_config: Config) -> None:
    backup = FailingProvider(name="backup", error=ProviderError("down", status_code=503))
    engine = _engine(
        basic_config,
        backup=backup,
        breakers=CircuitBreakerRegistry(CircuitBreakerOptions(failure_threshold=2)),
    )

    for _ in range(2):
        with pytest.raises(ProviderError):
            await engine.invoke_agent("critic", "Review")
    with pytest.raises(CircuitOpenError) as exc_info:
        await engine.invoke_agent("critic", "Review")

    assert backup.calls == 2
    assert exc_info.value.provider == "backup"
    assert engine.breaker_stats()["backup"].state is CircuitState.OPEN


@pytest.mark.asyncio
async def test_open_primary_circuit_still_falls_back(basic_config: Config) -> None:
    breakers = CircuitBreakerRegistry(CircuitBreakerOptions(failure_threshold=1))
    engine = _engine(
        basic_config,
        primary=FailingProvider(name="primary", error=ProviderError("x", status_code=500)),
        breakers=breakers,
    )
    await engine.invoke_agent("coder", "first")

    response = await engine.invoke_agent("coder", "second")

    assert breakers.get("primary").state is CircuitState.OPEN
    assert response.fallback_used is True


@pytest.mark.asyncio
async def test_compare_agents_omits_failed_roles(basic_config: Config) -> None:
    engine = _engine(basic_config)

    results = await engine.compare_agents(["coder", "critic", "designer"], "Same task")

    assert sorted(results) == ["coder", "critic"]
    assert results["coder"].provider == "primary"
    assert results["critic"].text == "ok:Same task"


@pytest.mark.asyncio
async def test_update_config_keeps_breaker_state(basic_config: Config) -> None:
    engine = _engine(
        basic_config,
        backup=FailingProvider(name="backup", error=ProviderError("x", status_code=500)),
        breakers=CircuitBreakerRegistry(CircuitBreakerOptions(failure_threshold=1)),
    )
    with pytest.raises(ProviderError):
        await engine.invoke_agent("critic", "Review")

    engine.update_config(
        Config.model_validate(
            {
                "roles": {"reviewer": {"provider": "backup", "model": "model-c"}},
                "providers": {"backup": {"type": "mock"}},
            }
        )
    )

    assert engine.list_roles() == ["reviewer"]
    assert engine.has_role("critic") is False
    assert engine.resolve_role("reviewer").model == "model-c"
    assert engine.breaker_stats()["backup"].state is CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        await engine.invoke_agent("reviewer", "Review")


@pytest.mark.asyncio
async def test_metrics_are_recorded_per_outcome(basic_config: Config) -> None:
    metrics = InMemoryMetrics()
    engine = _engine(
        basic_config,
        primary=FailingProvider(name="primary", error=AuthenticationError("primary")),
        breakers=CircuitBreakerRegistry(CircuitBreakerOptions(failure_threshold=1)),
        metrics=metrics,
    )

    await engine.invoke_agent("coder", "Write it")

    assert metrics.counter("requests", provider="primary", status="error") == 1
    assert metrics.counter("requests", provider="backup", status="success") == 1
    assert metrics.counter("tokens.input", provider="backup") == 3
    assert metrics.counter("tokens.output", provider="backup") == 5
    assert metrics.histogram("latency_ms", role="coder")["count"] == 2
    assert (
        metrics.counter(
            "circuit_breaker.transitions", provider="primary", current="OPEN"
        )
        == 1
    )


@pytest.mark.asyncio
async def test_health_check_and_aclose_delegate_to_providers(basic_config: Config) -> None:
    primary = FakeProvider(name="primary")
    backup = FakeProvider(name="backup")
    engine = _engine(basic_config, primary=primary, backup=backup)

    results = await engine.health_check()
    await engine.aclose()

    assert results == {"backup": True, "primary": True}
    assert primary.closed is True
    assert backup.closed is True


@pytest.mark.asyncio
async def test_create_router_wires_builtin_mock_provider() -> None:
    engine = create_router(
        {
            "roles": {"echo": {"provider": "local", "model": "mock-1"}},
            "providers": {"local": {"type": "mock"}},
        },
        providers=create_provider_manager(),
    )

    response = await engine.invoke_agent("echo", "hello there")

    assert response.text == "echo: hello there"
    assert response.usage is not None
    assert response.usage.input_tokens == 10
    await engine.aclose()

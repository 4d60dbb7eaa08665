"""Provider manager: factories by type, adapters by name."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from agent_router.config import ProviderConfig
from agent_router.errors import ConfigurationError, ProviderError
from agent_router.providers import (
    AnthropicProvider,
    GeminiProvider,
    MockProvider,
    OpenAIProvider,
    ProviderManager,
    create_provider_manager,
)
from agent_router.providers.models import CompletionRequest, Message
from tests.conftest import FakeProvider
from tests.helpers import GatedTransport

pytestmark = pytest.mark.unit


class _CountingFactory:
    def __init__(self) -> None:
        self.built: list[FakeProvider] = []

    def __call__(self, name: str, config: ProviderConfig) -> FakeProvider:
        provider = FakeProvider(name=name)
        self.built.append(provider)
        return provider


def test_types_and_configured_names_are_distinct() -> None:
    manager = create_provider_manager()

    assert manager.list_types() == [
        "anthropic",
        "deepseek",
        "google",
        "kimi",
        "mock",
        "ollama",
        "openai",
        "openrouter",
        "zai",
    ]
    assert manager.list_configured() == []

    manager.update_config(
        {"work": ProviderConfig(type="anthropic"), "orphan": ProviderConfig(type="nope")}
    )

    assert manager.list_configured() == ["work"]
    assert manager.has("orphan") is True
    assert manager.is_configured("orphan") is False


def test_adapters_are_built_lazily_and_cached() -> None:
    factory = _CountingFactory()
    manager = ProviderManager()
    manager.register_factory("fake", factory)
    manager.update_config({"one": ProviderConfig(type="fake")})

    assert factory.built == []
    first = manager.get("one")
    second = manager.get("one")

    assert first is second
    assert len(factory.built) == 1
    assert first.name == "one"


def test_builtin_factories_pick_adapter_by_type() -> None:
    manager = create_provider_manager()
    manager.update_config(
        {
            "anthropic": ProviderConfig(),
            "cheap": ProviderConfig(type="deepseek"),
            "echo": ProviderConfig(type="mock"),
            "gemini": ProviderConfig(type="google"),
            "local": ProviderConfig(type="ollama"),
        }
    )

    cheap = manager.get("cheap")
    local = manager.get("local")

    assert isinstance(manager.get("anthropic"), AnthropicProvider)
    assert isinstance(cheap, OpenAIProvider)
    assert cheap.variant.type == "deepseek"
    assert isinstance(manager.get("echo"), MockProvider)
    assert isinstance(manager.get("gemini"), GeminiProvider)
    assert isinstance(local, OpenAIProvider)
    assert local.variant.type == "ollama"


def test_unconfigured_provider_is_a_configuration_error() -> None:
    manager = create_provider_manager()
    manager.update_config({"openai": ProviderConfig()})

    with pytest.raises(ConfigurationError, match="'ghost' is not configured") as exc_info:
        manager.get("ghost")

    assert "openai" in str(exc_info.value)
    assert exc_info.value.hint is not None


def test_missing_factory_is_a_configuration_error() -> None:
    manager = ProviderManager()
    manager.update_config({"custom": ProviderConfig(type="custom")})

    with pytest.raises(ConfigurationError, match="No factory"):
        manager.get("custom")


@pytest.mark.asyncio
async def test_update_config_rebuilds_only_changed_adapters() -> None:
    factory = _CountingFactory()
    manager = ProviderManager()
    manager.register_factory("fake", factory)
    manager.update_config(
        {"a": ProviderConfig(type="fake"), "b": ProviderConfig(type="fake")}
    )
    old_a, old_b = manager.get("a"), manager.get("b")

    manager.update_config(
        {
            "a": ProviderConfig(type="fake"),
            "b": ProviderConfig(type="fake", base_url="https://changed.example"),
        }
    )

    assert manager.get("a") is old_a
    assert manager.get("b") is not old_b
    await manager.aclose()
    assert old_b.closed is True


@pytest.mark.asyncio
async def test_reload_lets_in_flight_requests_finish_on_replaced_adapter() -> None:
    transport = GatedTransport(
        httpx.Response(
            200,
            json={
                "id": "msg_1",
                "model": "claude-x",
                "content": [{"type": "text", "text": "done"}],
            },
        )
    )
    manager = ProviderManager()
    manager.register_factory(
        "anthropic",
        lambda name, config: AnthropicProvider(name, config, transport=transport),
    )
    manager.update_config({"claude": ProviderConfig(type="anthropic", api_key="old")})
    old = manager.get("claude")
    call = asyncio.create_task(
        old.complete(
            CompletionRequest(
                model="claude-x", messages=(Message(role="user", content="hi"),)
            )
        )
    )
    await transport.started.wait()

    manager.update_config({"claude": ProviderConfig(type="anthropic", api_key="new")})
    for _ in range(3):
        await asyncio.sleep(0)  # run the scheduled close of the old adapter
    closed_mid_request = transport.closed
    transport.release.set()
    response = await call

    assert closed_mid_request is False
    assert response.text == "done"
    assert transport.closed is True
    assert manager.get("claude") is not old
    await manager.aclose()


def test_registered_adapters_survive_config_updates() -> None:
    manager = ProviderManager()
    fake = FakeProvider(name="direct")
    manager.register("direct", fake)

    manager.update_config({})

    assert manager.get("direct") is fake
    assert manager.list_configured() == ["direct"]


@pytest.mark.asyncio
async def test_remove_forgets_provider() -> None:
    manager = ProviderManager()
    fake = FakeProvider()
    manager.register("fake", fake)

    manager.remove("fake")
    await manager.aclose()

    assert manager.has("fake") is False
    assert fake.closed is True


@pytest.mark.asyncio
async def test_health_check_all_reports_per_provider() -> None:
    class Unhealthy(FakeProvider):
        async def health_check(self) -> None:
            raise ProviderError("down", status_code=503)

    manager = ProviderManager()
    healthy = FakeProvider(name="ok")
    manager.register("ok", healthy)
    manager.register("bad", Unhealthy(name="bad"))

    results = await manager.health_check_all()

    assert results["ok"] is True
    assert isinstance(results["bad"], ProviderError)
    assert healthy.health_calls == 1


@pytest.mark.asyncio
async def test_aclose_closes_live_adapters() -> None:
    manager = ProviderManager()
    fake = FakeProvider()
    manager.register("fake", fake)

    await manager.aclose()

    assert fake.closed is True
    assert manager.list_configured() == []


def test_custom_factories_override_builtins() -> None:
    factory = _CountingFactory()
    manager = create_provider_manager({"openai": factory})
    manager.update_config({"openai": ProviderConfig()})

    assert isinstance(manager.get("openai"), FakeProvider)

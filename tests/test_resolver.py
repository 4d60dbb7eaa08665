"""Role resolution against the configured defaults."""

from __future__ import annotations

import pytest

from agent_router.config import Config
from agent_router.errors import UnknownRoleError
from agent_router.router import RoleResolver

pytestmark = pytest.mark.unit


def test_role_settings_override_defaults(basic_config: Config) -> None:
    resolver = RoleResolver(basic_config)

    critic = resolver.resolve("critic")
    coder = resolver.resolve("coder")

    assert critic.temperature == 0.2
    assert critic.max_tokens == 4096
    assert critic.system_prompt is None
    assert critic.fallback is None
    assert coder.temperature == 0.7
    assert coder.timeout_ms == 60_000
    assert coder.system_prompt == "You write code."
    assert coder.fallback is not None
    assert (coder.fallback.provider, coder.fallback.model) == ("backup", "model-b")


def test_unknown_role_lists_every_configured_role(basic_config: Config) -> None:
    resolver = RoleResolver(basic_config)

    with pytest.raises(UnknownRoleError) as exc_info:
        resolver.resolve("designer")

    message = str(exc_info.value)
    assert '"designer"' in message
    assert "coder" in message
    assert "critic" in message
    assert exc_info.value.available == ["coder", "critic"]


def test_unknown_role_with_no_roles_configured() -> None:
    resolver = RoleResolver(Config())

    with pytest.raises(UnknownRoleError, match=r"\(none configured\)"):
        resolver.resolve("anything")


def test_update_config_swaps_roles_in_place(basic_config: Config) -> None:
    resolver = RoleResolver(basic_config)
    updated = Config.model_validate(
        {
            "defaults": {"max_tokens": 256},
            "roles": {"writer": {"provider": "mock", "model": "m"}},
            "providers": {"mock": {}},
        }
    )

    resolver.update_config(updated)

    assert resolver.list_roles() == ["writer"]
    assert resolver.has_role("coder") is False
    assert resolver.resolve("writer").max_tokens == 256

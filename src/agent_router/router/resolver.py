"""Role resolution: merge a role's settings over the configured defaults."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from agent_router.errors import UnknownRoleError

if TYPE_CHECKING:
    from agent_router.config import Config, FallbackConfig


@dataclass(frozen=True)
class AgentConfig:
    """Effective settings for one invocation of a role.

    ``temperature``, ``max_tokens`` and ``timeout_ms`` are always set because
    the defaults always define them; ``system_prompt`` and ``fallback`` stay
    ``None`` unless the role sets them.
    """

    provider: str
    model: str
    temperature: float
    max_tokens: int
    timeout_ms: int
    system_prompt: str | None = None
    fallback: FallbackConfig | None = None


class RoleResolver:
    """Looks up roles in the current configuration.

    :meth:`update_config` swaps the role map and defaults in place, so every
    holder of this resolver sees the new configuration.
    """

    def __init__(self, config: Config) -> None:
        self._roles = dict(config.roles)
        self._defaults = config.defaults

    def resolve(self, role: str) -> AgentConfig:
        """Return the merged settings for *role*.

        Raises:
            UnknownRoleError: When *role* is not configured; the message lists
                every configured role.
        """
        role_config = self._roles.get(role)
        if role_config is None:
            raise UnknownRoleError(
                role,
                self.list_roles(),
                hint="Pick one of the configured roles or add it to the configuration.",
            )
        defaults = self._defaults
        return AgentConfig(
            provider=role_config.provider,
            model=role_config.model,
            temperature=role_config.temperature
            if role_config.temperature is not None
            else defaults.temperature,
            max_tokens=role_config.max_tokens
            if role_config.max_tokens is not None
            else defaults.max_tokens,
            timeout_ms=role_config.timeout_ms
            if role_config.timeout_ms is not None
            else defaults.timeout_ms,
            system_prompt=role_config.system_prompt,
            fallback=role_config.fallback,
        )

    def has_role(self, role: str) -> bool:
        return role in self._roles

    def list_roles(self) -> list[str]:
        """Configured role names, in configuration order."""
        return list(self._roles)

    def update_config(self, config: Config) -> None:
        self._roles = dict(config.roles)
        self._defaults = config.defaults

"""Provider registry: adapter factories by type, live adapters by name."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from agent_router.errors import ConfigurationError
from agent_router.providers.anthropic import AnthropicProvider
from agent_router.providers.gemini import GeminiProvider
from agent_router.providers.mock import MockProvider
from agent_router.providers.openai import VARIANTS, variant_factory

if TYPE_CHECKING:
    from collections.abc import Mapping

    from agent_router.config import ProviderConfig
    from agent_router.providers.base import Provider, ProviderFactory

log = logging.getLogger(__name__)


class ProviderManager:
    """Owns provider adapters.

    Factories are registered once per adapter *type*. Configurations and live
    adapters are keyed by the configured provider *name*; a name's type is
    ``config.type`` or, when unset, the name itself. Adapters are built
    lazily on first :meth:`get` and rebuilt after their config changes.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._log = logger or log
        self._factories: dict[str, ProviderFactory] = {}
        self._configs: dict[str, ProviderConfig] = {}
        self._instances: dict[str, Provider] = {}
        self._registered: set[str] = set()
        self._closing: set[asyncio.Task[None]] = set()

    def register_factory(self, provider_type: str, factory: ProviderFactory) -> None:
        """Register (or replace) the factory for an adapter type."""
        self._factories[provider_type] = factory
        for name in [n for n in self._instances if self._type_of(n) == provider_type]:
            if name not in self._registered:
                self._discard_instance(name)

    def register(self, name: str, provider: Provider) -> None:
        """Register a ready-made adapter under *name*, bypassing factories."""
        if name in self._instances and self._instances[name] is not provider:
            self._discard_instance(name)
        self._instances[name] = provider
        self._registered.add(name)

    def update_config(self, providers: Mapping[str, ProviderConfig]) -> None:
        """Replace the provider configurations in place.

        Adapters whose config changed, or whose name is no longer configured,
        are dropped and rebuilt on next use. Adapters added with
        :meth:`register` are kept.
        """
        new_configs = dict(providers)
        for name in list(self._instances):
            if name in self._registered:
                continue
            if new_configs.get(name) != self._configs.get(name):
                self._discard_instance(name)
        self._configs = new_configs
        self._log.debug(
            "Provider configuration updated",
            extra={"providers": sorted(new_configs)},
        )

    def get(self, name: str) -> Provider:
        """Return the adapter for *name*, building it on first use."""
        instance = self._instances.get(name)
        if instance is not None:
            return instance

        config = self._configs.get(name)
        if config is None:
            configured = ", ".join(self.list_configured()) or "none"
            raise ConfigurationError(
                f"Provider '{name}' is not configured. Configured providers: {configured}",
                hint=f"Add a providers.{name} entry to the configuration.",
            )
        provider_type = self._type_of(name)
        factory = self._factories.get(provider_type)
        if factory is None:
            raise ConfigurationError(
                f"No factory registered for provider type '{provider_type}'",
                hint=f"Registered types: {', '.join(self.list_types()) or 'none'}",
            )
        instance = factory(name, config)
        self._instances[name] = instance
        self._log.debug(
            "Created provider adapter",
            extra={"provider": name, "provider_type": provider_type},
        )
        return instance

    def has(self, name: str) -> bool:
        """Whether *name* is configured or directly registered."""
        return name in self._configs or name in self._instances

    def is_configured(self, name: str) -> bool:
        """Whether :meth:`get` can produce an adapter for *name*."""
        if name in self._registered:
            return True
        return name in self._configs and self._type_of(name) in self._factories

    def get_config(self, name: str) -> ProviderConfig | None:
        return self._configs.get(name)

    def list_types(self) -> list[str]:
        """Registered adapter types, whether or not any is configured."""
        return sorted(self._factories)

    def list_configured(self) -> list[str]:
        """Provider names that can currently be resolved to an adapter."""
        names = set(self._configs) | self._registered
        return sorted(n for n in names if self.is_configured(n))

    def remove(self, name: str) -> None:
        """Forget a provider's config and adapter."""
        self._configs.pop(name, None)
        self._registered.discard(name)
        self._discard_instance(name)

    async def health_check_all(self) -> dict[str, bool | BaseException]:
        """Health-check every configured provider concurrently.

        Returns ``True`` per healthy provider and the raised exception otherwise.
        """
        names = self.list_configured()

        async def check(name: str) -> bool | BaseException:
            try:
                await self.get(name).health_check()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._log.warning(
                    "Health check failed for %s: %s", name, e, extra={"provider": name}
                )
                return e
            return True

        results = await asyncio.gather(*(check(n) for n in names))
        return dict(zip(names, results, strict=True))

    async def aclose(self) -> None:
        """Close every live adapter and wait for pending background closes."""
        instances = list(self._instances.values())
        self._instances.clear()
        self._registered.clear()
        for instance in instances:
            await instance.aclose()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    def _type_of(self, name: str) -> str:
        config = self._configs.get(name)
        if config is not None and config.type:
            return config.type
        return name

    def _discard_instance(self, name: str) -> None:
        instance = self._instances.pop(name, None)
        self._registered.discard(name)
        if instance is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._log.debug(
                "No running event loop; not closing replaced adapter %s", name
            )
            return
        task = loop.create_task(self._close_quietly(name, instance))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close_quietly(self, name: str, instance: Provider) -> None:
        try:
            await instance.aclose()
        except Exception:
            self._log.warning("Failed to close provider adapter %s", name, exc_info=True)


def default_factories() -> dict[str, ProviderFactory]:
    """Factories for every built-in adapter type."""
    factories: dict[str, ProviderFactory] = {
        "anthropic": AnthropicProvider,
        "google": GeminiProvider,
        "mock": MockProvider,
    }
    for variant_type in VARIANTS:
        factories[variant_type] = variant_factory(variant_type)
    return factories


def create_provider_manager(
    factories: Mapping[str, ProviderFactory] | None = None,
    *,
    logger: logging.Logger | None = None,
) -> ProviderManager:
    """Build a manager with the built-in factories plus any *factories* given."""
    manager = ProviderManager(logger=logger)
    for provider_type, factory in {**default_factories(), **(factories or {})}.items():
        manager.register_factory(provider_type, factory)
    return manager

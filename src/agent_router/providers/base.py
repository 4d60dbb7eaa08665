"""Provider protocol: the capability set every adapter implements."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from agent_router.config import ProviderConfig
    from agent_router.providers.models import (
        CompletionRequest,
        CompletionResponse,
        StreamChunk,
    )


@runtime_checkable
class Provider(Protocol):
    """Minimal provider protocol: complete, complete_stream, health_check."""

    name: str

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Run one completion and return the normalized response."""
        ...

    def complete_stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        """Stream normalized chunks; always ends with ``message_stop``."""
        ...

    async def health_check(self) -> None:
        """Raise when the provider is unreachable or misconfigured."""
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        ...


#: Builds an adapter for one configured provider name.
ProviderFactory = Callable[[str, "ProviderConfig"], Provider]

"""Mock provider for testing."""

from __future__ import annotations

from typing import TYPE_CHECKING

from agent_router.providers.models import (
    MESSAGE_STOP,
    CompletionRequest,
    CompletionResponse,
    StreamChunk,
    StreamDelta,
    TextBlock,
    Usage,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from agent_router.config import ProviderConfig


class MockProvider:
    """Mock provider for testing without API calls.

    Echoes the last text the caller sent and reports fixed token usage. Only
    the call count and the most recent request are kept.
    """

    def __init__(self, name: str = "mock", config: ProviderConfig | None = None) -> None:
        self.name = name
        self.config = config
        self.call_count = 0
        self.last_request: CompletionRequest | None = None

    @staticmethod
    def _echo(request: CompletionRequest) -> str:
        """Echo the last non-empty text block, falling back to an empty string."""
        for message in reversed(request.messages):
            texts = [
                b.text for b in message.blocks() if isinstance(b, TextBlock) and b.text.strip()
            ]
            if texts:
                return f"echo: {texts[-1][:100]}"
        return "echo: "

    def _record(self, request: CompletionRequest) -> None:
        self.call_count += 1
        self.last_request = request

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Return a deterministic mock response."""
        self._record(request)
        return CompletionResponse(
            id=f"mock-{self.call_count}",
            content=(TextBlock(self._echo(request)),),
            model=request.model,
            stop_reason="end_turn",
            usage=Usage(input_tokens=10, output_tokens=10),
        )

    async def complete_stream(
        self, request: CompletionRequest
    ) -> AsyncIterator[StreamChunk]:
        """Stream the echo one word at a time."""
        self._record(request)
        yield StreamChunk(type="content_block_start", index=0, content_block=TextBlock(""))
        for word in self._echo(request).split(" "):
            yield StreamChunk(
                type="content_block_delta",
                index=0,
                delta=StreamDelta(type="text_delta", text=word + " "),
            )
        yield MESSAGE_STOP

    async def health_check(self) -> None:
        """Always healthy."""

    async def aclose(self) -> None:
        """Nothing to release."""

"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off provider subclasses as coverage expands.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
import json
from typing import Any

import httpx

from agent_router.providers.models import CompletionRequest, CompletionResponse
from tests.conftest import FakeProvider


@dataclass
class ScriptedProvider(FakeProvider):
    """FakeProvider that returns a scripted sequence of results/exceptions.

    Once the script is exhausted it falls back to the FakeProvider echo.
    """

    script: list[CompletionResponse | BaseException] = field(default_factory=list)
    calls: int = 0

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.calls += 1
        if not self.script:
            return await super().complete(request)
        self.requests.append(request)
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


@dataclass
class FailingProvider(FakeProvider):
    """FakeProvider whose every call raises ``error``."""

    error: BaseException = field(default_factory=lambda: RuntimeError("boom"))
    calls: int = 0

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.calls += 1
        self.requests.append(request)
        raise self.error


@dataclass
class GateProvider(FakeProvider):
    """FakeProvider that blocks every call until ``release`` is set."""

    release: asyncio.Event = field(default_factory=asyncio.Event)
    entered: int = 0

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.entered += 1
        await self.release.wait()
        return await super().complete(request)


@dataclass
class FakeClock:
    """Manually advanced monotonic clock, in milliseconds."""

    now: int = 1_000_000

    def __call__(self) -> int:
        return self.now

    def advance_ms(self, ms: int) -> None:
        self.now += ms


def sse_lines(*events: dict[str, Any] | str, done: bool = True) -> bytes:
    """Encode events as ``data:`` lines; strings are emitted verbatim."""
    out: list[str] = []
    for event in events:
        if isinstance(event, str):
            out.append(event)
        else:
            out.append(f"data: {json.dumps(event)}")
        out.append("")
    if done:
        out.append("data: [DONE]")
        out.append("")
    return "\n".join(out).encode()


class ChunkedStream(httpx.AsyncByteStream):
    """Response body delivered as the given byte chunks, one read each."""

    def __init__(self, chunks: list[bytes]) -> None:
        self.chunks = chunks
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


def mock_client(
    handler: Callable[[httpx.Request], httpx.Response],
) -> httpx.AsyncClient:
    """An AsyncClient whose requests are answered by *handler*."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def split_bytes(data: bytes, size: int) -> list[bytes]:
    """Split *data* into fixed-size pieces (ignores character boundaries)."""
    return [data[i : i + size] for i in range(0, len(data), size)]


class GatedTransport(httpx.AsyncBaseTransport):
    """Holds every request until ``release`` is set, then answers with ``response``.

    Like a real connection pool, closing it fails requests still waiting.
    """

    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.closed = False

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.started.set()
        await self.release.wait()
        if self.closed:
            raise httpx.ReadError("connection pool closed", request=request)
        return self.response

    async def aclose(self) -> None:
        self.closed = True

"""Pytest configuration and fixtures.

Provides environment isolation, logging configuration and shared test
doubles. All fixtures here are autouse unless noted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from typing import Any

import pytest

from agent_router.config import Config
from agent_router.providers.models import (
    MESSAGE_STOP,
    CompletionRequest,
    CompletionResponse,
    StreamChunk,
    StreamDelta,
    TextBlock,
    Usage,
)

# =============================================================================
# Test Doubles
# =============================================================================


@dataclass
class FakeProvider:
    """Provider test double that records requests and echoes the task.

    Use to test routing behavior without making real API calls.
    """

    name: str = "fake"
    requests: list[CompletionRequest] = field(default_factory=list)
    health_calls: int = 0
    closed: bool = False

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.requests.append(request)
        last = request.messages[-1].blocks()[-1] if request.messages else None
        prompt = last.text if isinstance(last, TextBlock) else ""
        return CompletionResponse(
            id=f"{self.name}-{len(self.requests)}",
            content=(TextBlock(f"ok:{prompt}"),),
            model=request.model,
            stop_reason="end_turn",
            usage=Usage(input_tokens=3, output_tokens=5),
        )

    async def complete_stream(self, request: CompletionRequest) -> Any:
        response = await self.complete(request)
        yield StreamChunk(type="content_block_start", index=0, content_block=TextBlock(""))
        yield StreamChunk(
            type="content_block_delta",
            index=0,
            delta=StreamDelta(type="text_delta", text=response.text),
        )
        yield MESSAGE_STOP

    async def health_check(self) -> None:
        self.health_calls += 1

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_provider() -> FakeProvider:
    """A fresh FakeProvider (not autouse)."""
    return FakeProvider()


@pytest.fixture
def basic_config() -> Config:
    """Two roles on two providers; ``coder`` falls back to ``backup`` (not autouse)."""
    return Config.model_validate(
        {
            "defaults": {"temperature": 0.7, "max_tokens": 4096, "timeout_ms": 60000},
            "roles": {
                "coder": {
                    "provider": "primary",
                    "model": "model-a",
                    "system_prompt": "You write code.",
                    "fallback": {"provider": "backup", "model": "model-b"},
                },
                "critic": {"provider": "backup", "model": "model-b", "temperature": 0.2},
            },
            "providers": {
                "primary": {"type": "mock"},
                "backup": {"type": "mock"},
            },
        }
    )


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================

_PROVIDER_ENV_PREFIXES = (
    "ANTHROPIC_",
    "OPENAI_",
    "DEEPSEEK_",
    "OPENROUTER_",
    "ZAI_",
    "KIMI_",
    "GEMINI_",
    "GOOGLE_",
    "OLLAMA_",
)


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    monkeypatch.setattr(
        "agent_router.config.load_dotenv", lambda *_args, **_kwargs: False
    )


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Ensure a clean provider environment for each test.

    Clears provider API key variables to prevent test pollution.
    Opt-out: @pytest.mark.allow_env_pollution
    """
    if request.node.get_closest_marker("allow_env_pollution"):
        return
    for key in list(os.environ.keys()):
        if key.startswith(_PROVIDER_ENV_PREFIXES):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

"""Provider implementations."""

from .anthropic import AnthropicProvider
from .base import Provider, ProviderFactory
from .gemini import GeminiProvider
from .manager import ProviderManager, create_provider_manager
from .mock import MockProvider
from .openai import OpenAIProvider

__all__ = [
    "AnthropicProvider",
    "GeminiProvider",
    "MockProvider",
    "OpenAIProvider",
    "Provider",
    "ProviderFactory",
    "ProviderManager",
    "create_provider_manager",
]

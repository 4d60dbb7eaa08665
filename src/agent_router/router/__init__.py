"""Role resolution and request routing."""

from .engine import AgentResponse, RouterEngine
from .resolver import AgentConfig, RoleResolver

__all__ = ["AgentConfig", "AgentResponse", "RoleResolver", "RouterEngine"]

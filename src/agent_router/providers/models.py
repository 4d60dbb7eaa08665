"""Domain models for the provider transport layer.

These are the wire-agnostic shapes every adapter translates to and from.
Content blocks are one class per tag so a block never carries fields that
belong to another tag.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["user", "assistant"]
StreamChunkType = Literal["content_block_start", "content_block_delta", "message_stop"]


@dataclass(frozen=True)
class TextBlock:
    """Plain text content."""

    text: str
    type: Literal["text"] = field(default="text", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ToolUseBlock:
    """A tool invocation requested by the model."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: Literal["tool_use"] = field(default="tool_use", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.input}


@dataclass(frozen=True)
class ToolResultBlock:
    """The result of a tool invocation, sent back to the model."""

    tool_use_id: str
    content: str
    type: Literal["tool_result"] = field(default="tool_result", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
        }


ContentBlock = TextBlock | ToolUseBlock | ToolResultBlock


def block_from_dict(data: dict[str, Any]) -> ContentBlock:
    """Build a content block from its wire dict (Anthropic-shaped)."""
    block_type = data.get("type")
    if block_type == "tool_use":
        raw_input = data.get("input")
        return ToolUseBlock(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            input=raw_input if isinstance(raw_input, dict) else {},
        )
    if block_type == "tool_result":
        content = data.get("content", "")
        return ToolResultBlock(
            tool_use_id=str(data.get("tool_use_id", "")),
            content=content if isinstance(content, str) else str(content),
        )
    text = data.get("text", "")
    return TextBlock(text=text if isinstance(text, str) else "")


@dataclass(frozen=True)
class Message:
    """One conversational turn: plain text or ordered content blocks."""

    role: Role
    content: str | tuple[ContentBlock, ...]

    def blocks(self) -> tuple[ContentBlock, ...]:
        """Return the content as blocks, wrapping plain text."""
        if isinstance(self.content, str):
            return (TextBlock(self.content),)
        return self.content


@dataclass(frozen=True)
class Tool:
    """Tool definition in the Anthropic schema shape."""

    name: str
    description: str
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass(frozen=True)
class CompletionRequest:
    """A normalized request payload for a provider completion call."""

    model: str
    messages: tuple[Message, ...]
    system: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    tools: tuple[Tool, ...] = ()
    stream: bool = False
    timeout_ms: int | None = None


@dataclass(frozen=True)
class Usage:
    """Token usage for one call."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int | None = None
    cache_read_input_tokens: int | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class CompletionResponse:
    """A normalized response; ``content`` is in generation order."""

    id: str
    content: tuple[ContentBlock, ...]
    model: str
    stop_reason: str
    usage: Usage | None = None

    @property
    def text(self) -> str:
        """Concatenate the text blocks."""
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))


@dataclass(frozen=True)
class StreamDelta:
    """Incremental content for one block (``text_delta`` or ``input_json_delta``)."""

    type: str
    text: str | None = None


@dataclass(frozen=True)
class StreamChunk:
    """One normalized streaming event."""

    type: StreamChunkType
    index: int | None = None
    content_block: ContentBlock | None = None
    delta: StreamDelta | None = None


MESSAGE_STOP = StreamChunk(type="message_stop")

"""OpenAI Chat Completions provider and its OpenAI-compatible variants."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import TYPE_CHECKING, Any

from agent_router.errors import TranslationError
from agent_router.providers._http import DEFAULT_TIMEOUT_MS, BearerAuth, HttpTransport
from agent_router.providers.models import (
    MESSAGE_STOP,
    CompletionRequest,
    CompletionResponse,
    ContentBlock,
    Message,
    StreamChunk,
    StreamDelta,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    import httpx

    from agent_router.config import ProviderConfig
    from agent_router.providers.base import ProviderFactory

log = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
_CHAT_PATH = "/chat/completions"
_MODELS_PATH = "/models"
_HEALTH_CHECK_TIMEOUT_MS = 10_000

# Models that still take ``max_tokens`` on the official API.
_LEGACY_MODEL_MARKERS = ("gpt-3.5", "gpt-4-0314", "gpt-4-0613", "gpt-4-32k")

_FINISH_REASONS = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "content_filter": "content_filter",
}

# Tool blocks sit after the text block, which is always index 0.
_TOOL_INDEX_OFFSET = 1


@dataclass(frozen=True)
class CompatibleVariant:
    """An OpenAI-compatible back-end: its default endpoint, routes and fixed headers."""

    type: str
    default_base_url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    chat_path: str = _CHAT_PATH
    models_path: str = _MODELS_PATH


VARIANTS: dict[str, CompatibleVariant] = {
    "openai": CompatibleVariant("openai", OPENAI_BASE_URL),
    "deepseek": CompatibleVariant("deepseek", "https://api.deepseek.com/v1"),
    "openrouter": CompatibleVariant("openrouter", "https://openrouter.ai/api/v1"),
    "zai": CompatibleVariant("zai", "https://api.z.ai/api/paas/v4"),
    # The Kimi coding endpoint only serves recognized coding-agent clients.
    "kimi": CompatibleVariant(
        "kimi",
        "https://api.kimi.com/coding/v1",
        {"User-Agent": "claude-code/1.0"},
    ),
    # Local server with no auth. The base URL is the host root; the
    # compatible routes live under /v1 beside the native /api routes.
    "ollama": CompatibleVariant(
        "ollama",
        "http://localhost:11434",
        chat_path="/v1/chat/completions",
        models_path="/api/tags",
    ),
}


class OpenAIProvider:
    """OpenAI Chat Completions provider.

    Bearer auth plus an optional ``OpenAI-Organization`` header. The same
    class serves every OpenAI-compatible variant; only the default base URL,
    the chat and model-list routes and fixed headers differ.
    """

    def __init__(
        self,
        name: str,
        config: ProviderConfig,
        *,
        variant: CompatibleVariant | None = None,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> None:
        """Initialize from a provider config.

        *client* is used as-is and never closed here; *transport* is handed to
        the client this adapter creates and owns.
        """
        self.name = name
        self.config = config
        self.variant = variant or VARIANTS.get(config.type or name, VARIANTS["openai"])

        headers: dict[str, str] = dict(self.variant.headers)
        if config.organization:
            headers["OpenAI-Organization"] = config.organization
        if config.headers:
            headers.update(config.headers)

        self._http = HttpTransport(
            provider=name,
            provider_type=self.variant.type,
            base_url=config.base_url or self.variant.default_base_url,
            auth=BearerAuth(),
            api_key=config.api_key_value,
            extra_headers=headers,
            default_timeout_ms=default_timeout_ms,
            client=client,
            transport=transport,
        )

    @property
    def is_official_api(self) -> bool:
        """Whether requests go to OpenAI itself rather than a compatible host."""
        return self._http.base_url.startswith("https://api.openai.com")

    def uses_max_completion_tokens(self, model: str) -> bool:
        """Newer official models take ``max_completion_tokens``; all others ``max_tokens``."""
        if not self.is_official_api:
            return False
        lower = model.lower()
        return not any(marker in lower for marker in _LEGACY_MODEL_MARKERS)

    def build_request_body(self, request: CompletionRequest) -> dict[str, Any]:
        """Translate a normalized request into a Chat Completions body."""
        messages: list[dict[str, Any]] = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        for message in request.messages:
            messages.extend(_flatten_message(message))

        body: dict[str, Any] = {"model": request.model, "messages": messages}
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.max_tokens is not None:
            key = (
                "max_completion_tokens"
                if self.uses_max_completion_tokens(request.model)
                else "max_tokens"
            )
            body[key] = request.max_tokens
        if request.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.input_schema,
                    },
                }
                for t in request.tools
            ]
        if request.stream:
            body["stream"] = True
        return body

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Run one non-streaming completion."""
        body = self.build_request_body(request)
        body.pop("stream", None)
        data = await self._http.request_json(
            "POST", self.variant.chat_path, body=body, timeout_ms=request.timeout_ms
        )
        return _parse_response(data)

    async def complete_stream(
        self, request: CompletionRequest
    ) -> AsyncIterator[StreamChunk]:
        """Stream normalized chunks, reassembling fragmented tool calls."""
        body = self.build_request_body(request)
        body["stream"] = True
        assembler = StreamAssembler()
        async with self._http.stream_events(
            self.variant.chat_path, body=body, timeout_ms=request.timeout_ms
        ) as events:
            async for event in events:
                for chunk in assembler.feed(event):
                    yield chunk
        yield MESSAGE_STOP

    async def health_check(self) -> None:
        """List models; raises on any failure."""
        await self._http.request_json(
            "GET", self.variant.models_path, timeout_ms=_HEALTH_CHECK_TIMEOUT_MS
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._http.aclose()


def _flatten_message(message: Message) -> list[dict[str, Any]]:
    """Flatten one normalized message into one or more wire messages.

    Assistant ``tool_use`` blocks become ``tool_calls``; ``tool_result``
    blocks become separate ``tool`` messages, placed first so they directly
    follow the assistant turn that requested them.
    """
    if isinstance(message.content, str):
        return [{"role": message.role, "content": message.content}]

    text_parts: list[str] = []
    tool_calls: list[dict[str, Any]] = []
    tool_results: list[dict[str, Any]] = []
    for block in message.content:
        if isinstance(block, TextBlock):
            if block.text:
                text_parts.append(block.text)
        elif isinstance(block, ToolUseBlock):
            if block.id and block.name:
                tool_calls.append(
                    {
                        "id": block.id,
                        "type": "function",
                        "function": {
                            "name": block.name,
                            "arguments": json.dumps(block.input),
                        },
                    }
                )
        elif isinstance(block, ToolResultBlock) and block.tool_use_id:
            tool_results.append(
                {
                    "role": "tool",
                    "tool_call_id": block.tool_use_id,
                    "content": block.content,
                }
            )

    text = "\n".join(text_parts) if text_parts else None
    if message.role == "assistant":
        # content may be null only alongside tool_calls.
        out: dict[str, Any] = {
            "role": "assistant",
            "content": text if text is not None or tool_calls else "",
        }
        if tool_calls:
            out["tool_calls"] = tool_calls
        return [out]

    flattened = list(tool_results)
    if text is not None:
        flattened.append({"role": "user", "content": text})
    return flattened


def _parse_response(data: Any) -> CompletionResponse:
    """Translate a Chat Completions response body (first choice only)."""
    choices = data.get("choices") if isinstance(data, dict) else None
    if not choices or not isinstance(choices[0], dict):
        raise TranslationError(
            "No choices in OpenAI response",
            source_format="openai",
            target_format="anthropic",
        )
    choice = choices[0]
    message = choice.get("message") or {}

    content: list[ContentBlock] = []
    text = message.get("content")
    if isinstance(text, str) and text:
        content.append(TextBlock(text))
    for call in message.get("tool_calls") or []:
        function = call.get("function") or {}
        content.append(
            ToolUseBlock(
                id=str(call.get("id", "")),
                name=str(function.get("name", "")),
                input=_parse_arguments(function.get("arguments")),
            )
        )

    return CompletionResponse(
        id=str(data.get("id", "")),
        content=tuple(content),
        model=str(data.get("model", "")),
        stop_reason=map_finish_reason(choice.get("finish_reason")),
        usage=_parse_usage(data.get("usage")),
    )


def map_finish_reason(finish_reason: str | None) -> str:
    """Map an OpenAI finish reason to the normalized stop reason."""
    return _FINISH_REASONS.get(finish_reason or "", "end_turn")


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise TranslationError(
            f"Tool call arguments are not valid JSON: {raw!r:.200}",
            source_format="openai",
            target_format="anthropic",
        ) from e
    if not isinstance(parsed, dict):
        raise TranslationError(
            "Tool call arguments must be a JSON object",
            source_format="openai",
            target_format="anthropic",
        )
    return parsed


def _parse_usage(raw: Any) -> Usage | None:
    if not isinstance(raw, dict):
        return None
    return Usage(
        input_tokens=int(raw.get("prompt_tokens") or 0),
        output_tokens=int(raw.get("completion_tokens") or 0),
    )


@dataclass
class _ToolSlot:
    id: str = ""
    name: str = ""
    arguments: str = ""
    started: bool = False
    pending: list[str] = field(default_factory=list)


class StreamAssembler:
    """Turn OpenAI stream deltas into normalized chunks.

    Text is block 0 and is started once, on the first non-null text delta.
    Each tool-call slot ``n`` is block ``n + 1``; its start is emitted only
    once both id and name are known, and argument fragments that arrive
    earlier are held and flushed as one delta right after the start.
    """

    def __init__(self) -> None:
        self.text_started = False
        self.slots: dict[int, _ToolSlot] = {}

    def feed(self, event: dict[str, Any]) -> list[StreamChunk]:
        """Translate one decoded SSE event."""
        choices = event.get("choices")
        if not choices or not isinstance(choices[0], dict):
            return []
        delta = choices[0].get("delta")
        if not isinstance(delta, dict):
            return []

        out: list[StreamChunk] = []
        text = delta.get("content")
        if text is not None:
            if not self.text_started:
                self.text_started = True
                out.append(
                    StreamChunk(
                        type="content_block_start", index=0, content_block=TextBlock("")
                    )
                )
            out.append(
                StreamChunk(
                    type="content_block_delta",
                    index=0,
                    delta=StreamDelta(type="text_delta", text=text),
                )
            )

        for call in delta.get("tool_calls") or []:
            if isinstance(call, dict):
                out.extend(self._feed_tool_call(call))
        return out

    def _feed_tool_call(self, call: dict[str, Any]) -> list[StreamChunk]:
        # Some compatible servers send a null or missing index for slot 0.
        raw_index = call.get("index")
        slot_index = raw_index if isinstance(raw_index, int) and raw_index >= 0 else 0
        slot = self.slots.setdefault(slot_index, _ToolSlot())
        block_index = slot_index + _TOOL_INDEX_OFFSET
        function = call.get("function") or {}

        if call.get("id"):
            slot.id = call["id"]
        if function.get("name"):
            slot.name = function["name"]

        out: list[StreamChunk] = []
        if not slot.started and slot.id and slot.name:
            slot.started = True
            out.append(
                StreamChunk(
                    type="content_block_start",
                    index=block_index,
                    content_block=ToolUseBlock(id=slot.id, name=slot.name),
                )
            )
            if slot.pending:
                out.append(_json_delta(block_index, "".join(slot.pending)))
                slot.pending.clear()

        fragment = function.get("arguments")
        if fragment:
            slot.arguments += fragment
            if slot.started:
                out.append(_json_delta(block_index, fragment))
            else:
                slot.pending.append(fragment)
        return out


def _json_delta(index: int, text: str) -> StreamChunk:
    return StreamChunk(
        type="content_block_delta",
        index=index,
        delta=StreamDelta(type="input_json_delta", text=text),
    )


def variant_factory(variant_type: str) -> ProviderFactory:
    """Return a provider factory bound to one OpenAI-compatible variant."""
    variant = VARIANTS[variant_type]

    def factory(name: str, config: ProviderConfig) -> OpenAIProvider:
        return OpenAIProvider(name, config, variant=variant)

    factory.__name__ = f"create_{variant_type}_provider"
    return factory

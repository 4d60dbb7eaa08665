"""Anthropic Messages API provider."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from agent_router.providers._http import DEFAULT_TIMEOUT_MS, HeaderKeyAuth, HttpTransport
from agent_router.providers.models import (
    MESSAGE_STOP,
    CompletionRequest,
    CompletionResponse,
    Message,
    StreamChunk,
    StreamDelta,
    Usage,
    block_from_dict,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    import httpx

    from agent_router.config import ProviderConfig

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.anthropic.com"
API_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096
_HEALTH_CHECK_MODEL = "claude-3-haiku-20240307"
_MESSAGES_PATH = "/v1/messages"

# Stream events with no normalized counterpart.
_IGNORED_STREAM_EVENTS = frozenset(
    {"ping", "message_start", "content_block_stop", "message_delta", "error"}
)


class AnthropicProvider:
    """Anthropic Messages API provider.

    Authenticates with ``x-api-key`` plus the ``anthropic-version`` header.
    Content blocks and tool schemas map 1:1; the system prompt is the
    top-level ``system`` field.
    """

    def __init__(
        self,
        name: str,
        config: ProviderConfig,
        *,
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
        self._http = HttpTransport(
            provider=name,
            provider_type=config.type or "anthropic",
            base_url=config.base_url or DEFAULT_BASE_URL,
            auth=HeaderKeyAuth("x-api-key", {"anthropic-version": API_VERSION}),
            api_key=config.api_key_value,
            extra_headers=config.headers,
            default_timeout_ms=default_timeout_ms,
            client=client,
            transport=transport,
        )

    def build_request_body(self, request: CompletionRequest) -> dict[str, Any]:
        """Translate a normalized request into the Messages API body."""
        body: dict[str, Any] = {
            "model": request.model,
            "messages": [_message_to_wire(m) for m in request.messages],
            "max_tokens": request.max_tokens
            if request.max_tokens is not None
            else DEFAULT_MAX_TOKENS,
        }
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.system:
            body["system"] = request.system
        if request.tools:
            body["tools"] = [t.to_dict() for t in request.tools]
        if request.stream:
            body["stream"] = True
        return body

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Run one non-streaming completion."""
        body = self.build_request_body(request)
        body.pop("stream", None)
        data = await self._http.request_json(
            "POST", _MESSAGES_PATH, body=body, timeout_ms=request.timeout_ms
        )
        return _parse_response(data)

    async def complete_stream(
        self, request: CompletionRequest
    ) -> AsyncIterator[StreamChunk]:
        """Stream normalized chunks, ending with exactly one ``message_stop``."""
        body = self.build_request_body(request)
        body["stream"] = True
        async with self._http.stream_events(
            _MESSAGES_PATH, body=body, timeout_ms=request.timeout_ms
        ) as events:
            async for event in events:
                chunk = _translate_stream_event(event)
                if chunk is None:
                    continue
                yield chunk
                if chunk.type == "message_stop":
                    return
        yield MESSAGE_STOP

    async def health_check(self) -> None:
        """Send a 1-token completion; raises on any failure."""
        await self.complete(
            CompletionRequest(
                model=_HEALTH_CHECK_MODEL,
                messages=(Message(role="user", content="ping"),),
                max_tokens=1,
            )
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._http.aclose()


def _message_to_wire(message: Message) -> dict[str, Any]:
    if isinstance(message.content, str):
        return {"role": message.role, "content": message.content}
    return {"role": message.role, "content": [b.to_dict() for b in message.content]}


def _parse_response(data: Any) -> CompletionResponse:
    """Translate a Messages API response body."""
    if not isinstance(data, dict):
        data = {}
    raw_content = data.get("content")
    content = tuple(
        block_from_dict(b) for b in (raw_content or []) if isinstance(b, dict)
    )
    return CompletionResponse(
        id=str(data.get("id", "")),
        content=content,
        model=str(data.get("model", "")),
        stop_reason=str(data.get("stop_reason") or "end_turn"),
        usage=_parse_usage(data.get("usage")),
    )


def _parse_usage(raw: Any) -> Usage | None:
    if not isinstance(raw, dict):
        return None
    return Usage(
        input_tokens=int(raw.get("input_tokens") or 0),
        output_tokens=int(raw.get("output_tokens") or 0),
        cache_creation_input_tokens=raw.get("cache_creation_input_tokens"),
        cache_read_input_tokens=raw.get("cache_read_input_tokens"),
    )


def _translate_stream_event(event: dict[str, Any]) -> StreamChunk | None:
    """Map one SSE event to a normalized chunk, or None to skip it."""
    event_type = event.get("type")
    if event_type == "content_block_start":
        raw_block = event.get("content_block")
        return StreamChunk(
            type="content_block_start",
            index=event.get("index"),
            content_block=block_from_dict(raw_block if isinstance(raw_block, dict) else {}),
        )
    if event_type == "content_block_delta":
        raw_delta = event.get("delta")
        if not isinstance(raw_delta, dict):
            return None
        delta_type = str(raw_delta.get("type", "text_delta"))
        text = raw_delta.get("text")
        if text is None:
            text = raw_delta.get("partial_json")
        return StreamChunk(
            type="content_block_delta",
            index=event.get("index"),
            delta=StreamDelta(type=delta_type, text=text),
        )
    if event_type == "message_stop":
        return MESSAGE_STOP
    if event_type == "error":
        log.debug("Anthropic stream reported an error event: %s", event.get("error"))
    elif event_type not in _IGNORED_STREAM_EVENTS:
        log.debug("Ignoring unknown Anthropic stream event type %r", event_type)
    return None

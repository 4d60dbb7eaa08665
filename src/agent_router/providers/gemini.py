"""Google Gemini provider (Generative Language API, or Vertex AI)."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any
import uuid

from agent_router.errors import TranslationError
from agent_router.providers._http import DEFAULT_TIMEOUT_MS, HttpTransport, QueryKeyAuth
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
    from collections.abc import AsyncIterator, Sequence

    import httpx

    from agent_router.config import ProviderConfig

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
VERTEX_BASE_URL = (
    "https://{location}-aiplatform.googleapis.com/v1"
    "/projects/{project}/locations/{location}/publishers/google"
)
DEFAULT_LOCATION = "us-central1"
DEFAULT_MAX_TOKENS = 4096
_MODELS_PATH = "/models"
_HEALTH_CHECK_TIMEOUT_MS = 10_000

_FINISH_REASONS = {
    "STOP": "end_turn",
    "MAX_TOKENS": "max_tokens",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
}


def default_base_url(config: ProviderConfig) -> str:
    """The configured base URL, else Vertex AI when a project is set, else the public API."""
    if config.base_url:
        return config.base_url
    if config.project:
        return VERTEX_BASE_URL.format(
            project=config.project, location=config.location or DEFAULT_LOCATION
        )
    return DEFAULT_BASE_URL


class GeminiProvider:
    """Google Gemini provider.

    The API key travels as the ``key`` query parameter. Messages become
    ``contents`` with ``user``/``model`` roles and typed parts; the system
    prompt is the separate ``systemInstruction`` field. Tool calls and
    results are ``functionCall``/``functionResponse`` parts, which Gemini
    matches by function name rather than by call id.
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
        self.name = name
        self.config = config
        self._http = HttpTransport(
            provider=name,
            provider_type=config.type or "google",
            base_url=default_base_url(config),
            auth=QueryKeyAuth("key"),
            api_key=config.api_key_value,
            extra_headers=config.headers,
            default_timeout_ms=default_timeout_ms,
            client=client,
            transport=transport,
        )

    def build_request_body(self, request: CompletionRequest) -> dict[str, Any]:
        """Translate a normalized request into a ``generateContent`` body."""
        generation: dict[str, Any] = {
            "maxOutputTokens": request.max_tokens
            if request.max_tokens is not None
            else DEFAULT_MAX_TOKENS,
        }
        if request.temperature is not None:
            generation["temperature"] = request.temperature

        body: dict[str, Any] = {
            "contents": build_contents(request.messages),
            "generationConfig": generation,
        }
        if request.system:
            body["systemInstruction"] = {"parts": [{"text": request.system}]}
        if request.tools:
            body["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": t.name,
                            "description": t.description,
                            "parameters": t.input_schema,
                        }
                        for t in request.tools
                    ]
                }
            ]
        return body

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Run one non-streaming completion."""
        data = await self._http.request_json(
            "POST",
            _model_path(request.model, "generateContent"),
            body=self.build_request_body(request),
            timeout_ms=request.timeout_ms,
        )
        return _parse_response(data, request.model)

    async def complete_stream(
        self, request: CompletionRequest
    ) -> AsyncIterator[StreamChunk]:
        """Stream normalized chunks from ``streamGenerateContent?alt=sse``."""
        translator = StreamTranslator()
        async with self._http.stream_events(
            _model_path(request.model, "streamGenerateContent"),
            body=self.build_request_body(request),
            params={"alt": "sse"},
            timeout_ms=request.timeout_ms,
        ) as events:
            async for event in events:
                for chunk in translator.feed(event):
                    yield chunk
        yield MESSAGE_STOP

    async def health_check(self) -> None:
        """List models; raises on any failure."""
        await self._http.request_json(
            "GET", _MODELS_PATH, timeout_ms=_HEALTH_CHECK_TIMEOUT_MS
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._http.aclose()


def _model_path(model: str, action: str) -> str:
    return f"/models/{model.removeprefix('models/')}:{action}"


def build_contents(messages: Sequence[Message]) -> list[dict[str, Any]]:
    """Translate messages into Gemini ``contents``.

    A ``functionResponse`` must name the function it answers, so tool
    results are resolved to the name of the earlier ``tool_use`` block with
    the same id; an unknown id is sent as the name unchanged. Messages left
    with no parts are dropped.
    """
    call_names: dict[str, str] = {}
    contents: list[dict[str, Any]] = []
    for message in messages:
        parts: list[dict[str, Any]] = []
        for block in message.blocks():
            if isinstance(block, TextBlock):
                if block.text:
                    parts.append({"text": block.text})
            elif isinstance(block, ToolUseBlock):
                if block.name:
                    if block.id:
                        call_names[block.id] = block.name
                    parts.append(
                        {"functionCall": {"name": block.name, "args": dict(block.input)}}
                    )
            elif isinstance(block, ToolResultBlock) and block.tool_use_id:
                parts.append(
                    {
                        "functionResponse": {
                            "name": call_names.get(block.tool_use_id, block.tool_use_id),
                            "response": {"content": block.content},
                        }
                    }
                )
        if parts:
            role = "model" if message.role == "assistant" else "user"
            contents.append({"role": role, "parts": parts})
    return contents


def map_finish_reason(finish_reason: str | None) -> str:
    """Map a Gemini finish reason to the normalized stop reason."""
    return _FINISH_REASONS.get(finish_reason or "", "end_turn")


def _first_candidate_parts(data: Any) -> tuple[dict[str, Any] | None, list[Any]]:
    candidates = data.get("candidates") if isinstance(data, dict) else None
    if not candidates or not isinstance(candidates[0], dict):
        return None, []
    candidate = candidates[0]
    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    return candidate, parts if isinstance(parts, list) else []


def _parse_response(data: Any, model: str) -> CompletionResponse:
    """Translate a ``generateContent`` response body (first candidate only)."""
    candidate, parts = _first_candidate_parts(data)
    if candidate is None:
        raise TranslationError(
            "No candidates in Gemini response",
            source_format="gemini",
            target_format="anthropic",
        )

    content: list[ContentBlock] = []
    for part in parts:
        if not isinstance(part, dict) or part.get("thought"):
            continue
        text = part.get("text")
        if isinstance(text, str) and text:
            content.append(TextBlock(text))
        call = part.get("functionCall")
        if isinstance(call, dict):
            content.append(
                ToolUseBlock(
                    id=_call_id(call),
                    name=str(call.get("name", "")),
                    input=_parse_args(call.get("args")),
                )
            )

    if any(isinstance(b, ToolUseBlock) for b in content):
        stop_reason = "tool_use"
    else:
        stop_reason = map_finish_reason(candidate.get("finishReason"))
    if not content:
        log.debug(
            "Gemini candidate has no content (finishReason=%s)",
            candidate.get("finishReason"),
        )
    return CompletionResponse(
        id=str(data.get("responseId") or f"gemini-{uuid.uuid4().hex[:12]}"),
        content=tuple(content),
        model=str(data.get("modelVersion") or model),
        stop_reason=stop_reason,
        usage=_parse_usage(data.get("usageMetadata")),
    )


def _call_id(call: dict[str, Any]) -> str:
    # Gemini ids are optional; the normalized format needs one per call.
    return str(call.get("id") or f"call_{uuid.uuid4().hex[:8]}")


def _parse_args(raw: Any) -> dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise TranslationError(
            "Function call args must be a JSON object",
            source_format="gemini",
            target_format="anthropic",
        )
    return raw


def _parse_usage(raw: Any) -> Usage | None:
    if not isinstance(raw, dict):
        return None
    return Usage(
        input_tokens=int(raw.get("promptTokenCount") or 0),
        output_tokens=int(raw.get("candidatesTokenCount") or 0),
        cache_read_input_tokens=raw.get("cachedContentTokenCount"),
    )


class StreamTranslator:
    """Turn Gemini stream events into normalized chunks.

    Text is block 0, started once on the first text part. Gemini sends each
    function call whole, so every call becomes its own block (the n-th call
    is block n) with a start followed by one ``input_json_delta`` carrying
    the complete arguments.
    """

    def __init__(self) -> None:
        self.text_started = False
        self.tool_calls = 0

    def feed(self, event: dict[str, Any]) -> list[StreamChunk]:
        """Translate one decoded SSE event."""
        _, parts = _first_candidate_parts(event)
        out: list[StreamChunk] = []
        for part in parts:
            if not isinstance(part, dict) or part.get("thought"):
                continue
            text = part.get("text")
            if isinstance(text, str):
                if not self.text_started:
                    self.text_started = True
                    out.append(
                        StreamChunk(
                            type="content_block_start",
                            index=0,
                            content_block=TextBlock(""),
                        )
                    )
                out.append(
                    StreamChunk(
                        type="content_block_delta",
                        index=0,
                        delta=StreamDelta(type="text_delta", text=text),
                    )
                )
            call = part.get("functionCall")
            if isinstance(call, dict):
                out.extend(self._feed_call(call))
        return out

    def _feed_call(self, call: dict[str, Any]) -> list[StreamChunk]:
        self.tool_calls += 1
        index = self.tool_calls
        return [
            StreamChunk(
                type="content_block_start",
                index=index,
                content_block=ToolUseBlock(
                    id=_call_id(call), name=str(call.get("name", ""))
                ),
            ),
            StreamChunk(
                type="content_block_delta",
                index=index,
                delta=StreamDelta(
                    type="input_json_delta",
                    text=json.dumps(_parse_args(call.get("args"))),
                ),
            ),
        ]

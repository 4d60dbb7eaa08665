"""Server-sent events framing shared by the streaming adapters.

Both reference wire formats frame one JSON object per ``data:`` line. Reads
from the transport may split a line (or a multi-byte UTF-8 sequence)
anywhere, so partial input is buffered until its newline arrives.
"""

from __future__ import annotations

import codecs
from contextlib import aclosing
import json
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator

log = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
_DATA_PREFIX = "data:"


async def iter_sse_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield complete, stripped lines from a byte stream."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for chunk in chunks:
        buffer += decoder.decode(chunk)
        *lines, buffer = buffer.split("\n")
        for line in lines:
            yield line.strip()
    buffer += decoder.decode(b"", final=True)
    if buffer.strip():
        yield buffer.strip()


async def iter_sse_events(
    chunks: AsyncIterable[bytes], *, provider: str = "unknown"
) -> AsyncIterator[dict[str, Any]]:
    """Yield decoded JSON payloads of ``data:`` lines until ``[DONE]``.

    Comment lines (``:``), ``event:``/``id:`` fields and blank separators are
    skipped. Malformed JSON payloads are dropped with a debug log entry.
    """
    async with aclosing(iter_sse_lines(chunks)) as lines:
        async for line in lines:
            if not line or line.startswith(":"):
                continue
            if not line.startswith(_DATA_PREFIX):
                continue
            data = line[len(_DATA_PREFIX) :].strip()
            if data == DONE_SENTINEL:
                return
            try:
                event = json.loads(data)
            except json.JSONDecodeError:
                log.debug(
                    "Dropping malformed SSE payload from %s: %.200s",
                    provider,
                    data,
                    extra={"provider": provider},
                )
                continue
            if isinstance(event, dict):
                yield event
            else:
                log.debug("Dropping non-object SSE payload from %s", provider)

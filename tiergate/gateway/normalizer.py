"""Stream Normalizer: one lazy text-chunk contract for every backend.

Whatever an adapter produces (SSE ``data:`` frames, named SSE events, or a
buffered reply cut into pieces), callers consume a single async iterator of
``str`` chunks:

  - chunks arrive in generation order, empty chunks are dropped
  - the sequence is finite and cannot be restarted
  - it is pull-based: nothing is read upstream until the caller asks
  - errors raised after the first chunk are tagged ``after_first_chunk``
  - the upstream source is always closed, including on caller cancellation
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from tiergate.core.exceptions import UpstreamError, UpstreamProtocolError
from tiergate.gateway.types import ChatResult

logger = logging.getLogger(__name__)

SSE_DONE = "[DONE]"


async def normalize_stream(source: AsyncIterator[str], backend: str = "") -> AsyncIterator[str]:
    """Forward decoded text from ``source`` under the uniform stream contract."""
    emitted = 0
    try:
        async for chunk in source:
            if not chunk:
                continue
            emitted += 1
            yield chunk
    except UpstreamError as exc:
        if emitted:
            exc.after_first_chunk = True
            logger.warning("Stream from %s failed after %d chunks: %s", backend or "upstream", emitted, exc)
        raise
    except (ValueError, KeyError, TypeError, IndexError, AttributeError) as exc:
        error = UpstreamProtocolError(f"Undecodable stream frame: {exc}", backend=backend)
        error.after_first_chunk = emitted > 0
        raise error from exc
    finally:
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the payload of each SSE ``data:`` line until ``[DONE]``.

    Blank lines, comments (``:``) and other fields (``event:``, ``id:``) are
    skipped.
    """
    async for line in lines:
        line = line.strip()
        if not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if data == SSE_DONE:
            return
        if data:
            yield data


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[tuple[str, str]]:
    """Yield ``(event, data)`` pairs for SSE streams that name their events."""
    event = ""
    data_lines: list[str] = []
    async for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if data_lines:
                yield event, "\n".join(data_lines)
            event, data_lines = "", []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("event:"):
            event = line[6:].strip()
        elif line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    if data_lines:
        yield event, "\n".join(data_lines)


async def emulate_stream(text: str, chunk_size: int = 64) -> AsyncIterator[str]:
    """Cut an already-buffered reply into chunks for backends without streaming."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    for start in range(0, len(text), chunk_size):
        yield text[start : start + chunk_size]


async def encode_stream(chunks: AsyncIterator[str], encoding: str = "utf-8") -> AsyncIterator[bytes]:
    """Byte view of a text stream (what HTTP responses write)."""
    try:
        async for chunk in chunks:
            yield chunk.encode(encoding)
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()


def normalize_result(result: ChatResult) -> ChatResult:
    """Post-process a non-streaming result.

    Idempotent. Zero token counts are treated as "not reported".
    """
    if result.content is None:
        result.content = ""
    if not result.tokens_used:
        result.tokens_used = None
    return result

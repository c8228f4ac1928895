"""Server-Sent Events encoding for forwarded stream chunks."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator

from tributary.streaming import DeltaChunk

logger = logging.getLogger(__name__)

DONE_EVENT = "data: [DONE]\n\n"


async def sse_generator(
    chunks: AsyncIterable[DeltaChunk],
) -> AsyncIterator[str]:
    """Convert a chunk stream into OpenAI-style SSE lines.

    A stream that fails mid-way ends with an ``error`` event, followed by
    the usual ``[DONE]`` terminator.
    """
    try:
        async for chunk in chunks:
            yield f"data: {chunk.model_dump_json(exclude_none=True)}\n\n"
    except Exception as e:
        logger.error(f"Stream failed while encoding SSE: {e!r}")
        yield f"data: {json.dumps({'error': {'message': str(e)}})}\n\n"
    yield DONE_EVENT

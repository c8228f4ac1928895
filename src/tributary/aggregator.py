"""Aggregation of a live provider stream into one chat completion.

:class:`StreamAggregator` sits between a provider's :class:`StreamHandle`
and the caller. Every chunk it pulls is first folded into per-choice
state and then handed to whoever asked for it, either the live consumer
(``async for chunk in aggregator``) or a drain started by
:meth:`StreamAggregator.final_chat_completion`. Pulls are serialized, so
each chunk is folded exactly once no matter who is reading.

States::

    INIT -> STREAMING -> COMPLETED
                      -> CANCELLED
                      -> ERRORED
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator
from enum import Enum
from typing import Any

from tributary import instrumentation
from tributary.completion import ChatCompletion, Usage
from tributary.errors import NoResultProduced
from tributary.message import GenerationRequest
from tributary.provider import StreamHandle
from tributary.streaming import ChoiceArena, DeltaChunk
from tributary.tokens import TokenEstimator

logger = logging.getLogger(__name__)

UNKNOWN_MODEL = "unknown"


class StreamState(Enum):
    INIT = "init"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"


class StreamAggregator:
    """One streaming generation session.

    Iterate it to receive chunks live; call :meth:`final_chat_completion`
    for the complete result; call :meth:`cancel` to stop the transport.
    The three can be mixed freely. A session is meant for one caller and
    holds no state shared with other sessions.

    Args:
        handle: The provider's stream handle.
        request: The request that produced the stream. Used for the
            result's model name and for fallback token estimation.
        estimator: Fallback usage estimator, used only when no chunk
            carries usage.
        span: Optional tracing span, ended when the session ends.
    """

    def __init__(
        self,
        handle: StreamHandle,
        request: GenerationRequest,
        estimator: TokenEstimator | None = None,
        span: Any = None,
    ):
        self.request = request
        self.estimator = estimator or TokenEstimator()
        self._handle = handle
        self._span = span
        self._source: AsyncIterator[Any] | None = None
        self._arena = ChoiceArena()
        self._usage: Usage | None = None
        self._final: ChatCompletion | None = None
        self._error: Exception | None = None
        self._state = StreamState.INIT
        self._chunk_count = 0
        self._exhausted = False
        self._live = False
        self._pull_lock = asyncio.Lock()
        self._drain_task: asyncio.Future | None = None

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def chunk_count(self) -> int:
        return self._chunk_count

    @property
    def error(self) -> Exception | None:
        """The transport error that ended the stream, if any."""
        return self._error

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def __aiter__(self) -> AsyncIterator[DeltaChunk]:
        if self._live:
            raise RuntimeError("A stream can only be iterated live once")
        self._live = True
        return self._forward()

    async def final_chat_completion(self) -> ChatCompletion:
        """Return the aggregated result, draining the stream if needed.

        Idempotent: every call returns the same object. Concurrent callers
        share a single drain. After :meth:`cancel` or a transport error the
        result holds whatever arrived before.

        Raises:
            NoResultProduced: The stream failed before any chunk arrived.
        """
        if self._final is not None:
            return self._final
        if self._drain_task is None:
            self._drain_task = asyncio.ensure_future(self._drain())
        await asyncio.shield(self._drain_task)
        if self._final is None:
            raise NoResultProduced(
                "Stream ended before producing a result"
            ) from self._error
        return self._final

    def cancel(self) -> None:
        """Abort the transport. Chunks still in flight are dropped."""
        if self._exhausted or self._state is StreamState.CANCELLED:
            return
        logger.info(
            f"Cancelling stream for model {self.request.model} "
            f"after {self._chunk_count} chunks"
        )
        self._state = StreamState.CANCELLED
        self._handle.cancel()

    async def aclose(self) -> None:
        """Cancel the session if it is still running and settle it."""
        if self._exhausted:
            return
        self.cancel()
        async with self._pull_lock:
            if not self._exhausted:
                await self._finish()

    async def __aenter__(self) -> StreamAggregator:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Pulling and folding
    # ------------------------------------------------------------------

    async def _forward(self) -> AsyncIterator[DeltaChunk]:
        while True:
            chunk = await self._pull()
            if chunk is None:
                return
            yield chunk

    async def _drain(self) -> None:
        while True:
            try:
                chunk = await self._pull()
            except Exception:
                # Already recorded by _fail(); the result is best-effort.
                return
            if chunk is None:
                return

    async def _pull(self) -> DeltaChunk | None:
        """Fold and return the next chunk, or ``None`` once the stream is over."""
        async with self._pull_lock:
            if self._exhausted:
                return None
            if self._state is StreamState.CANCELLED:
                await self._finish()
                return None
            if self._source is None:
                self._source = aiter(self._handle)
                self._state = StreamState.STREAMING

            try:
                raw = await anext(self._source)
                chunk = None if self._state is StreamState.CANCELLED else (
                    DeltaChunk.from_raw(raw)
                )
            except StopAsyncIteration:
                await self._finish()
                return None
            except Exception as e:
                if self._state is StreamState.CANCELLED:
                    await self._finish()
                    return None
                self._fail(e)
                raise

            if chunk is None:
                await self._finish()
                return None
            self._fold(chunk)
            return chunk

    def _fold(self, chunk: DeltaChunk) -> None:
        self._chunk_count += 1
        self._arena.feed(chunk)
        if chunk.usage is not None:
            self._usage = chunk.usage
        for choice in chunk.choices:
            if choice.finish_reason:
                logger.debug(
                    f"Choice {choice.index} finished ({choice.finish_reason}) "
                    f"after {self._chunk_count} chunks"
                )

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def _finish(self) -> None:
        self._exhausted = True
        if self._state is StreamState.CANCELLED:
            if self._source is not None and hasattr(self._source, "aclose"):
                await self._source.aclose()
            await self._handle.aclose()
            logger.warning(
                f"Stream cancelled after {self._chunk_count} chunks; "
                f"result is partial"
            )
        else:
            self._state = StreamState.COMPLETED
        self._freeze()

    def _fail(self, error: Exception) -> None:
        self._exhausted = True
        self._state = StreamState.ERRORED
        self._error = error
        instrumentation.record_error(self._span, error)
        if self._chunk_count == 0:
            logger.error(f"Stream failed before any chunk arrived: {error!r}")
            instrumentation.end_span(self._span)
            return
        logger.warning(
            f"Stream failed after {self._chunk_count} chunks: {error!r}; "
            f"keeping a partial result"
        )
        self._freeze()

    def _freeze(self) -> None:
        if self._final is not None:
            return

        usage = self._usage
        if usage is None:
            logger.debug("No usage reported by provider, estimating")
            usage = self.estimator.estimate(self.request, self._arena)

        dropped = sum(
            len(c.tool_calls) - len(c.completed_tool_calls())
            for c in self._arena
        )
        if dropped:
            logger.debug(f"Dropped {dropped} incomplete tool call(s)")

        self._final = ChatCompletion(
            id=f"chatcmpl-{uuid.uuid4().hex}",
            created=int(time.time()),
            model=self.request.model or UNKNOWN_MODEL,
            choices=[choice.freeze() for choice in self._arena],
            usage=usage,
        )
        logger.info(
            f"Stream {self._state.value}: model={self._final.model}, "
            f"chunks={self._chunk_count}, tokens={usage.total_tokens}"
        )
        instrumentation.record_usage(self._span, usage, self._final.model)
        instrumentation.end_span(self._span)

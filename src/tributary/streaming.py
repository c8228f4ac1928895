"""Streaming primitives for provider responses.

Providers yield raw chunks in the OpenAI ``chat.completion.chunk`` shape
(dicts or SDK objects); :meth:`DeltaChunk.from_raw` normalises them.
:class:`ChoiceArena` folds normalised chunks into one
:class:`AggregatedChoice` per choice index, and each choice reassembles
tool calls whose arguments arrive in fragments with a
:class:`ToolCallAccumulator` per tool-call index.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator

from tributary.completion import (
    ChatCompletionChoice,
    ChatCompletionMessage,
    FunctionCall,
    ToolCall,
    Usage,
)

logger = logging.getLogger(__name__)

# Highest choice or tool-call index accepted from a stream. Slots are padded
# up to the index, so a corrupt index must not allocate unbounded memory.
MAX_STREAM_INDEX = 1024


def _index_or_zero(value: Any) -> Any:
    return 0 if value is None else value


# Some backends send `"index": null` on single-choice streams.
StreamIndex = Annotated[int, BeforeValidator(_index_or_zero), Field(ge=0)]


class FunctionDelta(BaseModel):
    name: str | None = None
    arguments: str | None = None


class ToolCallFragment(BaseModel):
    """A fragment of a tool call from a streaming chunk."""

    model_config = ConfigDict(extra="allow")

    index: StreamIndex = 0
    id: str | None = None
    type: str | None = None
    function: FunctionDelta | None = None


class ChoiceDelta(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str | None = None
    content: str | None = None
    reasoning_content: str | None = None
    tool_calls: list[ToolCallFragment] | None = None


class ChunkChoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: StreamIndex = 0
    delta: ChoiceDelta = Field(default_factory=ChoiceDelta)
    finish_reason: str | None = None

    @field_validator("delta", mode="before")
    @classmethod
    def _empty_delta(cls, value: Any) -> Any:
        return ChoiceDelta() if value is None else value


class DeltaChunk(BaseModel):
    """Normalised streaming chunk from any provider.

    Unknown top-level fields (``object``, ``created``, ``model``,
    ``system_fingerprint``...) are kept so the chunk can be forwarded
    downstream unchanged.
    """

    model_config = ConfigDict(extra="allow")

    id: str = ""
    choices: list[ChunkChoice] = Field(default_factory=list)
    usage: Usage | None = None

    @field_validator("choices", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @classmethod
    def from_raw(cls, raw: Any) -> DeltaChunk:
        """Build a chunk from a dict, an SDK model, or an attribute object."""
        if isinstance(raw, DeltaChunk):
            return raw
        if isinstance(raw, dict):
            return cls.model_validate(raw)
        if hasattr(raw, "model_dump"):
            return cls.model_validate(raw.model_dump())
        return cls.model_validate(raw, from_attributes=True)


@dataclass
class ToolCallAccumulator:
    """Assembles one tool call from streaming fragments.

    ``id`` and ``type`` are kept from the first fragment that carries them,
    ``name`` is replaced whenever a fragment carries one, and ``arguments``
    only ever grows.
    """

    id: str = ""
    type: str = ""
    name: str = ""
    arguments: str = ""

    def feed(self, fragment: ToolCallFragment) -> None:
        if fragment.id and not self.id:
            self.id = fragment.id
        if fragment.type and not self.type:
            self.type = fragment.type
        if fragment.function is not None:
            if fragment.function.name:
                self.name = fragment.function.name
            if fragment.function.arguments:
                self.arguments += fragment.function.arguments

    @property
    def complete(self) -> bool:
        return bool(self.id and self.name)

    def to_tool_call(self) -> ToolCall:
        return ToolCall(
            id=self.id,
            type=self.type or "function",
            function=FunctionCall(name=self.name, arguments=self.arguments),
        )


@dataclass
class AggregatedChoice:
    """Everything received so far for one choice index."""

    index: int
    role: str = ""
    content: str = ""
    reasoning_content: str = ""
    finish_reason: str | None = None
    tool_calls: list[ToolCallAccumulator] = field(default_factory=list)

    def feed(self, choice: ChunkChoice) -> None:
        delta = choice.delta
        if delta.role:
            self.role = delta.role
        if delta.content:
            self.content += delta.content
        if delta.reasoning_content:
            self.reasoning_content += delta.reasoning_content
        for fragment in delta.tool_calls or []:
            if fragment.index > MAX_STREAM_INDEX:
                logger.warning(
                    f"Ignoring tool call fragment with index {fragment.index} "
                    f"on choice {self.index}"
                )
                continue
            self.tool_call(fragment.index).feed(fragment)
        if choice.finish_reason:
            self.finish_reason = choice.finish_reason

    def tool_call(self, index: int) -> ToolCallAccumulator:
        """Return the accumulator at *index*, padding any gap before it."""
        if index > MAX_STREAM_INDEX:
            raise IndexError(f"tool call index {index} out of range")
        while len(self.tool_calls) <= index:
            self.tool_calls.append(ToolCallAccumulator())
        return self.tool_calls[index]

    def completed_tool_calls(self) -> list[ToolCallAccumulator]:
        """Accumulators with both an id and a name, in index order."""
        return [tc for tc in self.tool_calls if tc.complete]

    def freeze(self) -> ChatCompletionChoice:
        return ChatCompletionChoice(
            index=self.index,
            message=ChatCompletionMessage(
                role=self.role or "assistant",
                content=self.content,
                reasoning_content=self.reasoning_content,
                tool_calls=[
                    tc.to_tool_call() for tc in self.completed_tool_calls()
                ],
            ),
            finish_reason=self.finish_reason,
        )


class ChoiceArena:
    """Aggregated choices addressed by choice index.

    Slots are created lazily; indices skipped by the stream stay empty
    and are not reported.
    """

    def __init__(self) -> None:
        self._slots: list[AggregatedChoice | None] = []

    def get(self, index: int) -> AggregatedChoice:
        if index > MAX_STREAM_INDEX:
            raise IndexError(f"choice index {index} out of range")
        while len(self._slots) <= index:
            self._slots.append(None)
        slot = self._slots[index]
        if slot is None:
            slot = AggregatedChoice(index=index)
            self._slots[index] = slot
        return slot

    def feed(self, chunk: DeltaChunk) -> None:
        for choice in chunk.choices:
            if choice.index > MAX_STREAM_INDEX:
                logger.warning(f"Ignoring choice with index {choice.index}")
                continue
            self.get(choice.index).feed(choice)

    def __iter__(self):
        return (slot for slot in self._slots if slot is not None)

    def __len__(self) -> int:
        return sum(1 for _ in self)

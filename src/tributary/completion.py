"""Result-side types: a fully materialized chat completion."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_FROZEN = ConfigDict(frozen=True, from_attributes=True)


class Usage(BaseModel):
    """Token accounting for one generation request."""

    model_config = _FROZEN

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @model_validator(mode="before")
    @classmethod
    def _fill_total(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("total_tokens") is None:
            data = dict(data)
            data["total_tokens"] = (
                (data.get("prompt_tokens") or 0)
                + (data.get("completion_tokens") or 0)
            )
        return data


class FunctionCall(BaseModel):
    model_config = _FROZEN

    name: str
    arguments: str = ""


class ToolCall(BaseModel):
    model_config = _FROZEN

    id: str
    type: str = "function"
    function: FunctionCall


class ChatCompletionMessage(BaseModel):
    model_config = _FROZEN

    role: str = "assistant"
    content: str | None = None
    reasoning_content: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)

    @field_validator("tool_calls", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class ChatCompletionChoice(BaseModel):
    model_config = _FROZEN

    index: int = 0
    message: ChatCompletionMessage
    finish_reason: str | None = None


class ChatCompletion(BaseModel):
    """A complete, non-streaming chat completion.

    Returned as-is by one-shot generation, and frozen by the stream
    aggregator once a streaming session ends.
    """

    model_config = _FROZEN

    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    choices: list[ChatCompletionChoice] = Field(default_factory=list)
    usage: Usage | None = None

"""Request-side types: messages, tool definitions and generation requests."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class MessageRole(Enum):
    DEVELOPER = "developer"
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class ContentPart(BaseModel):
    """One part of a multi-part message.

    ``text`` and ``image_url`` parts are passed through untouched.
    ``file_url`` parts carry ``url`` and ``name`` and are turned into text
    before dispatch; ``input_audio`` parts carry ``{data, format}``.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    type: str
    text: str | None = None
    image_url: dict[str, Any] | None = None
    url: str | None = None
    name: str | None = None
    input_audio: dict[str, Any] | None = None


class Message(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    role: MessageRole
    content: str | list[ContentPart] | None = None
    name: str | None = None
    tool_calls: list[dict[str, Any]] | None = None
    tool_call_id: str | None = None

    @field_serializer("role")
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    def text(self) -> str:
        """Content flattened to plain text; non-text parts are dropped."""
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if p.text)


class FunctionDefinition(BaseModel):
    name: str
    description: str | None = None
    parameters: dict[str, Any] | None = None
    strict: bool | None = None


class ToolDefinition(BaseModel):
    type: str = "function"
    function: FunctionDefinition


class GenerationRequest(BaseModel):
    """A chat generation request.

    Immutable once built. OpenAI parameters not modelled here
    (``temperature``, ``max_tokens``, ...) are kept as extra fields and
    forwarded to the provider as-is.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    model: str | None = None
    messages: list[Message] = Field(default_factory=list)
    tools: list[ToolDefinition] | None = None
    stream: bool = False
    user: str | None = None

    def with_messages(self, messages: list[Message]) -> "GenerationRequest":
        return self.model_copy(update={"messages": messages})

    def to_params(self) -> dict[str, Any]:
        """Keyword arguments for an OpenAI-style ``create`` call."""
        return self.model_dump(mode="json", exclude_none=True)


class EmbeddingParams(BaseModel):
    model_config = ConfigDict(extra="allow")

    input: str | list[str]
    model: str | None = None
    dimensions: int | None = None


class RerankParams(BaseModel):
    query: str
    documents: list[str]
    model: str | None = None
    top_n: int | None = None


class RerankResult(BaseModel):
    results: list[dict[str, Any]] = Field(default_factory=list)
    model: str

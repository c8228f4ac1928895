import asyncio

import pytest

from tributary.completion import ChatCompletion, ChatCompletionChoice, ChatCompletionMessage, Usage
from tributary.message import GenerationRequest
from tributary.provider import ModelProvider, StreamHandle
from tributary.tokens import TokenEstimator


# ---------------------------------------------------------------------------
# Raw chunk builders (mirror the OpenAI chat.completion.chunk wire shape)
# ---------------------------------------------------------------------------

def content_chunk(
    content: str | None = None,
    index: int = 0,
    finish_reason: str | None = None,
    role: str | None = None,
    reasoning_content: str | None = None,
) -> dict:
    """Raw chunk with one choice carrying text deltas."""
    delta = {}
    if role is not None:
        delta["role"] = role
    if content is not None:
        delta["content"] = content
    if reasoning_content is not None:
        delta["reasoning_content"] = reasoning_content
    return {
        "id": "chunk",
        "object": "chat.completion.chunk",
        "choices": [{
            "index": index,
            "delta": delta,
            "finish_reason": finish_reason,
        }],
    }


def tool_call_chunk(
    tool_index: int,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
    call_type: str | None = None,
    index: int = 0,
) -> dict:
    """Raw chunk with a single tool-call fragment."""
    fragment: dict = {"index": tool_index}
    if call_id is not None:
        fragment["id"] = call_id
    if call_type is not None:
        fragment["type"] = call_type
    function = {}
    if name is not None:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    if function:
        fragment["function"] = function
    return {
        "id": "chunk",
        "choices": [{
            "index": index,
            "delta": {"tool_calls": [fragment]},
            "finish_reason": None,
        }],
    }


def usage_chunk(prompt_tokens: int, completion_tokens: int) -> dict:
    """Trailing usage-only chunk, as sent with include_usage."""
    return {
        "id": "chunk",
        "choices": [],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def make_request(content: str = "Say hello", stream: bool = True, **kwargs):
    return GenerationRequest(
        model=kwargs.pop("model", "mock-model"),
        messages=[{"role": "user", "content": content}],
        stream=stream,
        **kwargs,
    )


def make_completion(content: str = "hi") -> ChatCompletion:
    return ChatCompletion(
        id="chatcmpl-1",
        created=0,
        model="mock-model",
        choices=[ChatCompletionChoice(
            message=ChatCompletionMessage(content=content),
            finish_reason="stop",
        )],
        usage=Usage(prompt_tokens=3, completion_tokens=1, total_tokens=4),
    )


# ---------------------------------------------------------------------------
# Fake tokenizer
# ---------------------------------------------------------------------------

class WhitespaceTokenizer:
    """One token per whitespace-separated word. No downloads."""

    def encode(self, text: str) -> list[int]:
        return list(range(len(text.split())))


class RecordingTokenizerFactory:
    """Counts how often a tokenizer is acquired."""

    def __init__(self, tokenizer=None):
        self.tokenizer = tokenizer or WhitespaceTokenizer()
        self.calls: list[str] = []

    def __call__(self, model: str):
        self.calls.append(model)
        return self.tokenizer


# ---------------------------------------------------------------------------
# Mock provider
# ---------------------------------------------------------------------------

class MockProvider(ModelProvider):
    """Provider that replays pre-queued chunks. No network calls.

    ``error`` is raised by the stream once all chunks have been yielded.
    """

    name = "mock"

    def __init__(self, chunks=None, error: Exception | None = None):
        self.chunks: list = list(chunks or [])
        self.error = error
        self.responses: list[ChatCompletion] = []
        self.call_log: list[GenerationRequest] = []
        self.handles: list[StreamHandle] = []
        self.cancel_count = 0
        self.yielded = 0

    async def generate_text(self, request):
        self.call_log.append(request)
        return self.responses.pop(0)

    async def stream_text(self, request):
        self.call_log.append(request)
        handle = StreamHandle(self._produce(), on_cancel=self._on_cancel)
        self.handles.append(handle)
        return handle

    async def _produce(self):
        for chunk in self.chunks:
            await asyncio.sleep(0)
            self.yielded += 1
            yield chunk
        if self.error is not None:
            raise self.error

    def _on_cancel(self):
        self.cancel_count += 1


class TextOnlyProvider(ModelProvider):
    """Provider that implements one-shot generation and nothing else."""

    name = "text-only"

    async def generate_text(self, request):
        return make_completion()


@pytest.fixture
def tokenizer_factory():
    return RecordingTokenizerFactory()


@pytest.fixture
def estimator(tokenizer_factory):
    return TokenEstimator(tokenizer_factory=tokenizer_factory)


@pytest.fixture
def mock_provider():
    return MockProvider()

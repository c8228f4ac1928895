"""Provider-agnostic streaming text generation."""

from tributary.aggregator import StreamAggregator, StreamState
from tributary.completion import ChatCompletion, Usage
from tributary.errors import (
    CapabilityUnsupported,
    NoResultProduced,
    ProviderConfigurationError,
    ProviderError,
    TributaryError,
)
from tributary.generator import TextGenerator
from tributary.instrumentation import instrument, uninstrument
from tributary.message import GenerationRequest, Message, MessageRole
from tributary.provider import (
    Capabilities,
    ModelProvider,
    OpenAICompatibleProvider,
    OpenAIProvider,
    StreamHandle,
)
from tributary.streaming import DeltaChunk
from tributary.tokens import TokenEstimator

__all__ = [
    "Capabilities",
    "CapabilityUnsupported",
    "ChatCompletion",
    "DeltaChunk",
    "GenerationRequest",
    "Message",
    "MessageRole",
    "ModelProvider",
    "NoResultProduced",
    "OpenAICompatibleProvider",
    "OpenAIProvider",
    "ProviderConfigurationError",
    "ProviderError",
    "StreamAggregator",
    "StreamHandle",
    "StreamState",
    "TextGenerator",
    "TokenEstimator",
    "TributaryError",
    "Usage",
    "instrument",
    "uninstrument",
]

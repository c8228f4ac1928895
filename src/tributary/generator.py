"""The generation entry point.

:class:`TextGenerator` wraps one provider. It checks the provider's
capabilities before every call, preprocesses attachments, and wraps
streaming calls in a :class:`~tributary.aggregator.StreamAggregator`.
"""

from __future__ import annotations

import logging
from typing import Any

from tributary import instrumentation
from tributary.aggregator import StreamAggregator
from tributary.attachments import AttachmentPreprocessor
from tributary.completion import ChatCompletion
from tributary.message import EmbeddingParams, GenerationRequest, RerankParams, RerankResult
from tributary.provider import ModelProvider
from tributary.tokens import TokenEstimator

logger = logging.getLogger(__name__)


class TextGenerator:
    """Text generation against a single provider.

    The provider's validator, if it has one, runs once here so that
    missing credentials fail at construction rather than on first use.

    Example::

        generator = TextGenerator(OpenAIProvider())
        stream = await generator.stream(request)
        async for chunk in stream:
            print(chunk.choices[0].delta.content or "", end="")
        completion = await stream.final_chat_completion()

    Args:
        provider: The backend to dispatch to.
        estimator: Fallback usage estimator handed to every stream.
        preprocessor: Attachment preprocessing applied to every request.
    """

    def __init__(
        self,
        provider: ModelProvider,
        estimator: TokenEstimator | None = None,
        preprocessor: AttachmentPreprocessor | None = None,
    ):
        self.provider = provider
        self.capabilities = provider.capabilities
        self.estimator = estimator or TokenEstimator()
        self.preprocessor = preprocessor or AttachmentPreprocessor()
        self.validate()

    def validate(self) -> None:
        if self.capabilities.validator:
            self.provider.validator()

    def _require(self, capability: str) -> None:
        self.capabilities.require(capability, self.provider.name)

    @staticmethod
    def _coerce(request: GenerationRequest | dict) -> GenerationRequest:
        if isinstance(request, GenerationRequest):
            return request
        return GenerationRequest.model_validate(request)

    async def generate(
        self, request: GenerationRequest | dict,
    ) -> ChatCompletion | StreamAggregator:
        """Stream or not, depending on ``request.stream``."""
        request = self._coerce(request)
        if request.stream:
            return await self.stream(request)
        return await self.create(request)

    async def create(self, request: GenerationRequest | dict) -> ChatCompletion:
        """One-shot generation."""
        self._require("generate_text")
        request = await self.preprocessor.process(self._coerce(request))
        async with instrumentation.generation_span(
            self.provider.name, request.model,
        ) as span:
            try:
                result = await self.provider.generate_text(request)
            except Exception as e:
                instrumentation.record_error(span, e)
                raise
            instrumentation.record_usage(span, result.usage, result.model)
        return result

    async def stream(
        self, request: GenerationRequest | dict,
    ) -> StreamAggregator:
        """Start a streaming generation session."""
        self._require("stream_text")
        request = await self.preprocessor.process(self._coerce(request))
        span = instrumentation.start_stream_span(
            self.provider.name, request.model,
        )
        try:
            handle = await self.provider.stream_text(request)
        except Exception as e:
            instrumentation.record_error(span, e)
            instrumentation.end_span(span)
            raise
        logger.debug(f"Stream opened on {self.provider.name} for {request.model}")
        return StreamAggregator(
            handle, request, estimator=self.estimator, span=span,
        )

    async def embed(self, params: EmbeddingParams | dict) -> Any:
        self._require("generate_embedding")
        if isinstance(params, dict):
            params = EmbeddingParams.model_validate(params)
        return await self.provider.generate_embedding(params)

    async def rerank(self, params: RerankParams | dict) -> RerankResult:
        self._require("rerank_documents")
        if isinstance(params, dict):
            params = RerankParams.model_validate(params)
        return await self.provider.rerank_documents(params)

    async def tokenize(self, text: str, model: str | None = None) -> list[int]:
        self._require("tokenize")
        return await self.provider.tokenize(text, model)

    async def detokenize(
        self, tokens: list[int], model: str | None = None,
    ) -> str:
        self._require("detokenize")
        return await self.provider.detokenize(tokens, model)

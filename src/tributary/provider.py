"""Provider capability contract and the bundled OpenAI-compatible backends.

A provider subclasses :class:`ModelProvider` and overrides the operations
its backend supports. Whatever it overrides is recorded once per instance
in a :class:`Capabilities` descriptor, which the generator checks before
every dispatch.
"""

import asyncio
import inspect
import logging
import os
from collections.abc import AsyncIterable, Awaitable, Callable
from dataclasses import dataclass, fields
from functools import cached_property
from typing import Any

import httpx
from openai import AsyncOpenAI

from tributary.completion import ChatCompletion
from tributary.errors import (
    CapabilityUnsupported,
    ProviderConfigurationError,
    ProviderError,
)
from tributary.message import (
    EmbeddingParams,
    GenerationRequest,
    RerankParams,
    RerankResult,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_RERANK_MODEL = "rerank-1"


@dataclass(frozen=True)
class Capabilities:
    """Which optional operations a provider implements."""

    generate_text: bool = False
    stream_text: bool = False
    generate_embedding: bool = False
    rerank_documents: bool = False
    tokenize: bool = False
    detokenize: bool = False
    validator: bool = False

    @classmethod
    def of(cls, provider: "ModelProvider") -> "Capabilities":
        """Inspect *provider* for overrides of the base operations."""
        provider_type = type(provider)
        return cls(**{
            f.name: (
                getattr(provider_type, f.name, None)
                is not getattr(ModelProvider, f.name)
            )
            for f in fields(cls)
        })

    def require(self, capability: str, provider: str = "") -> None:
        if not getattr(self, capability, False):
            raise CapabilityUnsupported(capability, provider)


class StreamHandle:
    """A live sequence of raw chunks from a provider, plus ``cancel()``.

    Iterating yields chunks in arrival order. ``cancel()`` marks the handle
    cancelled and fires the transport's abort hook; the sequence then ends
    quietly instead of raising whatever the aborted transport throws.

    Args:
        source: The provider's async iterable of raw chunks.
        on_cancel: Called once on cancellation. May return an awaitable,
            which is scheduled on the running loop and awaited by
            :meth:`aclose`.
    """

    def __init__(
        self,
        source: AsyncIterable[Any],
        on_cancel: Callable[[], Awaitable[None] | None] | None = None,
    ):
        self._source = source
        self._on_cancel = on_cancel
        self._abort_task: asyncio.Future | None = None
        self.cancelled = False

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._on_cancel is None:
            return
        result = self._on_cancel()
        if inspect.isawaitable(result):
            self._abort_task = asyncio.ensure_future(result)

    async def aclose(self) -> None:
        """Wait for the abort hook scheduled by :meth:`cancel` to finish.

        A failing hook is logged, not raised: the stream is over either way.
        """
        if self._abort_task is None:
            return
        try:
            await self._abort_task
        except Exception as e:
            logger.warning(f"Closing the cancelled transport failed: {e!r}")

    async def __aiter__(self):
        try:
            async for chunk in self._source:
                if self.cancelled:
                    break
                yield chunk
        except Exception as e:
            if not self.cancelled:
                raise
            logger.debug(f"Stream ended by cancellation: {e!r}")


class ModelProvider:
    """Base class for generation backends.

    Every operation raises :class:`CapabilityUnsupported` until a subclass
    overrides it. ``validator()`` is optional; when overridden it should
    raise :class:`ProviderConfigurationError` on missing credentials or
    configuration.
    """

    name: str = "provider"

    @cached_property
    def capabilities(self) -> Capabilities:
        return Capabilities.of(self)

    def validator(self) -> None:
        return None

    async def generate_text(
            self,
            request: GenerationRequest,
    ) -> ChatCompletion:
        raise CapabilityUnsupported("generate_text", self.name)

    async def stream_text(self, request: GenerationRequest) -> StreamHandle:
        raise CapabilityUnsupported("stream_text", self.name)

    async def generate_embedding(self, params: EmbeddingParams) -> Any:
        raise CapabilityUnsupported("generate_embedding", self.name)

    async def rerank_documents(self, params: RerankParams) -> RerankResult:
        raise CapabilityUnsupported("rerank_documents", self.name)

    async def tokenize(self, text: str, model: str | None = None) -> list[int]:
        raise CapabilityUnsupported("tokenize", self.name)

    async def detokenize(
            self,
            tokens: list[int],
            model: str | None = None,
    ) -> str:
        raise CapabilityUnsupported("detokenize", self.name)


def _as_dict(obj: Any) -> Any:
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    return obj


class OpenAIProvider(ModelProvider):
    """Backend speaking the OpenAI chat-completions API.

    Args:
        api_key: API key; falls back to ``OPENAI_API_KEY``.
        base_url: API root; falls back to ``OPENAI_BASE_URL``, then the
            public OpenAI endpoint.
        max_retries: Passed to the SDK client.
        timeout: Request timeout in seconds, for the SDK and for rerank.
        http_client: Client used for endpoints the SDK does not cover
            (``/rerank``). A short-lived client is opened per call when
            omitted.
    """

    name = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        max_retries: int = 5,
        timeout: float = 600.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY", "")
        if not base_url:
            base_url = os.getenv("OPENAI_BASE_URL") or DEFAULT_BASE_URL
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http_client = http_client
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=self.base_url,
            max_retries=max_retries,
            timeout=timeout,
        )

    def validator(self) -> None:
        if not self.client.api_key:
            raise ProviderConfigurationError("API key is required.")
        if not self.base_url:
            raise ProviderConfigurationError("base URL is required.")

    def _chat_params(self, request: GenerationRequest) -> dict[str, Any]:
        params = request.to_params()
        if params.get("tools"):
            params.setdefault("tool_choice", "auto")
        else:
            params.pop("tools", None)
            params.pop("tool_choice", None)
        return params

    async def generate_text(
            self,
            request: GenerationRequest,
    ) -> ChatCompletion:
        params = self._chat_params(request)
        params["stream"] = False
        logger.info(
            f"{self.name} generate_text: model={request.model}, "
            f"messages={len(request.messages)}"
        )
        response = await self.client.chat.completions.create(**params)
        return ChatCompletion.model_validate(_as_dict(response))

    async def stream_text(self, request: GenerationRequest) -> StreamHandle:
        params = self._chat_params(request)
        params["stream"] = True
        params["stream_options"] = {"include_usage": True}
        logger.info(
            f"{self.name} stream_text: model={request.model}, "
            f"messages={len(request.messages)}"
        )
        stream = await self.client.chat.completions.create(**params)
        return StreamHandle(stream, on_cancel=getattr(stream, "close", None))

    async def generate_embedding(self, params: EmbeddingParams) -> Any:
        kwargs = params.model_dump(exclude_none=True)
        kwargs.setdefault("model", DEFAULT_EMBEDDING_MODEL)
        return await self.client.embeddings.create(**kwargs)

    async def rerank_documents(self, params: RerankParams) -> RerankResult:
        body = {
            "model": params.model or DEFAULT_RERANK_MODEL,
            "query": params.query,
            "documents": params.documents,
            "top_n": params.top_n or len(params.documents),
        }
        headers = {"Authorization": f"Bearer {self.client.api_key}"}
        url = f"{self.base_url}/rerank"
        try:
            if self.http_client is not None:
                response = await self.http_client.post(
                    url, json=body, headers=headers,
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as http:
                    response = await http.post(url, json=body, headers=headers)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"{self.name} rerank failed: {e}")
            raise ProviderError(f"{self.name} rerank failed: {e}") from e

        return RerankResult(
            results=data.get("results") or data.get("rankings") or [],
            model=data.get("model") or body["model"],
        )

    async def list_models(self) -> list[Any]:
        response = await self.client.models.list()
        return list(response.data)


class OpenAICompatibleProvider(OpenAIProvider):
    """Self-hosted or third-party server exposing the OpenAI API.

    Works with vLLM, Ollama, OpenRouter and similar. ``base_url`` is
    required and the API key defaults to a placeholder, since most local
    servers ignore it.
    """

    name = "openai-compatible"

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        max_retries: int = 5,
        timeout: float = 180.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(
            api_key=api_key or "DUMMY",
            base_url=base_url,
            max_retries=max_retries,
            timeout=timeout,
            http_client=http_client,
        )

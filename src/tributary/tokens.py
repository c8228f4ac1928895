"""Fallback token accounting for streams that report no usage.

The tokenizer is acquired for a single estimation and released right
after; estimators hold no tokenizer between calls, so concurrent sessions
never share one through this module.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from typing import Protocol

import tiktoken

from tributary.completion import Usage
from tributary.message import GenerationRequest
from tributary.streaming import AggregatedChoice

logger = logging.getLogger(__name__)

DEFAULT_TOKENIZER_MODEL = "gpt-3.5-turbo"
FALLBACK_ENCODING = "cl100k_base"


class Tokenizer(Protocol):
    def encode(self, text: str) -> list[int]: ...


TokenizerFactory = Callable[[str], Tokenizer]


def tiktoken_for_model(model: str) -> tiktoken.Encoding:
    """tiktoken encoding for *model*, or ``cl100k_base`` if unknown."""
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        return tiktoken.get_encoding(FALLBACK_ENCODING)


class TokenEstimator:
    """Estimates prompt and completion tokens for a finished stream.

    Prompt tokens count each request message as ``"role: content"``.
    Completion tokens count each choice's content, plus the function name
    and arguments of every tool call that survived filtering.

    Args:
        model: Model name handed to the tokenizer factory.
        tokenizer_factory: Builds a tokenizer for a model name. Defaults
            to :func:`tiktoken_for_model`.
    """

    def __init__(
        self,
        model: str = DEFAULT_TOKENIZER_MODEL,
        tokenizer_factory: TokenizerFactory | None = None,
    ):
        self.model = model
        self.tokenizer_factory = tokenizer_factory or tiktoken_for_model

    @contextmanager
    def tokenizer(self) -> Iterator[Tokenizer]:
        """Acquire a tokenizer for the duration of one estimation.

        Only the reference is scoped here; tiktoken itself caches encodings
        for the whole process.
        """
        yield self.tokenizer_factory(self.model)

    def estimate(
        self,
        request: GenerationRequest,
        choices: Iterable[AggregatedChoice],
    ) -> Usage:
        """Usage for *request* and its aggregated *choices*.

        Never raises: a tokenizer failure yields zero counts.
        """
        try:
            with self.tokenizer() as tokenizer:
                prompt_tokens = sum(
                    len(tokenizer.encode(f"{m.role.value}: {m.text()}"))
                    for m in request.messages
                )
                completion_tokens = 0
                for choice in choices:
                    if choice.content:
                        completion_tokens += len(tokenizer.encode(choice.content))
                    for tc in choice.completed_tool_calls():
                        completion_tokens += len(tokenizer.encode(tc.name))
                        if tc.arguments:
                            completion_tokens += len(
                                tokenizer.encode(tc.arguments)
                            )
        except Exception as e:
            logger.warning(f"Token estimation failed, reporting zero usage: {e}")
            return Usage()

        return Usage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )
